"""
Inbound side of the engine: replies and delivery events.

Two reply sources feed one pipeline (record_reply): the user's Gmail threads,
pulled by import_new_replies, and an inbound-parse webhook handled by
ingest_inbound_email. The pipeline strips quoted history, deduplicates on
(user_id, provider message id), stores a ``received`` message and flags the
outbound side of the conversation as answered.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from email.parser import HeaderParser
from html import escape
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from outreach import directory
from outreach.errors import ErrorCode
from outreach.lifecycle import Direction, MessageStatus, can_transition
from outreach.metrics import record_reply_import
from outreach.models import utcnow
from outreach.parsing import (
    extract_email_address,
    extract_html,
    extract_text,
    header_value,
    strip_quoted_html,
    strip_quoted_text,
)
from outreach.schemas import EventResult, ImportResult, IngestResult, InboundEmailWebhook
from outreach.storage import (
    find_by_provider_message_id,
    insert_unique_message,
    latest_outbound,
    list_conversations,
    mark_responded,
    update_message,
)
from outreach.transports import TransportSelector, get_transport_selector

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No subject)"

DELIVERY_EVENTS = {
    "delivered": MessageStatus.DELIVERED,
    "open": MessageStatus.OPENED,
    "opened": MessageStatus.OPENED,
    "bounce": MessageStatus.BOUNCED,
    "bounced": MessageStatus.BOUNCED,
    "dropped": MessageStatus.BOUNCED,
}


def record_reply(
    db: Session,
    user_id: int,
    counterpart_id: int,
    provider_message_id: str,
    conversation_id: Optional[str],
    subject: str,
    html: str,
    text: str,
    received_at: datetime,
    sender: str = "",
    source: str = "mailbox",
) -> Tuple[object, bool]:
    """
    Store one inbound reply and correlate it with the outbound conversation.

    Returns:
        Tuple of (message, is_duplicate). A duplicate is returned untouched.
    """
    clean_text = strip_quoted_text(text or "")
    clean_html = strip_quoted_html(html or "")
    if not clean_html and clean_text:
        clean_html = f"<pre>{escape(clean_text)}</pre>"

    message, is_duplicate = insert_unique_message(
        db,
        user_id=user_id,
        counterpart_id=counterpart_id,
        provider_message_id=provider_message_id,
        provider_conversation_id=conversation_id,
        subject=subject or NO_SUBJECT,
        body=clean_html,
        text=clean_text,
        direction=Direction.INBOUND.value,
        status=MessageStatus.RECEIVED.value,
        sent_at=received_at,
        received_at=received_at,
        created_at=utcnow(),
    )
    if is_duplicate:
        record_reply_import(source, "skipped")
        return message, True

    mark_responded(db, user_id, conversation_id=conversation_id, counterpart_id=counterpart_id)
    directory.record_activity(
        db,
        user_id=user_id,
        coach_id=counterpart_id,
        type="email_received",
        description=f"Email received from {sender or 'coach'}",
        meta_data={"emailId": message.id, "subject": message.subject},
    )
    record_reply_import(source, "imported")
    return message, False


# =============================================================================
# Gmail thread import
# =============================================================================

def _internal_date(value) -> datetime:
    """Gmail's internalDate is epoch milliseconds as a string."""
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow()


def _import_thread_message(db: Session, user, conversation, raw: dict, own_address: str) -> str:
    provider_id = raw.get("id")
    if not provider_id:
        raise ValueError("Thread message without an id")

    payload = raw.get("payload") or {}
    sender = header_value(payload, "From") or ""
    if own_address and extract_email_address(sender) == own_address:
        return "skipped"

    _, is_duplicate = record_reply(
        db,
        user_id=user.id,
        counterpart_id=conversation.counterpart_id,
        provider_message_id=provider_id,
        conversation_id=conversation.provider_conversation_id,
        subject=header_value(payload, "Subject") or conversation.subject,
        html=extract_html(payload),
        text=extract_text(payload),
        received_at=_internal_date(raw.get("internalDate")),
        sender=sender,
        source="mailbox",
    )
    return "skipped" if is_duplicate else "imported"


def import_new_replies(
    db: Session,
    user_id: int,
    selector: Optional[TransportSelector] = None,
) -> ImportResult:
    """
    Pull replies from every Gmail thread the user started with a coach.

    The first message of each thread is the user's original send and is not
    imported. A failing thread or message is counted in ``errors`` and the
    import carries on.
    """
    selector = selector or get_transport_selector()

    user = directory.get_user(db, user_id)
    if user is None:
        return ImportResult.failure(ErrorCode.NOT_FOUND, "User not found")

    credential = directory.credential_for(user)
    mailbox = selector.mailbox
    if mailbox is None or not credential.has_mailbox:
        return ImportResult.failure(ErrorCode.NO_PROVIDER_CONFIGURED, "Gmail not connected")

    own_address = (user.email or "").lower()
    result = ImportResult(success=True)

    for conversation in list_conversations(db, user.id):
        thread_id = conversation.provider_conversation_id
        try:
            thread_messages = mailbox.fetch_conversation(credential, thread_id)
        except Exception as e:
            logger.error(f"Failed to fetch thread {thread_id} for user {user.id}: {e}")
            record_reply_import("mailbox", "error")
            result.errors += 1
            continue

        for raw in thread_messages[1:]:
            try:
                outcome = _import_thread_message(db, user, conversation, raw, own_address)
            except Exception:
                logger.exception(f"Failed to import message from thread {thread_id}")
                db.rollback()
                record_reply_import("mailbox", "error")
                result.errors += 1
                continue
            if outcome == "imported":
                result.imported += 1
            else:
                result.skipped += 1

    logger.info(
        f"Imported replies for user {user.id}: imported={result.imported}, "
        f"skipped={result.skipped}, errors={result.errors}"
    )
    return result


# =============================================================================
# Inbound webhook
# =============================================================================

def _envelope_addresses(payload: InboundEmailWebhook) -> Tuple[str, str]:
    from_raw, to_raw = payload.from_address, payload.to
    if payload.envelope:
        try:
            envelope = json.loads(payload.envelope)
            if envelope.get("from"):
                from_raw = envelope["from"]
            if envelope.get("to"):
                to_raw = envelope["to"][0] if isinstance(envelope["to"], list) else envelope["to"]
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to parse envelope: {e}")
    return from_raw, to_raw


def webhook_message_key(payload: InboundEmailWebhook, from_address: str, to_address: str) -> str:
    """Dedup key: source id, else the Message-ID header, else a content digest."""
    if payload.message_id:
        return payload.message_id
    if payload.headers:
        message_id = HeaderParser().parsestr(payload.headers).get("Message-ID")
        if message_id and message_id.strip():
            return message_id.strip()
    digest = hashlib.sha256(
        "\x1f".join([
            from_address,
            to_address,
            payload.subject or "",
            payload.text or "",
            payload.html or "",
        ]).encode("utf-8")
    ).hexdigest()
    return f"sha256:{digest}"


def ingest_inbound_email(db: Session, payload: InboundEmailWebhook) -> IngestResult:
    """
    Record an email posted by the inbound-parse webhook.

    The coach is matched by sender address. When no coach has that address
    the reply is attributed to the coach of the user's most recent outbound
    message, which is a guess and is reported as such.
    """
    from_raw, to_raw = _envelope_addresses(payload)
    from_address = extract_email_address(from_raw)
    to_address = extract_email_address(to_raw)
    if not from_address or not to_address:
        return IngestResult.failure(
            ErrorCode.VALIDATION, f"Invalid email addresses - to: {to_raw}, from: {from_raw}"
        )

    user = directory.find_user_by_email(db, to_address)
    if user is None:
        return IngestResult.failure(ErrorCode.NOT_FOUND, f"No user found with email {to_address}")

    coach = directory.find_coach_by_email(db, from_address)
    if coach is not None:
        counterpart_id = coach.id
        correlation = "address"
    else:
        recent = latest_outbound(db, user.id)
        if recent is None:
            return IngestResult.failure(ErrorCode.NOT_FOUND, f"No coach found with email {from_address}")
        counterpart_id = recent.counterpart_id
        correlation = "recent_outbound"
        logger.warning(
            f"No coach with email {from_address}; attributing reply to coach {counterpart_id} "
            f"from the most recent outbound message"
        )

    last_sent = latest_outbound(db, user.id, counterpart_id)
    conversation_id = last_sent.provider_conversation_id if last_sent else None

    message, is_duplicate = record_reply(
        db,
        user_id=user.id,
        counterpart_id=counterpart_id,
        provider_message_id=webhook_message_key(payload, from_address, to_address),
        conversation_id=conversation_id,
        subject=payload.subject or NO_SUBJECT,
        html=payload.html or "",
        text=payload.text or "",
        received_at=utcnow(),
        sender=from_address,
        source="webhook",
    )
    return IngestResult(
        success=True,
        error_code=ErrorCode.DUPLICATE if is_duplicate else None,
        message_id=message.id,
        skipped=is_duplicate,
        counterpart_id=counterpart_id,
        correlation=correlation,
    )


# =============================================================================
# Delivery events
# =============================================================================

def apply_delivery_event(db: Session, user_id: int, provider_message_id: str, event: str) -> EventResult:
    """
    Advance an outbound message on a provider delivery/open/bounce event.

    Events can arrive late or out of order; one that would move the message
    backward is ignored rather than applied.
    """
    target = DELIVERY_EVENTS.get(event.strip().lower())
    if target is None:
        return EventResult.failure(ErrorCode.VALIDATION, f"Unsupported delivery event: {event}")

    message = find_by_provider_message_id(db, user_id, provider_message_id)
    if message is None:
        return EventResult.failure(ErrorCode.NOT_FOUND, "Message not found")
    if message.direction != Direction.OUTBOUND.value:
        return EventResult.failure(ErrorCode.VALIDATION, "Delivery events apply to outbound messages only")

    if message.status == target.value or not can_transition(message.status, target):
        logger.info(f"Ignoring {event} for message {message.id} in status {message.status}")
        return EventResult(success=True, message_id=message.id, status=message.status, ignored=True)

    previous = message.status
    message = update_message(db, message.id, status=target)
    directory.record_activity(
        db,
        user_id=user_id,
        coach_id=message.counterpart_id,
        type="email_status_changed",
        description=f"Email {target.value}",
        meta_data={"emailId": message.id, "from": previous, "to": target.value},
    )
    return EventResult(success=True, message_id=message.id, status=target.value)
