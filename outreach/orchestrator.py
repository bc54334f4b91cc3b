"""
Send orchestration: "send now", "reply in thread", drafts.

Every operation returns a SendResult. Expected failures (unknown user or
coach, malformed envelope, no usable provider, provider rejection) come back
as an error code and leave the ledger untouched. A write failure after the
provider accepted the message is not expected: it raises DeliveryNotRecorded.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from outreach import directory
from outreach.composer import build_envelope
from outreach.errors import DeliveryNotRecorded, ErrorCode, OutreachError
from outreach.followups import follow_up_subject, generate_follow_up_body, schedule_follow_up
from outreach.lifecycle import Direction, MessageStatus
from outreach.models import utcnow
from outreach.schemas import DraftRequest, ReplyRequest, SendRequest, SendResult
from outreach.storage import create_message, find_by_user_and_conversation, get_message, update_message
from outreach.transports import Delivery, TransportSelector, get_transport_selector

logger = logging.getLogger(__name__)


def _resolve_parties(db: Session, user_id: int, counterpart_id: int):
    user = directory.get_user(db, user_id)
    if user is None:
        return None, None, SendResult.failure(ErrorCode.NOT_FOUND, "User not found")
    coach = directory.get_coach(db, counterpart_id)
    if coach is None:
        return None, None, SendResult.failure(ErrorCode.NOT_FOUND, "Coach not found")
    return user, coach, None


def _dispatch(
    user,
    coach,
    subject: str,
    html: str,
    text: Optional[str],
    conversation_id: Optional[str],
    selector: TransportSelector,
) -> Delivery:
    envelope = build_envelope(
        sender=user.email,
        recipient=coach.email or "",
        subject=subject,
        html=html,
        text=text,
        conversation_id=conversation_id,
    )
    return selector.deliver(envelope, directory.credential_for(user))


def _not_recorded(delivery: Delivery, error: Exception, **context) -> DeliveryNotRecorded:
    logger.critical(
        "Message delivered but not recorded",
        extra={
            "transport": delivery.transport,
            "provider_message_id": delivery.provider_message_id,
            "provider_conversation_id": delivery.provider_conversation_id,
            "error": str(error),
            **context,
        },
    )
    return DeliveryNotRecorded(delivery.provider_message_id, error)


def _after_send(
    db: Session,
    user,
    coach,
    message,
    request: SendRequest,
    activity_type: str,
    description: str,
    now: datetime,
) -> Optional[int]:
    """Activity, contact status and the optional follow-up. Returns the follow-up id."""
    directory.record_activity(
        db,
        user_id=user.id,
        coach_id=coach.id,
        type=activity_type,
        description=description,
        meta_data={
            "emailId": message.id,
            "subject": message.subject,
            "threadId": message.provider_conversation_id,
        },
    )
    directory.mark_contacted(db, user.id, coach.id)

    if not request.follow_up_days or request.is_follow_up:
        return None

    scheduled = schedule_follow_up(
        db,
        parent_message_id=message.id,
        user_id=user.id,
        counterpart_id=coach.id,
        subject=follow_up_subject(request.subject),
        body=generate_follow_up_body(user, coach),
        delay_days=request.follow_up_days,
        now=now,
    )
    if not scheduled.success:
        logger.warning(f"Follow-up for message {message.id} not scheduled: {scheduled.error}")
        return None
    return scheduled.message_id


def _send(
    db: Session,
    user_id: int,
    request: SendRequest,
    conversation_id: Optional[str],
    selector: Optional[TransportSelector],
    now: Optional[datetime],
    activity_type: str,
) -> SendResult:
    selector = selector or get_transport_selector()
    now = now or utcnow()

    user, coach, failure = _resolve_parties(db, user_id, request.counterpart_id)
    if failure is not None:
        return failure

    try:
        delivery = _dispatch(user, coach, request.subject, request.body, request.text, conversation_id, selector)
    except OutreachError as e:
        logger.error(f"Send to coach {coach.id} failed for user {user.id}: {e.code.value}: {e.detail}")
        return SendResult.failure(e.code, e.detail)

    thread_id = delivery.provider_conversation_id or conversation_id
    try:
        message = create_message(
            db,
            user_id=user.id,
            counterpart_id=coach.id,
            subject=request.subject,
            body=request.body,
            text=request.text,
            direction=Direction.OUTBOUND.value,
            status=MessageStatus.SENT.value,
            template_id=request.template_id,
            is_follow_up=request.is_follow_up,
            provider_message_id=delivery.provider_message_id,
            provider_conversation_id=thread_id,
            transport=delivery.transport,
            created_at=now,
            sent_at=now,
        )
    except SQLAlchemyError as e:
        raise _not_recorded(delivery, e, user_id=user.id, counterpart_id=coach.id) from e

    if conversation_id:
        description = f"Replied to {directory.coach_display_name(coach)} in thread {conversation_id}"
    else:
        description = f"Email sent to {directory.coach_display_name(coach)}"
    follow_up_id = _after_send(db, user, coach, message, request, activity_type, description, now)

    return SendResult(
        success=True,
        message_id=message.id,
        follow_up_id=follow_up_id,
        transport=delivery.transport,
        provider_message_id=delivery.provider_message_id,
        provider_conversation_id=thread_id,
    )


def send_now(
    db: Session,
    user_id: int,
    request: SendRequest,
    selector: Optional[TransportSelector] = None,
    now: Optional[datetime] = None,
) -> SendResult:
    """Send a fresh message to a coach and record it as sent."""
    return _send(db, user_id, request, None, selector, now, "email_sent")


def reply_in_thread(
    db: Session,
    user_id: int,
    request: ReplyRequest,
    selector: Optional[TransportSelector] = None,
    now: Optional[datetime] = None,
) -> SendResult:
    """
    Send a reply inside an existing conversation.

    The stored message belongs to ``request.conversation_id`` even when the
    transactional fallback, which knows nothing about threads, delivered it.
    """
    if not find_by_user_and_conversation(db, user_id, request.conversation_id):
        return SendResult.failure(ErrorCode.NOT_FOUND, "Conversation not found")
    return _send(db, user_id, request, request.conversation_id, selector, now, "email_reply")


def save_draft(db: Session, user_id: int, request: DraftRequest, now: Optional[datetime] = None) -> SendResult:
    """Store a draft. No transport call, no follow-up."""
    now = now or utcnow()
    user, coach, failure = _resolve_parties(db, user_id, request.counterpart_id)
    if failure is not None:
        return failure

    message = create_message(
        db,
        user_id=user.id,
        counterpart_id=coach.id,
        subject=request.subject,
        body=request.body,
        text=request.text,
        direction=Direction.OUTBOUND.value,
        status=MessageStatus.DRAFT.value,
        template_id=request.template_id,
        provider_conversation_id=request.conversation_id,
        created_at=now,
    )
    directory.record_activity(
        db,
        user_id=user.id,
        coach_id=coach.id,
        type="email_drafted",
        description=f"Saved draft email to {directory.coach_display_name(coach)}",
        meta_data={"emailId": message.id, "subject": request.subject},
    )
    return SendResult(success=True, message_id=message.id, provider_conversation_id=request.conversation_id)


def send_draft(
    db: Session,
    user_id: int,
    message_id: int,
    selector: Optional[TransportSelector] = None,
    now: Optional[datetime] = None,
) -> SendResult:
    """Deliver a stored draft and move that same record from draft to sent."""
    selector = selector or get_transport_selector()
    now = now or utcnow()

    draft = get_message(db, message_id, user_id=user_id)
    if draft is None:
        return SendResult.failure(ErrorCode.NOT_FOUND, "Draft not found")
    if draft.status != MessageStatus.DRAFT.value:
        return SendResult.failure(ErrorCode.VALIDATION, f"Message {message_id} is {draft.status}, not a draft")

    user, coach, failure = _resolve_parties(db, user_id, draft.counterpart_id)
    if failure is not None:
        return failure

    conversation_id = draft.provider_conversation_id
    try:
        delivery = _dispatch(user, coach, draft.subject, draft.body, draft.text, conversation_id, selector)
    except OutreachError as e:
        logger.error(f"Draft {message_id} send failed: {e.code.value}: {e.detail}")
        return SendResult.failure(e.code, e.detail)

    thread_id = delivery.provider_conversation_id or conversation_id
    try:
        message = update_message(
            db,
            message_id,
            status=MessageStatus.SENT,
            sent_at=now,
            provider_message_id=delivery.provider_message_id,
            provider_conversation_id=thread_id,
            transport=delivery.transport,
        )
    except SQLAlchemyError as e:
        raise _not_recorded(delivery, e, user_id=user.id, message_id=message_id) from e

    directory.record_activity(
        db,
        user_id=user.id,
        coach_id=coach.id,
        type="email_sent",
        description=f"Email sent to {directory.coach_display_name(coach)}",
        meta_data={"emailId": message.id, "subject": message.subject},
    )
    directory.mark_contacted(db, user.id, coach.id)

    return SendResult(
        success=True,
        message_id=message.id,
        transport=delivery.transport,
        provider_message_id=delivery.provider_message_id,
        provider_conversation_id=thread_id,
    )
