"""
Follow-up scheduling and the due-follow-up sweep.

A scheduled follow-up is a message row in status ``scheduled`` that has not
left the building yet. The sweep claims each due row with a single
conditional UPDATE before sending, so overlapping sweeps (server start plus
the periodic job, or two workers) never send the same row twice. A row that
fails to send stays ``scheduled`` and is retried by the next sweep. A row the
provider accepted but the ledger could not record is flagged ``needs_review``
and never swept again.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from outreach import directory
from outreach.composer import build_envelope
from outreach.config import get_settings
from outreach.errors import DeliveryNotRecorded, ErrorCode, OutreachError
from outreach.lifecycle import Direction, MessageStatus
from outreach.metrics import record_sweep_item
from outreach.models import utcnow
from outreach.schemas import ScheduleResult, SweepResult
from outreach.storage import (
    SessionLocal,
    claim_follow_up,
    create_message,
    get_message,
    hold_follow_up,
    release_follow_up,
    select_due_follow_ups,
    update_message,
)
from outreach.transports import TransportSelector, get_transport_selector

logger = logging.getLogger(__name__)


def follow_up_subject(subject: str) -> str:
    return f"Follow-up: {subject}"


def generate_follow_up_body(user, coach) -> str:
    return (
        f"<p>Hi {coach.first_name},</p>\n"
        f"<p>I wanted to follow up on my previous email about my interest in the "
        f"{coach.sport} program at {coach.school}.</p>\n"
        "<p>I'm still very interested in learning more about the program and would "
        "appreciate the opportunity to discuss how I could contribute to the team.</p>\n"
        "<p>Thank you for your time and consideration.</p>\n"
        f"<p>Best regards,<br>{user.first_name or ''} {user.last_name or ''}</p>"
    )


def schedule_follow_up(
    db: Session,
    parent_message_id: int,
    user_id: int,
    counterpart_id: int,
    subject: str,
    body: str,
    delay_days: int,
    now: Optional[datetime] = None,
) -> ScheduleResult:
    """
    Store a follow-up due ``delay_days`` calendar days from now.

    The follow-up joins the parent's conversation so the coach sees it in the
    same thread. Also emits the user-facing reminder task.
    """
    if isinstance(delay_days, bool) or not isinstance(delay_days, int) or delay_days < 1:
        return ScheduleResult.failure(ErrorCode.VALIDATION, "delay_days must be a positive number of days")
    if not subject or not body:
        return ScheduleResult.failure(ErrorCode.VALIDATION, "Follow-up subject and body are required")

    user = directory.get_user(db, user_id)
    if user is None:
        return ScheduleResult.failure(ErrorCode.NOT_FOUND, "User not found")
    coach = directory.get_coach(db, counterpart_id)
    if coach is None:
        return ScheduleResult.failure(ErrorCode.NOT_FOUND, "Coach not found")
    parent = get_message(db, parent_message_id, user_id=user_id)
    if parent is None:
        return ScheduleResult.failure(ErrorCode.NOT_FOUND, "Parent message not found")

    now = now or utcnow()
    scheduled_for = now + timedelta(days=delay_days)

    message = create_message(
        db,
        user_id=user_id,
        counterpart_id=counterpart_id,
        subject=subject,
        body=body,
        direction=Direction.OUTBOUND.value,
        status=MessageStatus.SCHEDULED.value,
        is_follow_up=True,
        scheduled_for=scheduled_for,
        parent_message_id=parent.id,
        provider_conversation_id=parent.provider_conversation_id,
        created_at=now,
    )
    logger.info(f"Follow-up {message.id} scheduled for {scheduled_for.isoformat()} (parent {parent.id})")

    directory.record_activity(
        db,
        user_id=user_id,
        coach_id=counterpart_id,
        type="follow_up_scheduled",
        description=f"Follow-up scheduled for {scheduled_for.strftime('%a %b %d %Y')}",
        meta_data={"emailId": message.id, "parentEmailId": parent.id},
    )
    directory.create_task(
        db,
        user_id=user_id,
        coach_id=counterpart_id,
        title=f"Follow up with {directory.coach_display_name(coach)}",
        due_date=scheduled_for,
        type="email-follow-up",
        meta_data={"emailId": parent.id, "followUpId": message.id},
    )
    return ScheduleResult(success=True, message_id=message.id, scheduled_for=scheduled_for)


def _process_one(db: Session, message_id: int, now: datetime, selector: TransportSelector, claim_ttl: int) -> str:
    if not claim_follow_up(db, message_id, claim_ttl):
        return "skipped"

    message = get_message(db, message_id)
    parent = get_message(db, message.parent_message_id) if message.parent_message_id else None
    if message.has_responded or (parent is not None and parent.has_responded):
        update_message(db, message_id, status=MessageStatus.CANCELLED, claimed_at=None)
        logger.info(f"Follow-up {message_id} cancelled: coach already replied")
        return "cancelled"

    user = directory.get_user(db, message.user_id)
    coach = directory.get_coach(db, message.counterpart_id)
    if user is None or coach is None:
        logger.error(f"Failed to find user or coach for follow-up email ID {message_id}")
        release_follow_up(db, message_id, error="User or coach not found")
        return "failed"

    try:
        envelope = build_envelope(
            sender=user.email,
            recipient=coach.email or "",
            subject=message.subject,
            html=message.body,
            text=message.text,
            conversation_id=message.provider_conversation_id,
        )
        delivery = selector.deliver(envelope, directory.credential_for(user))
    except OutreachError as e:
        logger.error(f"Failed to send follow-up email ID {message_id}: {e.code.value}: {e.detail}")
        release_follow_up(db, message_id, error=f"{e.code.value}: {e.detail}")
        return "failed"

    try:
        update_message(
            db,
            message_id,
            status=MessageStatus.SENT,
            sent_at=now,
            provider_message_id=delivery.provider_message_id,
            provider_conversation_id=delivery.provider_conversation_id or message.provider_conversation_id,
            transport=delivery.transport,
            claimed_at=None,
        )
    except SQLAlchemyError as e:
        raise DeliveryNotRecorded(delivery.provider_message_id, e) from e

    directory.record_activity(
        db,
        user_id=user.id,
        coach_id=coach.id,
        type="follow_up_sent",
        description=f"Follow-up email sent to {directory.coach_display_name(coach)}",
        meta_data={"scheduledEmailId": message_id, "parentEmailId": message.parent_message_id},
    )
    directory.mark_contacted(db, user.id, coach.id)
    logger.info(f"Successfully sent follow-up email ID {message_id}")
    return "sent"


def process_due(
    db: Session,
    now: Optional[datetime] = None,
    selector: Optional[TransportSelector] = None,
) -> SweepResult:
    """
    Send every follow-up whose due time has passed.

    Each item is claimed, sent and recorded independently; an exception on one
    item is logged and counted as a failure, and the sweep moves on.
    """
    settings = get_settings()
    now = now or utcnow()
    selector = selector or get_transport_selector()
    claim_ttl = settings.FOLLOW_UP_CLAIM_TTL_SECONDS

    due_ids = select_due_follow_ups(db, now, claim_ttl, settings.FOLLOW_UP_MAX_ATTEMPTS)
    logger.info(f"Found {len(due_ids)} follow-up emails due to be sent")

    result = SweepResult(due=len(due_ids))
    for message_id in due_ids:
        try:
            outcome = _process_one(db, message_id, now, selector, claim_ttl)
        except DeliveryNotRecorded as e:
            logger.critical(f"Follow-up {message_id} delivered but not recorded: {e}")
            db.rollback()
            try:
                hold_follow_up(db, message_id, error=f"DELIVERED_NOT_RECORDED: {e}")
            except SQLAlchemyError:
                # The claim still blocks a resend until its lease runs out
                logger.exception(f"Could not hold follow-up {message_id} for review")
            outcome = "failed"
        except Exception as e:
            logger.exception(f"Error processing follow-up email ID {message_id}")
            db.rollback()
            try:
                release_follow_up(db, message_id, error=str(e))
            except SQLAlchemyError:
                logger.exception(f"Could not release follow-up {message_id}")
            outcome = "failed"

        record_sweep_item(outcome)
        setattr(result, outcome, getattr(result, outcome) + 1)

    logger.info(
        f"Follow-up sweep complete. Sent: {result.sent}, Failed: {result.failed}, "
        f"Cancelled: {result.cancelled}, Skipped: {result.skipped}"
    )
    return result


def run_due_follow_up_sweep(now: Optional[datetime] = None, selector: Optional[TransportSelector] = None) -> SweepResult:
    """Sweep entry point for jobs; owns its session."""
    db = SessionLocal()
    try:
        return process_due(db, now=now, selector=selector)
    finally:
        db.close()
