"""
Tests for follow-up scheduling and the due sweep.

Tests cover:
- Scheduling validation and side effects (activity, reminder task)
- A follow-up fires once its due time passes, with the stored subject/body
- Overlapping sweeps send a due follow-up exactly once, even long-running ones
- A delivered follow-up that could not be recorded is never swept again
- Failed sends stay scheduled and are retried; attempts are recorded
- Follow-ups whose conversation got a reply are cancelled
- One failing item does not stop the sweep
"""

import base64
import email
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from outreach import followups
from outreach.config import get_settings
from outreach.errors import ErrorCode
from outreach.followups import process_due, run_due_follow_up_sweep, schedule_follow_up
from outreach.models import Activity, Coach, Message, Task, utcnow
from outreach.orchestrator import send_now
from outreach.schemas import SendRequest
from outreach.storage import SessionLocal, claim_follow_up, mark_responded
from outreach.transports import GmailTransport, SendGridTransport, TransportSelector

from conftest import FakeGmailService, FakeSendGrid


NOW = datetime(2025, 3, 1, 9, 0, 0)


@pytest.fixture
def parent(db, user, coach, selector):
    """An initial outreach email already sent through the mailbox."""
    result = send_now(
        db,
        user.id,
        SendRequest(counterpart_id=coach.id, subject="Hi", body="<p>Hello Coach</p>"),
        selector=selector,
        now=NOW,
    )
    return db.get(Message, result.message_id)


def schedule(db, parent, delay_days=3, subject="Follow-up: Hi", body="<p>Just following up</p>"):
    return schedule_follow_up(
        db,
        parent_message_id=parent.id,
        user_id=parent.user_id,
        counterpart_id=parent.counterpart_id,
        subject=subject,
        body=body,
        delay_days=delay_days,
        now=NOW,
    )


class TestScheduleFollowUp:
    """Test schedule_follow_up."""

    def test_stores_scheduled_message(self, db, parent):
        result = schedule(db, parent)

        assert result.success is True
        assert result.scheduled_for == NOW + timedelta(days=3)
        message = db.get(Message, result.message_id)
        assert message.status == "scheduled"
        assert message.is_follow_up is True
        assert message.parent_message_id == parent.id
        assert message.provider_conversation_id == parent.provider_conversation_id
        assert message.sent_at is None

    def test_emits_activity_and_task(self, db, parent, coach):
        result = schedule(db, parent)

        activity = db.query(Activity).filter_by(type="follow_up_scheduled").one()
        assert activity.meta_data["emailId"] == result.message_id
        task = db.query(Task).one()
        assert task.title == "Follow up with Pat Smith"
        assert task.coach_id == coach.id
        assert task.due_date == NOW + timedelta(days=3)

    @pytest.mark.parametrize("delay_days", [0, -1, True, 1.5])
    def test_rejects_non_positive_delay(self, db, parent, delay_days):
        result = schedule(db, parent, delay_days=delay_days)

        assert result.error_code == ErrorCode.VALIDATION
        assert db.query(Message).filter_by(status="scheduled").count() == 0

    def test_rejects_empty_subject(self, db, parent):
        assert schedule(db, parent, subject="").error_code == ErrorCode.VALIDATION

    def test_unknown_parent(self, db, user, coach):
        result = schedule_follow_up(db, 999, user.id, coach.id, "Follow-up", "<p>Hi</p>", 3, now=NOW)

        assert result.error_code == ErrorCode.NOT_FOUND


class TestProcessDue:
    """Test the sweep."""

    def test_not_sent_before_due(self, db, parent, selector, gmail_service):
        schedule(db, parent)

        result = process_due(db, now=NOW + timedelta(days=3) - timedelta(seconds=1), selector=selector)

        assert result.due == 0
        assert len(gmail_service.sent) == 1  # the parent only

    def test_sent_after_due_with_stored_subject_and_body(self, db, parent, selector, gmail_service):
        scheduled = schedule(db, parent, subject="Follow-up: Hi", body="<p>Checking in</p>")
        run_at = NOW + timedelta(days=3, seconds=1)

        result = process_due(db, now=run_at, selector=selector)

        assert result.due == 1
        assert result.sent == 1
        message = db.get(Message, scheduled.message_id)
        assert message.status == "sent"
        assert message.sent_at == run_at
        assert message.claimed_at is None
        assert message.transport == "gmail"

        sent_body = gmail_service.sent[-1]
        assert sent_body["threadId"] == parent.provider_conversation_id
        parsed = email.message_from_bytes(base64.urlsafe_b64decode(sent_body["raw"]))
        assert parsed["Subject"] == "Follow-up: Hi"
        assert parsed.get_payload(decode=True).decode("utf-8") == "<p>Checking in</p>"

        assert db.query(Activity).filter_by(type="follow_up_sent").count() == 1

    def test_second_sweep_sends_nothing(self, db, parent, selector, gmail_service):
        schedule(db, parent)
        run_at = NOW + timedelta(days=4)
        process_due(db, now=run_at, selector=selector)

        result = process_due(db, now=run_at + timedelta(hours=1), selector=selector)

        assert result.due == 0
        assert len(gmail_service.sent) == 2

    def test_overlapping_sweeps_send_once(self, db, parent, selector, gmail_service):
        scheduled = schedule(db, parent)
        run_at = NOW + timedelta(days=4)
        nested = {}

        def overlapping_sweep(body):
            # A second worker sweeps while the first is mid-send
            if nested:
                return
            other = SessionLocal()
            try:
                nested["claimed"] = claim_follow_up(
                    other, scheduled.message_id, get_settings().FOLLOW_UP_CLAIM_TTL_SECONDS
                )
                nested["result"] = process_due(other, now=run_at, selector=selector)
            finally:
                other.close()

        gmail_service.on_send = overlapping_sweep

        result = process_due(db, now=run_at, selector=selector)

        assert result.sent == 1
        assert nested["claimed"] is False
        assert nested["result"].sent == 0
        assert len(gmail_service.sent) == 2  # parent + one follow-up
        db.expire_all()
        assert db.get(Message, scheduled.message_id).status == "sent"

    def test_late_sweep_does_not_steal_a_fresh_claim(self, db, parent, selector, gmail_service):
        first = schedule(db, parent)
        second = schedule(db, parent)
        run_at = NOW + timedelta(days=4)
        ttl = get_settings().FOLLOW_UP_CLAIM_TTL_SECONDS
        late = {}

        def sweep_while_second_is_sending(body):
            # Sweep A has been running for longer than a lease by its own clock
            if late or len(gmail_service.sent) < 2:
                return
            other = SessionLocal()
            try:
                late["result"] = process_due(other, now=run_at + timedelta(seconds=ttl + 5), selector=selector)
            finally:
                other.close()

        gmail_service.on_send = sweep_while_second_is_sending

        result = process_due(db, now=run_at, selector=selector)

        assert result.due == 2
        assert result.sent == 2
        assert late["result"].due == 0
        assert late["result"].sent == 0
        assert len(gmail_service.sent) == 3  # parent + each follow-up once
        db.expire_all()
        assert db.get(Message, first.message_id).status == "sent"
        assert db.get(Message, second.message_id).status == "sent"

    def test_expired_claim_is_reclaimed(self, db, parent, selector):
        scheduled = schedule(db, parent)
        run_at = NOW + timedelta(days=4)
        ttl = get_settings().FOLLOW_UP_CLAIM_TTL_SECONDS
        assert claim_follow_up(db, scheduled.message_id, ttl) is True

        still_held = process_due(db, now=run_at, selector=selector)

        db.expire_all()
        message = db.get(Message, scheduled.message_id)
        message.claimed_at = utcnow() - timedelta(seconds=ttl + 1)
        db.commit()
        after_lease = process_due(db, now=run_at, selector=selector)

        assert still_held.due == 0
        assert after_lease.sent == 1

    def test_delivered_but_unrecorded_is_held(self, db, parent, selector, gmail_service, monkeypatch, caplog):
        scheduled = schedule(db, parent)
        real_update = followups.update_message

        def failing_update(session, message_id, **changes):
            if changes.get("status") == "sent":
                raise OperationalError("UPDATE messages", {}, Exception("disk I/O error"))
            return real_update(session, message_id, **changes)

        monkeypatch.setattr(followups, "update_message", failing_update)

        result = process_due(db, now=NOW + timedelta(days=4), selector=selector)

        assert result.failed == 1
        assert "delivered but not recorded" in caplog.text
        db.expire_all()
        message = db.get(Message, scheduled.message_id)
        assert message.needs_review is True
        assert message.claimed_at is None
        assert "gmail-msg-2" in message.last_error

        monkeypatch.setattr(followups, "update_message", real_update)
        later = process_due(db, now=NOW + timedelta(days=30), selector=selector)

        assert later.due == 0
        assert len(gmail_service.sent) == 2  # parent + the one delivery

    def test_failure_stays_scheduled_and_is_retried(self, db, parent, gmail_service):
        scheduled = schedule(db, parent)
        run_at = NOW + timedelta(days=4)
        broken = TransportSelector([
            GmailTransport(lambda c: FakeGmailService(error=RuntimeError("boom"))),
            FakeSendGrid(status_code=500).transport(),
        ])

        failed = process_due(db, now=run_at, selector=broken)

        assert failed.failed == 1
        message = db.get(Message, scheduled.message_id)
        assert message.status == "scheduled"
        assert message.claimed_at is None
        assert message.send_attempts == 1
        assert "TRANSPORT_REJECTED" in message.last_error

        working = TransportSelector([GmailTransport(lambda c: gmail_service)])
        retried = process_due(db, now=run_at + timedelta(hours=1), selector=working)

        assert retried.sent == 1
        db.expire_all()
        assert db.get(Message, scheduled.message_id).status == "sent"

    def test_max_attempts_stops_retrying(self, db, parent, monkeypatch):
        scheduled = schedule(db, parent)
        monkeypatch.setattr(get_settings(), "FOLLOW_UP_MAX_ATTEMPTS", 1)
        broken = TransportSelector([SendGridTransport(api_key=None)])

        first = process_due(db, now=NOW + timedelta(days=4), selector=broken)
        second = process_due(db, now=NOW + timedelta(days=5), selector=broken)

        assert first.failed == 1
        assert second.due == 0
        assert db.get(Message, scheduled.message_id).status == "scheduled"

    def test_cancelled_when_coach_replied(self, db, parent, selector, gmail_service):
        scheduled = schedule(db, parent)
        mark_responded(db, parent.user_id, conversation_id=parent.provider_conversation_id)

        result = process_due(db, now=NOW + timedelta(days=4), selector=selector)

        assert result.cancelled == 1
        assert db.get(Message, scheduled.message_id).status == "cancelled"
        assert len(gmail_service.sent) == 1

    def test_one_bad_item_does_not_stop_the_sweep(self, db, parent, selector, gmail_service):
        orphan_coach = Coach(email=None, first_name="No", last_name="Email")
        db.add(orphan_coach)
        db.commit()
        bad = schedule_follow_up(
            db, parent.id, parent.user_id, orphan_coach.id, "Follow-up", "<p>x</p>", 1, now=NOW
        )
        good = schedule(db, parent, delay_days=2)

        result = process_due(db, now=NOW + timedelta(days=3), selector=selector)

        assert result.due == 2
        assert result.failed == 1
        assert result.sent == 1
        assert db.get(Message, bad.message_id).status == "scheduled"
        assert db.get(Message, good.message_id).status == "sent"

    def test_job_entry_point_uses_its_own_session(self, db, parent, selector):
        scheduled = schedule(db, parent)

        result = run_due_follow_up_sweep(now=NOW + timedelta(days=4), selector=selector)

        assert result.sent == 1
        db.expire_all()
        assert db.get(Message, scheduled.message_id).status == "sent"
