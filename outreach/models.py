"""
SQLAlchemy ORM models for database tables.

The messages table is the outreach ledger. The remaining tables are the
minimal shape of the collaborators the engine consumes (users with their
mailbox credentials, coaches, per-user coach status, activities and tasks).
For Pydantic request/response schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from outreach.lifecycle import Direction, MessageStatus
from outreach.storage import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Message(Base):
    """
    One outbound or inbound email.

    Table: messages
    Unique: (user_id, provider_message_id), the import dedup key
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_message_id", name="uq_messages_user_provider_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    counterpart_id = Column(Integer, ForeignKey("coaches.id"), nullable=False, index=True)

    provider_message_id = Column(String, nullable=True)
    provider_conversation_id = Column(String, nullable=True, index=True)
    transport = Column(String, nullable=True)

    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False, default="")
    text = Column(Text, nullable=True)

    direction = Column(String, nullable=False, default=Direction.OUTBOUND.value)
    status = Column(String, nullable=False, default=MessageStatus.SENT.value, index=True)
    template_id = Column(Integer, nullable=True)

    is_follow_up = Column(Boolean, nullable=False, default=False)
    has_responded = Column(Boolean, nullable=False, default=False)
    parent_message_id = Column(Integer, ForeignKey("messages.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    scheduled_for = Column(DateTime, nullable=True, index=True)
    received_at = Column(DateTime, nullable=True)

    # Follow-up sweep bookkeeping
    claimed_at = Column(DateTime, nullable=True)
    send_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    # Delivered but not recorded; excluded from the sweep until reconciled
    needs_review = Column(Boolean, nullable=False, default=False)


class User(Base):
    """Athlete account; owns the mailbox credential."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)

    gmail_access_token = Column(Text, nullable=True)
    gmail_refresh_token = Column(Text, nullable=True)
    gmail_token_expiry = Column(DateTime, nullable=True)


class Coach(Base):
    __tablename__ = "coaches"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, nullable=True, index=True)
    first_name = Column(String, nullable=False, default="")
    last_name = Column(String, nullable=False, default="")
    school = Column(String, nullable=False, default="")
    sport = Column(String, nullable=False, default="")


class CoachStatus(Base):
    """Per-user relationship status with a coach."""
    __tablename__ = "coach_statuses"
    __table_args__ = (UniqueConstraint("user_id", "coach_id", name="uq_coach_status_user_coach"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    coach_id = Column(Integer, ForeignKey("coaches.id"), nullable=False)
    status = Column(String, nullable=False, default="Not Contacted")


class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    coach_id = Column(Integer, nullable=True)
    type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    meta_data = Column(JSON, nullable=True)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    coach_id = Column(Integer, nullable=True)
    title = Column(Text, nullable=False)
    due_date = Column(DateTime, nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    type = Column(String, nullable=False)
    meta_data = Column(JSON, nullable=True)
