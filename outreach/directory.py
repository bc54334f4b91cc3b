"""
Collaborators consumed by the outreach engine.

User and coach records, the mailbox credential, per-user coach status, the
activity log and the task reminder store. Profile and coach CRUD live
elsewhere; this module only reads them and performs the writes the engine is
contractually allowed to make.

Activity and task writes are fire-and-forget: a failure is logged and never
propagates into the primary operation.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from outreach.models import Activity, Coach, CoachStatus, Task, User, utcnow

logger = logging.getLogger(__name__)

NOT_CONTACTED = "Not Contacted"
CONTACTED = "Contacted"


@dataclass(frozen=True)
class Credential:
    """Mailbox OAuth credential of one user."""

    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime] = None

    @property
    def has_mailbox(self) -> bool:
        return bool(self.access_token and self.refresh_token)


def credential_for(user: User) -> Credential:
    return Credential(
        access_token=user.gmail_access_token,
        refresh_token=user.gmail_refresh_token,
        expires_at=user.gmail_token_expiry,
    )


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def get_coach(db: Session, coach_id: int) -> Optional[Coach]:
    return db.get(Coach, coach_id)


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(func.lower(User.email) == email.lower()).first()


def find_coach_by_email(db: Session, email: str) -> Optional[Coach]:
    return db.query(Coach).filter(func.lower(Coach.email) == email.lower()).first()


def list_mailbox_users(db: Session) -> list:
    """Users with a connected mailbox, for the periodic reply import."""
    return (
        db.query(User)
        .filter(User.gmail_access_token.isnot(None), User.gmail_refresh_token.isnot(None))
        .order_by(User.id.asc())
        .all()
    )


def coach_display_name(coach: Coach) -> str:
    return f"{coach.first_name} {coach.last_name}".strip() or (coach.email or f"coach {coach.id}")


def mark_contacted(db: Session, user_id: int, coach_id: int) -> None:
    """Advance the coach status to Contacted if it is still the initial default."""
    try:
        row = (
            db.query(CoachStatus)
            .filter(CoachStatus.user_id == user_id, CoachStatus.coach_id == coach_id)
            .first()
        )
        if row is None:
            db.add(CoachStatus(user_id=user_id, coach_id=coach_id, status=CONTACTED))
        elif row.status == NOT_CONTACTED:
            row.status = CONTACTED
        else:
            return
        db.commit()
        logger.info(f"Coach {coach_id} marked contacted for user {user_id}")
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to update coach status ({user_id}, {coach_id}): {e}")


def record_activity(
    db: Session,
    user_id: int,
    coach_id: Optional[int],
    type: str,
    description: str,
    meta_data: Optional[dict] = None,
) -> None:
    try:
        db.add(
            Activity(
                user_id=user_id,
                coach_id=coach_id,
                type=type,
                description=description,
                timestamp=utcnow(),
                meta_data=meta_data or {},
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to record activity '{type}' for user {user_id}: {e}")


def create_task(
    db: Session,
    user_id: int,
    coach_id: Optional[int],
    title: str,
    due_date: datetime,
    type: str,
    meta_data: Optional[dict] = None,
) -> None:
    try:
        db.add(
            Task(
                user_id=user_id,
                coach_id=coach_id,
                title=title,
                due_date=due_date,
                completed=False,
                type=type,
                meta_data=meta_data or {},
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to create task '{title}' for user {user_id}: {e}")
