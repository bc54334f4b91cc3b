import logging
from datetime import datetime, timedelta
from typing import Generator, List, Optional, Tuple

from sqlalchemy import create_engine, inspect, or_, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from outreach.config import settings
from outreach.errors import InvalidTransition
from outreach.lifecycle import DISPATCHED, Direction, MessageStatus, can_transition

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite connections cross FastAPI's and
# APScheduler's worker threads
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from outreach import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and the messages table exists.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        if not inspect(engine).has_table("messages"):
            logger.error("Database schema not applied: 'messages' table not found")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

def create_message(db: Session, **fields):
    """
    Insert a message and return it.

    Raises the underlying SQLAlchemy error on failure; callers decide whether
    a failed write is a duplicate, a validation problem or a consistency risk.
    """
    from outreach.models import Message

    message = Message(**fields)
    db.add(message)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.info(
        f"Message stored: id={message.id}, user={message.user_id}, "
        f"status={message.status}, direction={message.direction}"
    )
    return message


def insert_unique_message(db: Session, **fields) -> Tuple[object, bool]:
    """
    Insert a message keyed by (user_id, provider_message_id), idempotently.

    Returns:
        Tuple of (message, is_duplicate). On a duplicate the already stored
        message is returned.
    """
    existing = find_by_provider_message_id(db, fields["user_id"], fields["provider_message_id"])
    if existing is not None:
        logger.info(f"Duplicate provider message: {fields['provider_message_id']}")
        return existing, True

    try:
        return create_message(db, **fields), False
    except IntegrityError:
        # A concurrent import committed the same key between lookup and insert
        existing = find_by_provider_message_id(db, fields["user_id"], fields["provider_message_id"])
        if existing is None:
            raise
        logger.info(f"Duplicate provider message (race): {fields['provider_message_id']}")
        return existing, True


def get_message(db: Session, message_id: int, user_id: Optional[int] = None):
    from outreach.models import Message

    query = db.query(Message).filter(Message.id == message_id)
    if user_id is not None:
        query = query.filter(Message.user_id == user_id)
    return query.first()


def update_message(db: Session, message_id: int, **changes):
    """
    Apply a partial update to a message.

    Status changes are checked against the lifecycle table; an illegal move
    raises InvalidTransition and nothing is written.

    Returns:
        The updated message, or None if it does not exist.
    """
    from outreach.models import Message

    message = db.get(Message, message_id)
    if message is None:
        return None

    target = changes.get("status")
    if target is not None and not can_transition(message.status, target):
        raise InvalidTransition(message_id, message.status, MessageStatus(target).value)

    for key, value in changes.items():
        if isinstance(value, (MessageStatus, Direction)):
            value = value.value
        setattr(message, key, value)

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.debug(f"Message {message_id} updated: {sorted(changes)}")
    return message


def find_by_provider_message_id(db: Session, user_id: int, provider_message_id: str):
    from outreach.models import Message

    return (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.provider_message_id == provider_message_id)
        .first()
    )


def find_by_user_and_conversation(db: Session, user_id: int, conversation_id: str) -> List:
    from outreach.models import Message

    return (
        db.query(Message)
        .filter(Message.user_id == user_id, Message.provider_conversation_id == conversation_id)
        .order_by(Message.id.asc())
        .all()
    )


def list_by_user(
    db: Session,
    user_id: int,
    direction: Optional[str] = None,
    status: Optional[str] = None,
    counterpart_id: Optional[int] = None,
) -> List:
    from outreach.models import Message

    query = db.query(Message).filter(Message.user_id == user_id)
    if direction:
        query = query.filter(Message.direction == direction)
    if status:
        query = query.filter(Message.status == status)
    if counterpart_id is not None:
        query = query.filter(Message.counterpart_id == counterpart_id)
    return query.order_by(Message.created_at.asc(), Message.id.asc()).all()


def list_conversations(db: Session, user_id: int) -> List:
    """
    One entry per outbound conversation the user owns, represented by the
    earliest outbound message in it.
    """
    from outreach.models import Message

    rows = (
        db.query(Message)
        .filter(
            Message.user_id == user_id,
            Message.direction == Direction.OUTBOUND.value,
            Message.provider_conversation_id.isnot(None),
        )
        .order_by(Message.id.asc())
        .all()
    )
    seen = {}
    for row in rows:
        seen.setdefault(row.provider_conversation_id, row)
    return list(seen.values())


def latest_outbound(db: Session, user_id: int, counterpart_id: Optional[int] = None):
    """Most recently sent outbound message of a user, optionally to one coach."""
    from outreach.models import Message

    query = db.query(Message).filter(
        Message.user_id == user_id,
        Message.direction == Direction.OUTBOUND.value,
        Message.status.in_([s.value for s in DISPATCHED]),
    )
    if counterpart_id is not None:
        query = query.filter(Message.counterpart_id == counterpart_id)
    return query.order_by(Message.sent_at.desc(), Message.id.desc()).first()


def mark_responded(
    db: Session,
    user_id: int,
    conversation_id: Optional[str] = None,
    counterpart_id: Optional[int] = None,
) -> int:
    """
    Flag outbound messages as answered.

    With a conversation id every outbound message in that conversation is
    flagged. Without one, the dispatched outbound messages to the counterpart
    are flagged instead. Dispatched messages also advance to ``replied`` when
    the lifecycle allows it.

    Returns:
        Number of messages flagged.
    """
    from outreach.models import Message

    query = db.query(Message).filter(
        Message.user_id == user_id,
        Message.direction == Direction.OUTBOUND.value,
    )
    if conversation_id:
        query = query.filter(Message.provider_conversation_id == conversation_id)
    elif counterpart_id is not None:
        query = query.filter(
            Message.counterpart_id == counterpart_id,
            Message.status.in_([s.value for s in DISPATCHED]),
        )
    else:
        return 0

    count = 0
    for message in query.all():
        message.has_responded = True
        if MessageStatus(message.status) in DISPATCHED and can_transition(
            message.status, MessageStatus.REPLIED
        ):
            message.status = MessageStatus.REPLIED.value
        count += 1

    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Marked {count} outbound messages as responded for user {user_id}")
    return count


# =============================================================================
# Follow-up sweep support
# =============================================================================

def _unclaimed(claim_ttl_seconds: int):
    from outreach.models import Message, utcnow

    # Leases are measured on the wall clock, never on a sweep's due-time cutoff
    return or_(
        Message.claimed_at.is_(None),
        Message.claimed_at < utcnow() - timedelta(seconds=claim_ttl_seconds),
    )


def select_due_follow_ups(
    db: Session,
    now: datetime,
    claim_ttl_seconds: int,
    max_attempts: int = 0,
) -> List[int]:
    """Ids of scheduled follow-ups whose due time has passed and nobody holds."""
    from outreach.models import Message

    query = db.query(Message.id).filter(
        Message.status == MessageStatus.SCHEDULED.value,
        Message.is_follow_up.is_(True),
        Message.scheduled_for <= now,
        Message.needs_review.is_(False),
        _unclaimed(claim_ttl_seconds),
    )
    if max_attempts > 0:
        query = query.filter(Message.send_attempts < max_attempts)
    return [row.id for row in query.order_by(Message.scheduled_for.asc(), Message.id.asc()).all()]


def claim_follow_up(db: Session, message_id: int, claim_ttl_seconds: int) -> bool:
    """
    Atomically take ownership of a due follow-up.

    The eligibility check and the claim are one UPDATE statement, so two
    sweeps racing on the same row cannot both succeed. The lease starts at
    the moment of the claim.
    """
    from outreach.models import Message, utcnow

    result = db.execute(
        update(Message)
        .where(
            Message.id == message_id,
            Message.status == MessageStatus.SCHEDULED.value,
            Message.needs_review.is_(False),
            _unclaimed(claim_ttl_seconds),
        )
        .values(claimed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    claimed = result.rowcount == 1
    logger.debug(f"Claim follow-up {message_id}: {'acquired' if claimed else 'lost'}")
    return claimed


def release_follow_up(db: Session, message_id: int, error: Optional[str] = None) -> None:
    """Drop a claim; with an error the attempt is counted for observability."""
    from outreach.models import Message

    values = {"claimed_at": None}
    if error is not None:
        values["send_attempts"] = Message.send_attempts + 1
        values["last_error"] = error
    db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    # The ORM copy is stale after a core UPDATE
    db.expire_all()


def hold_follow_up(db: Session, message_id: int, error: str) -> None:
    """
    Take a follow-up out of the sweep for good.

    Used when the provider accepted the send but recording it failed; the row
    waits for manual reconciliation instead of being sent again.
    """
    from outreach.models import Message

    db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(
            needs_review=True,
            claimed_at=None,
            last_error=error,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.expire_all()
