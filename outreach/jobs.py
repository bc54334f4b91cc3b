import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler

from outreach.config import get_settings
from outreach.directory import list_mailbox_users
from outreach.followups import run_due_follow_up_sweep
from outreach.importer import import_new_replies
from outreach.storage import SessionLocal

logger = logging.getLogger(__name__)
scheduler = BackgroundScheduler()


def run_follow_up_sweep_job():
    """Follow-up sweep wrapper; errors are logged so the job keeps its schedule."""
    try:
        logger.info("Checking for due follow-up emails...")
        run_due_follow_up_sweep()
    except Exception:
        logger.exception("Scheduler error (follow-up sweep)")


def run_reply_import_job():
    """Import replies for every user with a connected mailbox."""
    db = SessionLocal()
    try:
        users = list_mailbox_users(db)
        logger.info(f"Scheduler: importing replies for {len(users)} users")
        for user in users:
            try:
                import_new_replies(db, user.id)
            except Exception:
                logger.exception(f"Scheduler error (reply import, user {user.id})")
                db.rollback()
    finally:
        db.close()


def start_scheduler():
    """Start the background jobs; the sweep also runs once right away."""
    if scheduler.running:
        return

    settings = get_settings()
    scheduler.add_job(
        run_follow_up_sweep_job,
        "interval",
        minutes=settings.FOLLOW_UP_SWEEP_INTERVAL_MINUTES,
        id="follow_up_sweep",
        next_run_time=datetime.now(),
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        run_reply_import_job,
        "interval",
        minutes=settings.REPLY_IMPORT_INTERVAL_MINUTES,
        id="reply_import",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Background scheduler started")


def shutdown_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
