"""
Scheduler Service for Automated Bank Syncs

Uses APScheduler to periodically look for bank connections whose sync
interval has elapsed and enqueue a sync job for each of them. The same
BackgroundScheduler also carries the background job queue.
"""

import logging
from datetime import datetime
from typing import Optional
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import SessionLocal
from app.core.jobs import BackgroundJobQueue, set_job_queue

logger = logging.getLogger(__name__)


class BankSyncScheduler:
    """Manages the periodic auto-sync check and owns the background job queue."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.job_queue = BackgroundJobQueue(scheduler=self.scheduler)
        self.scheduler.start()
        logger.info("Bank sync scheduler started")

    def setup_schedules(self):
        """Set up all scheduled jobs."""
        self.scheduler.add_job(
            self.enqueue_due_syncs,
            trigger=IntervalTrigger(minutes=settings.BANKING_AUTO_SYNC_INTERVAL_MINUTES),
            id='bank_auto_sync',
            name=f'Enqueue due bank syncs (every {settings.BANKING_AUTO_SYNC_INTERVAL_MINUTES} min)',
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Scheduled jobs configured")

    def enqueue_due_syncs(self) -> int:
        """Enqueue a sync job for every connection that needs one. Returns the count."""
        from app.modules.banking.sync import SyncBankConnectionJob, connections_due_for_sync

        db: Session = self.session_factory()
        try:
            due = connections_due_for_sync(db, datetime.utcnow())
            for connection in due:
                self.job_queue.enqueue(SyncBankConnectionJob(connection.id))
            if due:
                logger.info(f"Enqueued {len(due)} scheduled bank sync(s)")
            return len(due)
        except Exception as e:
            logger.error(f"Error while enqueuing scheduled bank syncs: {e}", exc_info=True)
            return 0
        finally:
            db.close()

    def shutdown(self):
        """Shutdown the scheduler."""
        self.job_queue.shutdown()
        logger.info("Bank sync scheduler stopped")


# Global scheduler instance
_scheduler: Optional[BankSyncScheduler] = None


def get_scheduler() -> Optional[BankSyncScheduler]:
    """Get the global scheduler instance."""
    return _scheduler


def start_scheduler():
    """Start the bank sync scheduler and register its queue as the process-wide queue."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BankSyncScheduler()
        _scheduler.setup_schedules()
        set_job_queue(_scheduler.job_queue)
        logger.info("Bank sync scheduler started and configured")
    else:
        logger.info("Bank sync scheduler already running")


def stop_scheduler():
    """Stop the bank sync scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown()
        set_job_queue(None)
        _scheduler = None
        logger.info("Bank sync scheduler stopped")
