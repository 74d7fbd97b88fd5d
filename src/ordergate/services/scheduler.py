"""
Scheduler service for maintenance tasks.

Expiry of cooldowns and conversation states is checked at read time; this
job only deletes the stale rows so the tables do not grow without bound.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler

from ordergate.database.models import utcnow
from ordergate.database.service import DatabaseService

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 300


@dataclass
class SweepResult:
    cooldowns: int
    conversations: int


def sweep_expired_records(db: DatabaseService, now: datetime | None = None) -> SweepResult:
    """
    Delete expired cooldowns and conversation states.

    Args:
        db: Database service.
        now: Reference time (defaults to current UTC time).

    Returns:
        SweepResult: Number of deleted rows per table.
    """
    now = now or utcnow()
    result = SweepResult(
        cooldowns=db.delete_expired_cooldowns(now),
        conversations=db.delete_expired_conversations(now),
    )
    if result.cooldowns or result.conversations:
        logger.info(
            f"Swept {result.cooldowns} expired cooldowns and {result.conversations} expired conversation states"
        )
    else:
        logger.debug("No expired records to sweep")
    return result


def run_sweep_job(db: DatabaseService) -> None:
    """Scheduler entry point; failures are logged so the job keeps running."""
    try:
        sweep_expired_records(db)
    except Exception as e:
        logger.error(f"Error sweeping expired records: {e}", exc_info=True)


def start_scheduler(
    db: DatabaseService, interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
) -> BackgroundScheduler:
    """
    Initialize and start the APScheduler scheduler.

    Uses BackgroundScheduler which runs jobs in a background thread and
    doesn't require a running event loop.

    Args:
        db: Database service passed to the sweep job.
        interval_seconds: Seconds between sweeps.

    Returns:
        BackgroundScheduler: Started scheduler instance.
    """
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_sweep_job,
        "interval",
        seconds=interval_seconds,
        args=[db],
        id="sweep_expired_job",
        name="Delete expired cooldowns and conversation states",
    )
    scheduler.start()
    logger.info(f"Scheduler started with sweep job (every {interval_seconds} seconds)")
    return scheduler
