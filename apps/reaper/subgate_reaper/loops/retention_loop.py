"""Delivery record retention loop.

Webhook delivery records only need to outlive the providers' retry
windows. Completed ('done') records older than DEDUP_RETENTION_DAYS
(default: 30) are deleted in batches; 'processing' and 'failed' records are
never purged here.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from subgate_api.billing.webhook_dedup import purge_dedup_events
from subgate_api.config.env import get_dedup_retention_days
from subgate_reaper.loops.lifecycle import shutdown_event

logger = logging.getLogger(__name__)


def get_retention_loop_interval_seconds() -> int:
    """Interval in seconds (default: 86400 = 24 hours)."""
    return int(os.getenv("DEDUP_RETENTION_INTERVAL_SEC", "86400"))


def run_retention_cleanup(
    session: Session,
    cutoff_days: int,
    batch_size: int = 1000,
    now: Optional[datetime] = None,
) -> int:
    """Run one iteration of delivery record cleanup.

    Deletes batch after batch until a batch comes back short.

    Returns:
        Number of delivery records deleted
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=cutoff_days)

    total = 0
    while True:
        deleted = purge_dedup_events(session, older_than=cutoff, limit=batch_size)
        total += deleted
        if deleted < batch_size:
            break

    if total:
        logger.info(
            f"Retention cleanup deleted {total} delivery records",
            extra={"deleted": total, "cutoff_days": cutoff_days},
        )
    else:
        logger.info("No expired delivery records found for retention cleanup")
    return total


def retention_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    cutoff_days: Optional[int] = None,
    stop_after_one_iteration: bool = False,
) -> None:
    """Retention cleanup loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval (default: DEDUP_RETENTION_INTERVAL_SEC)
        cutoff_days: Retention cutoff (default: DEDUP_RETENTION_DAYS)
        stop_after_one_iteration: For testing only
    """
    if interval_seconds is None:
        interval_seconds = get_retention_loop_interval_seconds()
    if cutoff_days is None:
        cutoff_days = get_dedup_retention_days()

    logger.info(
        f"Starting retention cleanup loop: interval={interval_seconds}s, cutoff={cutoff_days} days"
    )

    while not shutdown_event.is_set():
        try:
            with session_factory() as session:
                run_retention_cleanup(session=session, cutoff_days=cutoff_days)
        except Exception as e:
            logger.error(f"Retention cleanup loop error: {e}", exc_info=True)

        if stop_after_one_iteration:
            break

        shutdown_event.wait(interval_seconds)
