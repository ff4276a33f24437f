"""Expiry sweeper loop.

- Sweep: status='active' AND expires_at <= NOW() -> 'expired'
- One conditional bulk UPDATE per iteration; safe to run from several
  replicas at once (a row can only be expired once)
- Interval: EXPIRY_INTERVAL_SEC (default 300)
"""

import logging
import os
import time

from sqlalchemy.orm import Session

from subgate_api.billing.subscriptions import expire_subscriptions
from subgate_reaper.loops.lifecycle import shutdown_event

logger = logging.getLogger(__name__)


def get_expiry_interval_seconds() -> int:
    return int(os.getenv("EXPIRY_INTERVAL_SEC", "300"))


def expiry_loop(
    db: Session,
    interval_seconds: int = 300,
    stop_after_one_iteration: bool = False,
) -> None:
    """Periodically expire subscriptions past their expires_at.

    Args:
        db: Database session (owned by this loop's thread)
        interval_seconds: Sleep between sweeps
        stop_after_one_iteration: For testing only - exit after one sweep
    """
    logger.info(f"Expiry loop started (interval={interval_seconds}s)")

    iteration = 0
    total_expired = 0

    while not shutdown_event.is_set():
        iteration += 1
        iteration_start = time.time()

        try:
            # Clear session cache to prevent stale data in long-running process
            db.expire_all()

            expired = expire_subscriptions(db)
            total_expired += expired

            if expired:
                logger.info(
                    f"Expiry iteration {iteration}: {expired} subscriptions expired",
                    extra={
                        "iteration": iteration,
                        "expired": expired,
                        "duration_ms": int((time.time() - iteration_start) * 1000),
                        "total_expired": total_expired,
                    },
                )
            else:
                logger.debug(f"Expiry iteration {iteration}: nothing to expire")

        except Exception as e:
            db.rollback()
            logger.error(f"Expiry loop error in iteration {iteration}: {e}", exc_info=True)

        if stop_after_one_iteration:
            logger.info("Expiry loop stopping after one iteration (test mode)")
            break

        # Interruptible sleep - allows immediate shutdown on signal
        shutdown_event.wait(interval_seconds)

    logger.info(
        f"Expiry loop stopped after {iteration} iterations",
        extra={"total_iterations": iteration, "total_expired": total_expired},
    )
