"""SubGate Reaper main entry point.

Two independent loops, one thread each:

1. Expiry Loop:
   - Sweep: status='active' AND expires_at <= NOW() -> 'expired'
   - Interval: EXPIRY_INTERVAL_SEC (default 300 seconds)

2. Retention Loop:
   - Purge: webhook delivery records 'done' for longer than DEDUP_RETENTION_DAYS
   - Interval: DEDUP_RETENTION_INTERVAL_SEC (default 86400 seconds)
"""

import logging
import os
import threading

from subgate_api.config.env import get_database_url, get_dedup_retention_days
from subgate_api.db.engine import build_engine, build_sessionmaker
from subgate_api.utils import configure_json_logging
from subgate_reaper.loops.expiry_loop import expiry_loop, get_expiry_interval_seconds
from subgate_reaper.loops.lifecycle import install_signal_handlers
from subgate_reaper.loops.retention_loop import (
    get_retention_loop_interval_seconds,
    retention_loop,
)

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def main() -> None:
    """Start both loops and block until SIGTERM/SIGINT."""
    install_signal_handlers()

    # Fail-fast in production, docker-compose default elsewhere
    database_url = get_database_url()

    expiry_interval_sec = get_expiry_interval_seconds()
    retention_enabled = os.getenv("DEDUP_RETENTION_ENABLED", "true").lower() in {"true", "1", "yes"}
    retention_interval_sec = get_retention_loop_interval_seconds()
    retention_days = get_dedup_retention_days()

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    # SQLAlchemy sessions are NOT thread-safe: one per loop
    expiry_session = SessionLocal()

    logger.info(f"Expiry Loop: interval={expiry_interval_sec}s")
    if retention_enabled:
        logger.info(f"Retention Loop: interval={retention_interval_sec}s, cutoff={retention_days} days")
    else:
        logger.info("Retention Loop: DISABLED (DEDUP_RETENTION_ENABLED=false)")

    threads = [
        threading.Thread(
            target=expiry_loop,
            kwargs={"db": expiry_session, "interval_seconds": expiry_interval_sec},
            name="ExpiryLoop",
            daemon=False,
        )
    ]
    if retention_enabled:
        threads.append(
            threading.Thread(
                target=retention_loop,
                kwargs={
                    "session_factory": SessionLocal,
                    "interval_seconds": retention_interval_sec,
                    "cutoff_days": retention_days,
                },
                name="RetentionLoop",
                daemon=False,
            )
        )

    try:
        for thread in threads:
            logger.info(f"Starting {thread.name} thread...")
            thread.start()
        for thread in threads:
            thread.join()
    finally:
        expiry_session.close()
        engine.dispose()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
