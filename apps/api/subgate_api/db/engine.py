"""Database engine builder (single source for API, reaper and migrations).

- Default pool: NullPool (client-side pooling disabled; pgbouncer friendly)
- ENV: SUBGATE_DB_POOL=nullpool|queuepool (default: nullpool)
- ENV: SUBGATE_DB_POOL_SIZE / SUBGATE_DB_MAX_OVERFLOW (queuepool only)
- SQLite URLs (local runs, tests) get check_same_thread=False and a busy timeout
"""

import logging
import os
import re
from typing import Any, Optional

from sqlalchemy import Engine, NullPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SEC = 30


def _mask_password(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r"://([^:]+):([^@]+)@", r"://\1:***@", url)


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Build SQLAlchemy engine.

    Args:
        database_url: Database URL. If None, reads from env DATABASE_URL.

    Returns:
        SQLAlchemy Engine instance.

    Raises:
        ValueError: If DATABASE_URL not provided and not in environment,
            or SUBGATE_DB_POOL holds an unknown value.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError(
            "DATABASE_URL is required. "
            "Pass as argument or set DATABASE_URL environment variable."
        )

    connect_args: dict[str, Any] = {}
    if _is_sqlite(url):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SEC}
    else:
        app_name = os.getenv("SUBGATE_DB_APPLICATION_NAME", "subgate")
        if app_name:
            connect_args["application_name"] = app_name

    pool_mode = os.getenv("SUBGATE_DB_POOL", "nullpool").lower()

    if pool_mode == "nullpool":
        engine = create_engine(
            url,
            poolclass=NullPool,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
    elif pool_mode == "queuepool":
        engine = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=int(os.getenv("SUBGATE_DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("SUBGATE_DB_MAX_OVERFLOW", "10")),
            connect_args=connect_args,
        )
    else:
        raise ValueError(
            f"Invalid SUBGATE_DB_POOL value: {pool_mode}. "
            "Must be 'nullpool' or 'queuepool'."
        )

    logger.debug(
        "Database engine created: pool=%s, url=%s",
        engine.pool.__class__.__name__,
        _mask_password(url),
    )
    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    """Build SQLAlchemy sessionmaker (autocommit=False, autoflush=False)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
