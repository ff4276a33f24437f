"""Database session management.

Engine and session factory are built once at import from DATABASE_URL
(production fail-fast, docker-compose default elsewhere).
"""

from typing import Generator

from sqlalchemy.orm import Session

from subgate_api.config.env import get_database_url
from subgate_api.db.engine import build_engine, build_sessionmaker

DATABASE_URL = get_database_url()

engine = build_engine(DATABASE_URL)

SessionLocal = build_sessionmaker(engine)


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
