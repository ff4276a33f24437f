"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports (works with or without an install)
_TESTS_DIR = Path(__file__).resolve().parent
sys.path.insert(0, str(_TESTS_DIR.parent))  # => .../apps/api
sys.path.insert(0, str(_TESTS_DIR.parents[1] / "reaper"))  # => .../apps/reaper
sys.path.insert(0, str(_TESTS_DIR))  # shared helpers

# Must be set before subgate_api.db.session is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUBGATE_JSON_LOGS", "false")

from datetime import datetime  # noqa: E402
from typing import Callable, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from webhook_helpers import TEST_SECRETS  # noqa: E402
from subgate_api.billing.ledger import create_transaction, link_subscription  # noqa: E402
from subgate_api.billing.subscriptions import create_subscription  # noqa: E402
from subgate_api.db.models import Base  # noqa: E402
from subgate_api.db.session import get_db  # noqa: E402
from subgate_api.main import app  # noqa: E402


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory SQLite database per test (single shared connection)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def provider_secrets(monkeypatch) -> dict[str, str]:
    """Configure every provider signing secret."""
    for name, value in TEST_SECRETS.items():
        monkeypatch.setenv(name, value)
    return TEST_SECRETS


@pytest.fixture
def pending_order(db_session) -> Callable[..., str]:
    """Factory: pending transaction + pending subscription, returns transaction_id."""

    def _make(
        payment_method: str = "fastpay",
        user_id: str = "user_test_1",
        duration_days: int = 30,
        now: Optional[datetime] = None,
        with_subscription: bool = True,
    ) -> str:
        txn = create_transaction(
            db_session,
            user_id=user_id,
            payment_method=payment_method,
            amount="9.99",
        )
        if with_subscription:
            sub = create_subscription(
                db_session,
                user_id=user_id,
                plan_id="monthly",
                payment_method=payment_method,
                transaction_id=txn.transaction_id,
                amount="9.99",
                duration_days=duration_days,
                now=now,
            )
            link_subscription(db_session, txn.transaction_id, sub.id)
        return txn.transaction_id

    return _make


@pytest.fixture
def api_db(db_session, monkeypatch) -> Session:
    """Route every API database access to the test session."""

    def _get_test_db():
        yield db_session

    monkeypatch.setattr("subgate_api.routers.webhooks.get_db", _get_test_db)
    app.dependency_overrides[get_db] = _get_test_db
    try:
        yield db_session
    finally:
        app.dependency_overrides.clear()

