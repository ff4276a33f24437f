"""Billing audit trail helper.

Rows are added to the caller's session and committed together with the
state change they describe.
"""

from typing import Any, Optional

from sqlalchemy.orm import Session

from subgate_api.db.models import BillingAuditLog


def record_audit(
    db: Session,
    event_type: str,
    *,
    entity_type: str,
    entity_id: str,
    user_id: Optional[str] = None,
    actor: str = "SYSTEM",
    details: Optional[dict[str, Any]] = None,
) -> BillingAuditLog:
    """Stage one audit row (no commit)."""
    entry = BillingAuditLog(
        event_type=event_type,
        user_id=user_id,
        related_entity_type=entity_type,
        related_entity_id=entity_id,
        actor=actor,
        details=details or {},
    )
    db.add(entry)
    return entry
