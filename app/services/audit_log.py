"""
Governance audit log.

Append-only record of workflow events (notifications, change-request
decisions, ...).  Writes are non-blocking: a failure is logged and the
calling workflow operation carries on.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from app.core.exceptions import PersistenceError
from app.storage import get_repositories

logger = logging.getLogger(__name__)

AUDIT_AREAS = ("SUBMISSIONS", "WORKFLOW", "ADMIN", "SPO_COMMITTEE", "OPERATIONS", "SECURITY")
AUDIT_OUTCOMES = ("SUCCESS", "FAILED", "DENIED")


def _normalize_metadata(metadata: dict | None) -> dict | None:
    """Keep scalar values only; nested structures are dropped."""
    if not metadata:
        return None
    kept = {
        key: value for key, value in metadata.items()
        if value is None or isinstance(value, (str, int, float, bool))
    }
    return kept or None


def _clean(value, *, lower=False):
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip().lower() if lower else value.strip()


def append_governance_audit_log(
    *,
    area: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    outcome: str = "SUCCESS",
    actor_name: str | None = None,
    actor_email: str | None = None,
    actor_role: str | None = None,
    details: str | None = None,
    metadata: dict | None = None,
) -> dict | None:
    """Append an entry; returns it, or None when the write failed."""
    entry = {
        "id": f"gov-audit-{uuid.uuid4().hex[:12]}",
        "created_at": datetime.now(timezone.utc).isoformat(),
        "area": area,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "outcome": outcome,
        "actor_name": _clean(actor_name),
        "actor_email": _clean(actor_email, lower=True),
        "actor_role": _clean(actor_role),
        "details": _clean(details),
        "metadata": _normalize_metadata(metadata),
    }
    try:
        return get_repositories().audit_log.append(entry)
    except PersistenceError as exc:
        logger.warning("Governance audit write failed for %s/%s: %s", area, action, exc,
                       extra={"persistence_code": exc.code})
        return None


def list_governance_audit_log(limit: int = 200) -> list[dict]:
    """Newest first, ``limit`` clamped to 1..1000."""
    limit = min(max(int(limit), 1), 1000)
    rows = get_repositories().audit_log.read_all()
    rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    return rows[:limit]
