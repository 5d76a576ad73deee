"""
Approval Request Store and Decision Engine.

One row per (entity, role-context) attempt to obtain a decision.  Rows are
updated in place; a status change never creates a new row.

At most one PENDING row exists per
(entity_id, entity_type, role_context, approver_email).  Creating a
duplicate is a no-op.

Row shape:
    {
        "id": "apr-…", "entity_id", "entity_type", "stage_context",
        "role_context", "status",
        "approver_user_id", "approver_email", "approver_azure_object_id", "approver_name",
        "created_by_user_id", "requested_at", "decided_at", "comment",
        "created_at", "updated_at",
    }

Usage:
    from app.services.approval_requests import (
        create_approval_requests_for_submission,
        decide_approval_request_for_principal,
    )

    created = create_approval_requests_for_submission(submission, ["BUSINESS_SPONSOR"])
    row = decide_approval_request_for_principal(
        submission, principal, "APPROVED", comment="ok",
    )
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from app.core.exceptions import ApprovalAssignmentError, ValidationError
from app.services.identity import (
    Principal,
    approver_identity,
    identity_matches,
    normalize_email,
    normalize_id,
)
from app.services.role_contexts import (
    SPONSOR_ROLE_CONTEXTS,
    approval_entity_type,
    get_required_approval_role_contexts_for_submission,
    map_role_context_to_approval_stage,
    resolve_role_context_person,
    resolve_stage_context,
    role_contexts_for_stage,
)
from app.services.user_directory import find_user_by_email
from app.storage import get_repositories

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("PENDING", "APPROVED", "REJECTED", "NEED_MORE_INFO", "CANCELLED")
DECISIONS = ("APPROVED", "REJECTED", "NEED_MORE_INFO")
OPEN_STATUSES = ("PENDING", "NEED_MORE_INFO")

DEFAULT_CANCEL_REASON = "Pending request cancelled due to sponsor update."


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _repo():
    return get_repositories().approval_requests


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════


def list_approval_requests() -> list[dict]:
    return _repo().read_all()


def get_approval_request(request_id: str) -> dict | None:
    return next((r for r in _repo().read_all() if r["id"] == request_id), None)


def list_approval_requests_for_entity(entity_id: str, entity_type: str | None = None) -> list[dict]:
    return [
        r for r in _repo().read_all()
        if r["entity_id"] == entity_id and (not entity_type or r["entity_type"] == entity_type)
    ]


def list_pending_approval_requests_for_principal(principal: Principal) -> list[dict]:
    """Open (PENDING / NEED_MORE_INFO) rows whose approver matches the principal."""
    identity = principal.identity()
    return [
        r for r in _repo().read_all()
        if r["status"] in OPEN_STATUSES and identity_matches(identity, approver_identity(r))
    ]


def list_approval_requests_initiated_by_principal(principal: Principal) -> list[dict]:
    """Rows whose ``created_by_user_id`` is the principal's id or e-mail, newest first."""
    principal_id = normalize_id(principal.id)
    principal_email = principal.normalized_email

    def _initiated(row):
        created_by = row.get("created_by_user_id")
        if principal_id and normalize_id(created_by) == principal_id:
            return True
        return bool(principal_email and normalize_email(created_by) == principal_email)

    rows = [r for r in _repo().read_all() if _initiated(r)]
    rows.sort(key=lambda r: r.get("requested_at") or "", reverse=True)
    return rows


# ═══════════════════════════════════════════════════════════════════════════
#  Create / cancel
# ═══════════════════════════════════════════════════════════════════════════


def _find_pending_duplicate(rows, entity_id, entity_type, role_context, approver_email):
    return next(
        (
            r for r in rows
            if r["entity_id"] == entity_id
            and r["entity_type"] == entity_type
            and r["role_context"] == role_context
            and r["status"] == "PENDING"
            and normalize_email(r.get("approver_email")) == approver_email
        ),
        None,
    )


def create_approval_requests_for_submission(
    submission: dict,
    role_contexts,
    requested_at: str | None = None,
    created_by: str | None = None,
) -> list[dict]:
    """Create one PENDING request per role-context; returns only the new rows.

    Roles with nobody resolvable are skipped.  A role that already has an
    identical pending request is skipped too (idempotent creation).
    """
    requested_at = requested_at or _now_iso()
    repo = _repo()
    rows = repo.read_all()
    entity_type = approval_entity_type(submission)
    stage_context = resolve_stage_context(submission)
    created = []

    for role_context in role_contexts:
        person = resolve_role_context_person(submission, role_context)
        if not person or not person["name"]:
            continue
        approver_email = normalize_email(person["email"])
        if _find_pending_duplicate(rows, submission["id"], entity_type, role_context, approver_email):
            continue

        user = find_user_by_email(approver_email) if approver_email else None
        row = {
            "id": f"apr-{uuid.uuid4().hex[:16]}",
            "entity_id": submission["id"],
            "entity_type": entity_type,
            "stage_context": stage_context,
            "role_context": role_context,
            "status": "PENDING",
            "approver_user_id": user["id"] if user else None,
            "approver_azure_object_id": person.get("azure_object_id") or (user or {}).get("azure_object_id"),
            "approver_name": person["name"],
            "approver_email": approver_email or normalize_email((user or {}).get("email")),
            "created_by_user_id": created_by,
            "requested_at": requested_at,
            "decided_at": None,
            "comment": None,
            "created_at": requested_at,
            "updated_at": requested_at,
        }
        rows.append(row)
        created.append(row)

    if created:
        repo.write_all(rows)
        logger.info("Created %d approval request(s) for %s", len(created), submission["id"],
                    extra={"submission_id": submission["id"]})
    return created


def cancel_pending_approval_requests_for_submission(
    submission: dict,
    reason: str | None = None,
    *,
    supersede_open: bool = False,
) -> list[dict]:
    """Cancel PENDING rows that are no longer required or point at a replaced person.

    A row survives only when its role-context is still required AND its
    approver e-mail equals the e-mail currently resolved for that role.
    Cancelled rows are never approved or rejected retroactively.

    ``supersede_open`` starts a fresh approval cycle: every open row
    (PENDING or NEED_MORE_INFO) is cancelled regardless of assignment.
    """
    repo = _repo()
    rows = repo.read_all()
    entity_type = approval_entity_type(submission)
    required = get_required_approval_role_contexts_for_submission(submission)
    expected = {}
    for role_context in required:
        person = resolve_role_context_person(submission, role_context)
        expected[role_context] = normalize_email((person or {}).get("email"))

    now = _now_iso()
    cancelled = []
    for row in rows:
        if row["entity_id"] != submission["id"] or row["entity_type"] != entity_type:
            continue
        if row["status"] not in (OPEN_STATUSES if supersede_open else ("PENDING",)):
            continue
        role_context = row["role_context"]
        if (not supersede_open and role_context in expected
                and normalize_email(row.get("approver_email")) == expected[role_context]):
            continue
        row.update(status="CANCELLED", comment=reason or DEFAULT_CANCEL_REASON, decided_at=now, updated_at=now)
        cancelled.append(row)

    if cancelled:
        repo.write_all(rows)
        logger.info("Cancelled %d pending approval request(s) for %s", len(cancelled), submission["id"],
                    extra={"submission_id": submission["id"]})
    return cancelled


# ═══════════════════════════════════════════════════════════════════════════
#  Decide
# ═══════════════════════════════════════════════════════════════════════════


def decide_approval_request_for_principal(
    submission: dict,
    principal: Principal,
    decision: str,
    *,
    comment: str | None = None,
    request_id: str | None = None,
    stage: str | None = None,
) -> dict:
    """Apply ``decision`` to the open request assigned to ``principal``.

    Candidate role-contexts come from ``stage`` (an approval stage code) or
    default to the five sponsor contexts.  Without ``request_id`` the row
    must also belong to the submission's current entity type.  The first
    matching row wins.

    When the same principal holds another open row on this entity whose
    role-context maps to the same approval stage (sponsor and delegate are
    one person), that row receives the same decision.  Rows in other stages
    are left for their own decision.

    Raises:
        ValidationError: unknown decision.
        ApprovalAssignmentError: nothing assigned to the principal matches.
    """
    if decision not in DECISIONS:
        raise ValidationError(f"Unsupported decision {decision!r}", details={"decision": decision})

    candidates = set(role_contexts_for_stage(stage)) if stage else set(SPONSOR_ROLE_CONTEXTS)
    entity_type = approval_entity_type(submission)
    identity = principal.identity()

    def _matches(row):
        if row["entity_id"] != submission["id"] or row["status"] not in OPEN_STATUSES:
            return False
        if not request_id and row["entity_type"] != entity_type:
            return False
        if request_id and row["id"] != request_id:
            return False
        if row["role_context"] not in candidates:
            return False
        return identity_matches(identity, approver_identity(row))

    repo = _repo()
    rows = repo.read_all()
    target = next((r for r in rows if _matches(r)), None)
    if target is None:
        raise ApprovalAssignmentError()

    now = _now_iso()
    target_stage = map_role_context_to_approval_stage(target["role_context"])
    comment = (comment or "").strip() or None
    for row in rows:
        same_holder = (
            row is target
            or (
                row["entity_id"] == target["entity_id"]
                and row["entity_type"] == target["entity_type"]
                and row["status"] in OPEN_STATUSES
                and map_role_context_to_approval_stage(row["role_context"]) == target_stage
                and identity_matches(identity, approver_identity(row))
            )
        )
        if same_holder:
            row.update(status=decision, comment=comment or row.get("comment"), decided_at=now, updated_at=now)

    repo.write_all(rows)
    logger.info("Approval request %s decided %s", target["id"], decision,
                extra={"submission_id": submission["id"], "approval_request_id": target["id"],
                       "role_context": target["role_context"]})
    return target


# ═══════════════════════════════════════════════════════════════════════════
#  Summary
# ═══════════════════════════════════════════════════════════════════════════


def get_approval_request_summary_for_submission(submission: dict) -> dict:
    """Aggregate view of the requests for the submission's current entity type.

    Each required role-context is judged by its most recent non-cancelled
    row, so decisions from an earlier approval cycle do not leak into a
    resubmission.  ``all_required_approved`` is False when nothing is
    required.
    """
    rows = list_approval_requests_for_entity(submission["id"], approval_entity_type(submission))
    required = get_required_approval_role_contexts_for_submission(submission)

    latest = {}
    for row in sorted(rows, key=lambda r: r.get("requested_at") or ""):
        if row["status"] != "CANCELLED":
            latest[row["role_context"]] = row

    def _latest_is(role_context, status):
        return role_context in latest and latest[role_context]["status"] == status

    return {
        "rows": rows,
        "required_contexts": required,
        "pending_count": sum(1 for r in rows if r["status"] == "PENDING"),
        "all_required_approved": bool(required) and all(_latest_is(c, "APPROVED") for c in required),
        "any_rejected": any(_latest_is(c, "REJECTED") for c in required),
        "any_need_more_info": any(_latest_is(c, "NEED_MORE_INFO") for c in required),
    }
