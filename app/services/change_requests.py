"""
Change Request subsystem.

Post-approval amendments to a live project.  A change request carries field
deltas against the submission, a severity score, and its own approval chain
(independent of the proposal / funding chain).

State machine:
    DRAFT → SUBMITTED → UNDER_REVIEW → APPROVED | REJECTED
    APPROVED → IMPLEMENTED → CLOSED

``implement_change_request`` is the only operation that writes deltas back
onto the submission.  It snapshots the submission first; there is no
automatic rollback.

Usage:
    from app.services.change_requests import create_change_request_draft, submit_change_request

    details = create_change_request_draft(principal, payload)
    submit_change_request(details["change_request"]["id"], principal)
"""

from __future__ import annotations

import copy
import logging
import math
import uuid
from collections import OrderedDict
from datetime import datetime, timezone

from app.core.exceptions import (
    ChangeTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.services import change_impact as ci
from app.services import workflow_state as ws
from app.services.audit_log import append_governance_audit_log
from app.services.identity import Principal, approver_identity, identity_matches, normalize_email
from app.services.notification import NotificationService
from app.services.submission_service import get_submission, update_submission
from app.services.user_directory import find_users_by_role
from app.storage import get_repositories

logger = logging.getLogger(__name__)

CHANGE_STATUSES = ("DRAFT", "SUBMITTED", "UNDER_REVIEW", "APPROVED", "REJECTED", "IMPLEMENTED", "CLOSED")
OPEN_CHANGE_STATUSES = ("DRAFT", "SUBMITTED", "UNDER_REVIEW", "APPROVED", "IMPLEMENTED")

CHANGE_ROLE_CONTEXTS = ("BUSINESS_SPONSOR", "FINANCE_SPONSOR", "GOVERNANCE_REVIEW", "PM_HUB_ADMIN")

CHANGE_TRANSITIONS = {
    "submit": {"from": ["DRAFT"], "to": "SUBMITTED"},
    "approve": {"from": ["SUBMITTED", "UNDER_REVIEW"], "to": None},
    "reject": {"from": ["SUBMITTED", "UNDER_REVIEW"], "to": "REJECTED"},
    "implement": {"from": ["APPROVED"], "to": "IMPLEMENTED"},
    "close": {"from": ["IMPLEMENTED"], "to": "CLOSED"},
}

INITIATOR_ROLES = ("ADMIN", "PROJECT_MANAGEMENT_HUB_ADMIN")
PM_BASIC_ROLE = "PROJECT_MANAGEMENT_HUB_BASIC_USER"

_MAX_SCHEDULE_DAYS = 3650
_MAX_AMOUNT = 10_000_000_000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _repo():
    return get_repositories().change_management


def _href(change_request_id: str) -> str:
    return f"/project-management-hub?changeRequest={change_request_id}"


def _assert_transition(change_request: dict, action: str) -> None:
    rule = CHANGE_TRANSITIONS[action]
    if change_request["status"] not in rule["from"]:
        raise ChangeTransitionError(
            change_request["id"], action, change_request["status"],
            f"allowed from {', '.join(rule['from'])}",
        )


def get_change_thresholds() -> dict:
    return _repo().read_all()["thresholds"]


def get_change_request_templates_and_thresholds() -> dict:
    store = _repo().read_all()
    return {"templates": store["templates"], "thresholds": store["thresholds"]}


# ═══════════════════════════════════════════════════════════════════════════
#  Eligibility & permissions
# ═══════════════════════════════════════════════════════════════════════════


def is_submission_eligible_for_change_management(submission: dict) -> bool:
    """Only projects at canonical LIVE, or FUNDING/APPROVED, take change requests."""
    state = ws.resolve_canonical_workflow_state(submission)
    if state["stage"] == ws.STAGE_LIVE:
        return True
    return state["stage"] == ws.STAGE_FUNDING and state["status"] == "APPROVED"


def is_assigned_project_manager(principal: Principal, submission: dict) -> bool:
    email = principal.normalized_email
    if not email:
        return False
    if normalize_email(submission.get("owner_email")) == email:
        return True
    for assignment in submission.get("assignments") or []:
        kind = (assignment.get("assignment_type") or "").lower()
        if ("pm" in kind or "project manager" in kind) and normalize_email(assignment.get("user_email")) == email:
            return True
    return False


def role_can_implement(principal: Principal, submission: dict) -> bool:
    if principal.role_type in INITIATOR_ROLES:
        return True
    if principal.role_type == PM_BASIC_ROLE:
        return is_assigned_project_manager(principal, submission)
    return False


def can_initiate_change_request(principal: Principal, submission: dict) -> bool:
    return is_submission_eligible_for_change_management(submission) and role_can_implement(principal, submission)


# ═══════════════════════════════════════════════════════════════════════════
#  Approver resolution
# ═══════════════════════════════════════════════════════════════════════════


def _contact_approver(submission: dict, role_context: str, contact_key: str, legacy_names, legacy_email=None):
    ref = (submission.get("sponsor_contacts") or {}).get(contact_key) or {}
    name = ref.get("display_name") or next((submission.get(k) for k in legacy_names if submission.get(k)), "")
    email = normalize_email(ref.get("email") or (submission.get(legacy_email) if legacy_email else None))
    if not email:
        return None
    return {"role_context": role_context, "approver_user_id": None,
            "approver_name": name or email, "approver_email": email}


def _role_based_approver(role_context: str, *role_types: str):
    for role_type in role_types:
        users = find_users_by_role(role_type)
        if users:
            user = users[0]
            return {"role_context": role_context, "approver_user_id": user["id"],
                    "approver_name": user["name"], "approver_email": normalize_email(user["email"])}
    return None


def required_change_role_contexts(change_request: dict, thresholds: dict) -> list[str]:
    if change_request.get("requires_committee_review"):
        return ["BUSINESS_SPONSOR", "FINANCE_SPONSOR", "GOVERNANCE_REVIEW"]
    contexts = []
    if (abs(change_request["impact_budget_delta"]) >= thresholds["budget_impact_threshold_abs"]
            or abs(change_request["budget_variance_pct"]) >= thresholds["budget_impact_threshold_pct"]):
        contexts.append("FINANCE_SPONSOR")
    if abs(change_request["impact_schedule_days"]) >= thresholds["schedule_impact_threshold_days"]:
        contexts.append("GOVERNANCE_REVIEW")
    if ci.is_significant_scope_change(change_request):
        contexts.append("BUSINESS_SPONSOR")
    return contexts or ["PM_HUB_ADMIN"]


def resolve_required_approvers(submission: dict, change_request: dict, thresholds: dict | None = None) -> list[dict]:
    """Approvers for the change, one per e-mail address."""
    contexts = required_change_role_contexts(change_request, thresholds or get_change_thresholds())
    approvers = []
    if "BUSINESS_SPONSOR" in contexts:
        approvers.append(_contact_approver(
            submission, "BUSINESS_SPONSOR", "business_sponsor", ("business_sponsor", "sponsor_name"), "sponsor_email",
        ))
    if "FINANCE_SPONSOR" in contexts:
        approvers.append(
            _contact_approver(submission, "FINANCE_SPONSOR", "finance_sponsor", ("finance_sponsor",))
            or _role_based_approver("FINANCE_SPONSOR", "FINANCE_GOVERNANCE_USER", "ADMIN")
        )
    if "GOVERNANCE_REVIEW" in contexts:
        approvers.append(_role_based_approver(
            "GOVERNANCE_REVIEW", "PROJECT_GOVERNANCE_USER", "FINANCE_GOVERNANCE_USER", "ADMIN",
        ))
    if "PM_HUB_ADMIN" in contexts:
        approvers.append(_role_based_approver("PM_HUB_ADMIN", "PROJECT_MANAGEMENT_HUB_ADMIN", "ADMIN"))

    seen = set()
    unique = []
    for approver in approvers:
        if not approver or not approver["approver_email"] or approver["approver_email"] in seen:
            continue
        seen.add(approver["approver_email"])
        unique.append(approver)
    return unique


def _collect_stakeholder_emails(submission: dict) -> list[str]:
    emails = [submission.get("owner_email"), submission.get("sponsor_email")]
    emails += [(ref or {}).get("email") for ref in (submission.get("sponsor_contacts") or {}).values()]
    return list(OrderedDict.fromkeys(e for e in (normalize_email(x) for x in emails) if e))


# ═══════════════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════════════


def _details_from_store(store: dict, change_request: dict) -> dict:
    cr_id = change_request["id"]

    def _children(name):
        return [row for row in store[name] if row["change_request_id"] == cr_id]

    return {
        "change_request": change_request,
        "deltas": _children("field_deltas"),
        "approvals": _children("approvals"),
        "comments": _children("comments"),
        "attachments": _children("attachments"),
    }


def _find_change_request(store: dict, change_request_id: str) -> dict:
    row = next((r for r in store["change_requests"] if r["id"] == change_request_id), None)
    if row is None:
        raise NotFoundError(resource="Change Request", resource_id=change_request_id)
    return row


def get_change_request_details(change_request_id: str) -> dict:
    store = _repo().read_all()
    return _details_from_store(store, _find_change_request(store, change_request_id))


def list_change_requests(project_id: str | None = None) -> list[dict]:
    """Newest first."""
    rows = [r for r in _repo().read_all()["change_requests"] if not project_id or r["project_id"] == project_id]
    rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    return rows


def list_change_requests_with_details(project_id: str | None = None) -> list[dict]:
    store = _repo().read_all()
    rows = [r for r in store["change_requests"] if not project_id or r["project_id"] == project_id]
    rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
    return [_details_from_store(store, row) for row in rows]


# ═══════════════════════════════════════════════════════════════════════════
#  Create
# ═══════════════════════════════════════════════════════════════════════════


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _required_text(data: dict, key: str, errors: dict, min_length: int = 1, max_length: int = 5000) -> str:
    value = _text(data.get(key))
    if len(value) < min_length:
        errors[key] = "required" if not value else f"must be at least {min_length} characters"
    elif len(value) > max_length:
        errors[key] = f"must be at most {max_length} characters"
    return value


def _number(data: dict, key: str, errors: dict, limit: float, integer: bool = False):
    raw = data.get(key, 0)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        errors[key] = "must be a number"
        return 0
    if not math.isfinite(value):
        errors[key] = "must be a finite number"
        return 0
    if integer and not value.is_integer():
        errors[key] = "must be an integer"
        return 0
    if abs(value) > limit:
        errors[key] = f"must be between {-limit} and {limit}"
        return 0
    return int(value) if integer else value


def validate_change_request_payload(data: dict) -> dict:
    """Clean and validate a create payload; raises ValidationError with field details."""
    errors: dict = {}
    cleaned = {
        "project_id": _required_text(data, "project_id", errors, max_length=120),
        "title": _required_text(data, "title", errors, min_length=3, max_length=240),
        "description": _required_text(data, "description", errors, min_length=3),
        "justification": _required_text(data, "justification", errors, min_length=3),
        "impact_scope": _required_text(data, "impact_scope", errors),
        "impact_schedule_days": _number(data, "impact_schedule_days", errors, _MAX_SCHEDULE_DAYS, integer=True),
        "impact_budget_delta": _number(data, "impact_budget_delta", errors, _MAX_AMOUNT),
        "impact_benefits_delta": _number(data, "impact_benefits_delta", errors, _MAX_AMOUNT),
        "requires_committee_review": bool(data.get("requires_committee_review")),
        "decision_summary": _text(data.get("decision_summary")) or None,
    }
    if data.get("change_type") not in ci.CHANGE_TYPES:
        errors["change_type"] = f"must be one of {list(ci.CHANGE_TYPES)}"
    cleaned["change_type"] = data.get("change_type")
    if data.get("priority") not in ci.CHANGE_PRIORITIES:
        errors["priority"] = f"must be one of {list(ci.CHANGE_PRIORITIES)}"
    cleaned["priority"] = data.get("priority")
    if ci.to_title_case_risk(data.get("impact_risk_level")).lower() != str(data.get("impact_risk_level") or "").lower():
        errors["impact_risk_level"] = f"must be one of {list(ci.IMPACT_RISK_LEVELS)}"
    cleaned["impact_risk_level"] = ci.to_title_case_risk(data.get("impact_risk_level"))

    field_changes = data.get("field_changes")
    if not isinstance(field_changes, list) or not 1 <= len(field_changes) <= 100:
        errors["field_changes"] = "between 1 and 100 field changes are required"
        field_changes = []
    cleaned["field_changes"] = []
    for change in field_changes:
        name = _text(change.get("field_name")) if isinstance(change, dict) else ""
        if not ci.is_allowed_field_path(name):
            errors["field_changes"] = f"Field {name or '?'} is not permitted for change control updates."
            continue
        cleaned["field_changes"].append({"field_name": name, "new_value": change.get("new_value")})

    cleaned["comments"] = [
        _text(c.get("comment")) for c in data.get("comments") or []
        if isinstance(c, dict) and _text(c.get("comment"))
    ]
    cleaned["attachments"] = [
        a for a in data.get("attachments") or []
        if isinstance(a, dict) and _text(a.get("file_name")) and _text(a.get("file_url"))
    ]

    if errors:
        raise ValidationError("Invalid change request payload", details=errors)
    return cleaned


def _next_change_request_id(store: dict) -> str:
    """``CR-<year>-<seq>``, one past the highest sequence issued this year."""
    prefix = f"CR-{datetime.now(timezone.utc).year}-"
    seqs = [int(r["id"][len(prefix):]) for r in store["change_requests"]
            if r.get("id", "").startswith(prefix) and r["id"][len(prefix):].isdigit()]
    return f"{prefix}{max(seqs, default=0) + 1:04d}"


def _comment_row(change_request_id: str, principal: Principal, comment: str, created_at: str) -> dict:
    return {
        "id": f"cr-comment-{uuid.uuid4().hex[:12]}",
        "change_request_id": change_request_id,
        "comment": comment,
        "author_user_id": principal.id,
        "author_name": principal.name or "Portal User",
        "author_email": principal.normalized_email or None,
        "created_at": created_at,
    }


def _attachment_row(change_request_id: str, principal: Principal, attachment: dict, uploaded_at: str) -> dict:
    return {
        "id": f"cr-attach-{uuid.uuid4().hex[:12]}",
        "change_request_id": change_request_id,
        "file_name": attachment["file_name"].strip(),
        "file_url": attachment["file_url"].strip(),
        "mime_type": _text(attachment.get("mime_type")) or None,
        "uploaded_by_user_id": principal.id,
        "uploaded_by_name": principal.name or "Portal User",
        "uploaded_at": uploaded_at,
    }


def _audit(action: str, change_request_id: str, principal: Principal, details: str, **metadata) -> None:
    append_governance_audit_log(
        area="WORKFLOW",
        action=action,
        entity_type="change_request",
        entity_id=change_request_id,
        actor_name=principal.name or "PM User",
        actor_email=principal.normalized_email or None,
        actor_role=principal.role_type,
        details=details,
        metadata=metadata,
    )


def create_change_request_draft(principal: Principal, data: dict) -> dict:
    """Validate the payload, score it and store a DRAFT with its field deltas.

    Raises:
        ValidationError: malformed payload or disallowed field path.
        NotFoundError: unknown project.
        PermissionDeniedError: project not change-eligible, or principal may not initiate.
    """
    cleaned = validate_change_request_payload(data or {})
    submission = get_submission(cleaned["project_id"])
    if not can_initiate_change_request(principal, submission):
        raise PermissionDeniedError("You are not allowed to initiate change requests for this project.")

    repo = _repo()
    store = repo.read_all()
    created_at = _now_iso()
    impact = ci.compute_impact(submission, cleaned, store["thresholds"])
    cr_id = _next_change_request_id(store)

    deltas = []
    for change in cleaned["field_changes"]:
        old_value = ci.get_path_value(submission, change["field_name"])
        deltas.append({
            "id": f"cr-delta-{uuid.uuid4().hex[:12]}",
            "change_request_id": cr_id,
            "field_name": change["field_name"],
            "old_value": copy.deepcopy(old_value),
            "new_value": ci.coerce_new_value(old_value, change["new_value"]),
            "created_at": created_at,
        })

    record = {
        "id": cr_id,
        "project_id": submission["id"],
        "change_type": cleaned["change_type"],
        "title": cleaned["title"],
        "description": cleaned["description"],
        "justification": cleaned["justification"],
        "requested_by_user_id": principal.id,
        "requested_by_name": principal.name,
        "requested_by_email": principal.normalized_email,
        "created_at": created_at,
        "updated_at": created_at,
        "status": "DRAFT",
        "impact_scope": cleaned["impact_scope"],
        "impact_schedule_days": cleaned["impact_schedule_days"],
        "impact_budget_delta": ci.round2(cleaned["impact_budget_delta"]),
        "impact_benefits_delta": ci.round2(cleaned["impact_benefits_delta"]),
        "impact_risk_level": cleaned["impact_risk_level"],
        "priority": cleaned["priority"],
        "requires_committee_review": cleaned["requires_committee_review"],
        "decision_summary": cleaned["decision_summary"],
        "approved_by_user_id": None,
        "approved_by_name": None,
        "approved_at": None,
        "implemented_at": None,
        "closed_at": None,
        "project_snapshot_id": None,
        "change_severity_score": impact["score"],
        "change_severity": impact["severity"],
        "projected_completion_date": impact["projected_completion_date"],
        "budget_variance_pct": impact["budget_variance_pct"],
        "benefits_variance_pct": impact["benefits_variance_pct"],
        "health_score_adjustment": impact["health_score_adjustment"],
        "sla_risk_indicator": impact["sla_risk_indicator"],
    }
    store["change_requests"].append(record)
    store["field_deltas"].extend(deltas)
    store["comments"].extend(_comment_row(cr_id, principal, c, created_at) for c in cleaned["comments"])
    store["attachments"].extend(_attachment_row(cr_id, principal, a, created_at) for a in cleaned["attachments"])
    repo.write_all(store)

    logger.info("Change request %s drafted for %s", cr_id, submission["id"],
                extra={"change_request_id": cr_id, "submission_id": submission["id"]})
    _audit("CREATE_CHANGE_REQUEST_DRAFT", cr_id, principal,
           f"Change Request draft created for {submission['id']}.",
           project_id=submission["id"], change_type=record["change_type"],
           severity=record["change_severity"], severity_score=record["change_severity_score"])
    return _details_from_store(store, record)


# ═══════════════════════════════════════════════════════════════════════════
#  Submit / decide
# ═══════════════════════════════════════════════════════════════════════════


def submit_change_request(change_request_id: str, principal: Principal) -> dict:
    """DRAFT → SUBMITTED; creates one PENDING approval row per resolved approver."""
    repo = _repo()
    store = repo.read_all()
    record = _find_change_request(store, change_request_id)
    _assert_transition(record, "submit")

    submission = get_submission(record["project_id"])
    if not can_initiate_change_request(principal, submission):
        raise PermissionDeniedError("You are not allowed to submit this Change Request.")

    approvers = resolve_required_approvers(submission, record, store["thresholds"])
    if not approvers:
        raise ValidationError("No approvers could be resolved for this Change Request.")

    now = _now_iso()
    approvals = [
        {
            "id": f"cr-approval-{uuid.uuid4().hex[:12]}",
            "change_request_id": change_request_id,
            "role_context": approver["role_context"],
            "status": "PENDING",
            "approver_user_id": approver["approver_user_id"],
            "approver_name": approver["approver_name"],
            "approver_email": approver["approver_email"],
            "requested_at": now,
            "decided_at": None,
            "comment": None,
            "created_at": now,
            "updated_at": now,
        }
        for approver in approvers
    ]
    store["approvals"].extend(approvals)
    record.update(status=CHANGE_TRANSITIONS["submit"]["to"], updated_at=now)
    repo.write_all(store)

    for approval in approvals:
        NotificationService.notify_recipient(
            approval["approver_email"],
            f"{change_request_id} requires change approval",
            f"{submission['id']} ({submission['title']}) has a pending change requiring your review "
            f"as {approval['role_context']}.",
            _href(change_request_id),
        )
    _audit("SUBMIT_CHANGE_REQUEST", change_request_id, principal,
           f"Submitted change request for project {submission['id']}.",
           project_id=submission["id"], approvers=len(approvals))
    return _details_from_store(store, record)


def summarize_change_approvals(approvals: list[dict]) -> dict:
    """Group by role-context: any rejection rejects; every context needs one approval."""
    by_context: dict[str, list[dict]] = OrderedDict()
    for approval in approvals:
        by_context.setdefault(approval["role_context"], []).append(approval)
    any_rejected = any(r["status"] == "REJECTED" for rows in by_context.values() for r in rows)
    all_approved = bool(by_context) and all(
        any(r["status"] == "APPROVED" for r in rows) for rows in by_context.values()
    )
    return {
        "any_rejected": any_rejected,
        "all_approved": all_approved,
        "pending_count": sum(1 for a in approvals if a["status"] == "PENDING"),
    }


def _decide_change_request(change_request_id: str, principal: Principal, decision: str, comment: str | None) -> dict:
    action = "approve" if decision == "APPROVED" else "reject"
    repo = _repo()
    store = repo.read_all()
    record = _find_change_request(store, change_request_id)
    _assert_transition(record, action)
    submission = get_submission(record["project_id"])

    approvals = [a for a in store["approvals"] if a["change_request_id"] == change_request_id]
    pending = [a for a in approvals if a["status"] == "PENDING"]
    identity = principal.identity()
    target = next((a for a in pending if identity_matches(identity, approver_identity(a))), None)
    if target is None:
        if not principal.is_admin:
            raise PermissionDeniedError("No pending approval assignment found for this user.")
        if not pending:
            raise ChangeTransitionError(change_request_id, action, record["status"], "no pending approvals remain")
        target = pending[0]

    now = _now_iso()
    comment = _text(comment) or None
    target.update(status=decision, comment=comment, decided_at=now, updated_at=now)
    if decision == "REJECTED":
        for sibling in pending:
            if sibling is not target:
                sibling.update(status="CANCELLED", comment="Cancelled after rejection.", decided_at=now, updated_at=now)

    summary = summarize_change_approvals(approvals)
    if summary["any_rejected"]:
        next_status = "REJECTED"
    elif summary["all_approved"]:
        next_status = "APPROVED"
    else:
        next_status = "UNDER_REVIEW"

    record.update(status=next_status, updated_at=now)
    if next_status == "APPROVED":
        record.update(approved_by_user_id=principal.id, approved_by_name=principal.name, approved_at=now)
    elif next_status == "REJECTED":
        record["decision_summary"] = comment or "Rejected during change governance review."
    repo.write_all(store)
    logger.info("Change request %s %s -> %s", change_request_id, decision, next_status,
                extra={"change_request_id": change_request_id, "approval_id": target["id"]})

    verb = "approved" if decision == "APPROVED" else "rejected"
    for email in _collect_stakeholder_emails(submission):
        NotificationService.notify_recipient(
            email, f"{change_request_id} {verb}",
            f"Change Request {change_request_id} for {submission['id']} was {verb}. Current status: {next_status}.",
            _href(change_request_id),
        )
    _audit("APPROVE_CHANGE_REQUEST" if decision == "APPROVED" else "REJECT_CHANGE_REQUEST",
           change_request_id, principal, f"{decision} decision recorded.",
           project_id=submission["id"], status=next_status)
    return _details_from_store(store, record)


def approve_change_request(change_request_id: str, principal: Principal, comment: str | None = None) -> dict:
    return _decide_change_request(change_request_id, principal, "APPROVED", comment)


def reject_change_request(change_request_id: str, principal: Principal, comment: str) -> dict:
    if not _text(comment):
        raise ValidationError("A comment is required to reject a Change Request.", details={"comment": "required"})
    return _decide_change_request(change_request_id, principal, "REJECTED", comment)


# ═══════════════════════════════════════════════════════════════════════════
#  Implement / close
# ═══════════════════════════════════════════════════════════════════════════


def implement_change_request(change_request_id: str, principal: Principal, close_after_implement: bool = False) -> dict:
    """Snapshot the submission, apply the approved deltas, mark IMPLEMENTED (or CLOSED)."""
    repo = _repo()
    store = repo.read_all()
    record = _find_change_request(store, change_request_id)
    _assert_transition(record, "implement")
    submission = get_submission(record["project_id"])
    if not role_can_implement(principal, submission):
        raise PermissionDeniedError("You are not allowed to implement this Change Request.")

    deltas = [d for d in store["field_deltas"] if d["change_request_id"] == change_request_id]
    for delta in deltas:
        if not ci.is_allowed_field_path(delta["field_name"]):
            raise ValidationError(f"Field {delta['field_name']} is not permitted for change control updates.")

    now = _now_iso()
    snapshot = {
        "id": f"cr-snapshot-{uuid.uuid4()}",
        "change_request_id": change_request_id,
        "project_id": submission["id"],
        "snapshot_at": now,
        "snapshot_by_user_id": principal.id,
        "snapshot_by_name": principal.name,
        "snapshot_data": copy.deepcopy(submission),
    }
    store["snapshots"].append(snapshot)
    record["project_snapshot_id"] = snapshot["id"]
    repo.write_all(store)

    updated = update_submission(
        submission["id"], ci.build_submission_patch(deltas),
        audit={"action": "UPDATED", "note": f"Applied Change Request {change_request_id} to approved project."},
        actor=principal,
    )

    store = repo.read_all()
    record = _find_change_request(store, change_request_id)
    record.update(status="CLOSED" if close_after_implement else "IMPLEMENTED", implemented_at=now, updated_at=now)
    if close_after_implement:
        record["closed_at"] = now
    repo.write_all(store)
    logger.info("Change request %s implemented on %s", change_request_id, submission["id"],
                extra={"change_request_id": change_request_id, "submission_id": submission["id"]})

    for email in _collect_stakeholder_emails(updated):
        NotificationService.notify_recipient(
            email, f"{change_request_id} implemented",
            f"Approved changes have been implemented on {submission['id']}. {ci.summarize_impact(record)}",
            f"/project-management-hub?projectId={submission['id']}",
        )
    _audit("IMPLEMENT_CHANGE_REQUEST", change_request_id, principal,
           f"Applied change request to project {submission['id']}.",
           project_id=submission["id"], implemented_status=record["status"],
           budget_delta=record["impact_budget_delta"], schedule_delta_days=record["impact_schedule_days"])
    return _details_from_store(store, record)


def close_change_request(change_request_id: str, principal: Principal) -> dict:
    repo = _repo()
    store = repo.read_all()
    record = _find_change_request(store, change_request_id)
    _assert_transition(record, "close")
    submission = get_submission(record["project_id"])
    if not role_can_implement(principal, submission):
        raise PermissionDeniedError("You are not allowed to close this Change Request.")
    now = _now_iso()
    record.update(status=CHANGE_TRANSITIONS["close"]["to"], closed_at=now, updated_at=now)
    repo.write_all(store)
    _audit("CLOSE_CHANGE_REQUEST", change_request_id, principal,
           f"Closed change request for project {submission['id']}.", project_id=submission["id"])
    return _details_from_store(store, record)


# ═══════════════════════════════════════════════════════════════════════════
#  Comments & attachments
# ═══════════════════════════════════════════════════════════════════════════


def add_change_request_comment(change_request_id: str, principal: Principal, comment: str) -> dict:
    comment = _text(comment)
    if not comment:
        raise ValidationError("Comment is required.", details={"comment": "required"})
    repo = _repo()
    store = repo.read_all()
    _find_change_request(store, change_request_id)
    row = _comment_row(change_request_id, principal, comment, _now_iso())
    store["comments"].append(row)
    repo.write_all(store)
    return row


def add_change_request_attachment(change_request_id: str, principal: Principal, attachment: dict) -> dict:
    attachment = attachment if isinstance(attachment, dict) else {}
    if not _text(attachment.get("file_name")) or not _text(attachment.get("file_url")):
        raise ValidationError("Attachment file name and URL are required.",
                              details={"file_name": "required", "file_url": "required"})
    repo = _repo()
    store = repo.read_all()
    _find_change_request(store, change_request_id)
    row = _attachment_row(change_request_id, principal, attachment, _now_iso())
    store["attachments"].append(row)
    repo.write_all(store)
    return row


# ═══════════════════════════════════════════════════════════════════════════
#  Reporting
# ═══════════════════════════════════════════════════════════════════════════


def _risk_indicator(changes: list[dict]) -> str:
    if not changes:
        return "NONE"
    source = [r for r in changes if r["status"] in OPEN_CHANGE_STATUSES] or changes
    if any(r["change_severity"] == "Critical" for r in source):
        return "CRITICAL"
    if any(r["change_severity"] == "Major" or r["impact_risk_level"] == "High" for r in source):
        return "HIGH"
    if any(r["change_severity"] == "Moderate" or r["impact_risk_level"] == "Medium" for r in source):
        return "MEDIUM"
    return "LOW"


def _cumulative(changes: list[dict]) -> tuple[float, int]:
    counted = [r for r in changes if r["status"] != "REJECTED"]
    return (
        ci.round2(sum(r["impact_budget_delta"] for r in counted)),
        round(sum(r["impact_schedule_days"] for r in counted)),
    )


def _average_approval_hours(approvals: list[dict]) -> float:
    hours = []
    for row in approvals:
        if row["status"] != "APPROVED" or not row.get("decided_at"):
            continue
        try:
            requested = datetime.fromisoformat(row["requested_at"])
            decided = datetime.fromisoformat(row["decided_at"])
        except (TypeError, ValueError):
            continue
        hours.append((decided - requested).total_seconds() / 3600)
    return ci.round2(sum(hours) / len(hours)) if hours else 0


def get_project_change_indicator(project_id: str) -> dict:
    changes = list_change_requests(project_id)
    thresholds = get_change_thresholds()
    active = [r for r in changes if r["status"] in OPEN_CHANGE_STATUSES]
    budget_delta, schedule_days = _cumulative(changes)

    try:
        baseline = ci.baseline_budget(get_submission(project_id))
    except NotFoundError:
        baseline = 0
    cumulative_pct = abs(budget_delta / baseline * 100) if baseline > 0 else 0

    return {
        "project_id": project_id,
        "latest_change_status": changes[0]["status"] if changes else "NONE",
        "change_risk_indicator": _risk_indicator(changes),
        "has_open_change_request": bool(active),
        "has_budget_impact": any(r["impact_budget_delta"] != 0 for r in active),
        "has_schedule_impact": any(r["impact_schedule_days"] != 0 for r in active),
        "has_risk_escalation": any(
            r["impact_risk_level"] in ("High", "Critical") or r["change_severity"] == "Critical" for r in active
        ) or cumulative_pct >= thresholds["cumulative_budget_escalation_pct"],
        "cumulative_budget_delta": budget_delta,
        "cumulative_schedule_impact_days": schedule_days,
    }


def get_project_change_log(project_id: str) -> dict:
    details = list_change_requests_with_details(project_id)
    changes = [d["change_request"] for d in details]
    budget_delta, schedule_days = _cumulative(changes)
    avg_hours = ci.round2(
        sum(_average_approval_hours(d["approvals"]) for d in details) / max(1, len(details))
    )
    return {
        "project_id": project_id,
        "latest_change_status": changes[0]["status"] if changes else "NONE",
        "change_risk_indicator": _risk_indicator(changes),
        "open_change_requests": sum(1 for r in changes if r["status"] in OPEN_CHANGE_STATUSES),
        "cumulative_budget_delta": budget_delta,
        "cumulative_schedule_impact_days": schedule_days,
        "average_approval_time_hours": avg_hours,
        "total_changes": len(changes),
        "timeline": [
            {
                "change_request_id": r["id"],
                "change_type": r["change_type"],
                "title": r["title"],
                "status": r["status"],
                "submitted_by": r.get("requested_by_name") or r.get("requested_by_email"),
                "submitted_at": r["created_at"],
                "approved_by": r.get("approved_by_name"),
                "approved_at": r.get("approved_at"),
                "implemented_at": r.get("implemented_at"),
                "impact_summary": ci.summarize_impact(r),
                "severity": r["change_severity"],
                "severity_score": r["change_severity_score"],
            }
            for r in changes
        ],
        "changes": details,
    }


def get_change_management_analytics(project_ids: list[str] | None = None) -> dict:
    details = list_change_requests_with_details()
    if project_ids:
        details = [d for d in details if d["change_request"]["project_id"] in project_ids]
    rows = [d["change_request"] for d in details]

    by_status: dict[str, int] = {}
    by_project: dict[str, list[dict]] = OrderedDict()
    trend: dict[str, float] = OrderedDict()
    for row in sorted(rows, key=lambda r: r["created_at"]):
        by_status[row["status"]] = by_status.get(row["status"], 0) + 1
        by_project.setdefault(row["project_id"], []).append(row)
        month = datetime.fromisoformat(row["created_at"]).strftime("%b %Y")
        trend[month] = ci.round2(trend.get(month, 0) + row["impact_schedule_days"])

    approvals = [a for d in details for a in d["approvals"]]
    return {
        "projects_with_active_changes": sum(
            1 for project_rows in by_project.values()
            if any(r["status"] in OPEN_CHANGE_STATUSES for r in project_rows)
        ),
        "change_requests_by_status": by_status,
        "total_budget_impact": _cumulative(rows)[0],
        "schedule_impact_trend": [{"month": month, "value": value} for month, value in trend.items()],
        "avg_approval_time_hours": _average_approval_hours(approvals),
        "projects_with_more_than_3_changes": [
            {"project_id": pid, "changes": len(project_rows)}
            for pid, project_rows in by_project.items() if len(project_rows) > 3
        ],
    }


def list_pending_change_approvals_for_principal(principal: Principal) -> list[dict]:
    """Pending change approvals assigned to the principal (all of them for an ADMIN)."""
    identity = principal.identity()
    rows = []
    for details in list_change_requests_with_details():
        record = details["change_request"]
        for approval in details["approvals"]:
            if approval["status"] != "PENDING":
                continue
            if not principal.is_admin and not identity_matches(identity, approver_identity(approval)):
                continue
            rows.append({
                "approval_id": approval["id"],
                "change_request_id": record["id"],
                "project_id": record["project_id"],
                "role_context": approval["role_context"],
                "requested_at": approval["requested_at"],
                "approver_name": approval["approver_name"],
                "approver_email": approval["approver_email"],
                "title": record["title"],
            })
    return rows
