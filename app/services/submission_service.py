"""
Submission store and workflow orchestration.

Submissions are mutated only through:
    - ``run_workflow_action``            explicit human actions (send to sponsor, SPO decision, ...);
                                         ``perform_workflow_action`` wraps it with access checks and audit
    - ``decide_submission_approval``     an approver's decision
    - ``reconcile_submission_workflow``  derived transitions (all approved, gating tasks done, ...)
    - ``update_submission_sponsors``     sponsor reassignment
    - ``implement_change_request``       approved change-request deltas (change_requests module)

``workflow.lifecycle_status`` is the single source of truth.  The display
``stage``/``status`` are rewritten from it on every read and write, so they
never disagree with the canonical pair.

Usage:
    from app.services.submission_service import run_workflow_action

    submission = run_workflow_action("SP-2026-001", "SEND_TO_SPONSOR", actor=principal)
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone

from app.core.exceptions import (
    AuthenticationRequiredError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    WorkflowTransitionError,
)
from app.services import workflow_state as ws
from app.services.approval_requests import (
    cancel_pending_approval_requests_for_submission,
    create_approval_requests_for_submission,
    decide_approval_request_for_principal,
    get_approval_request_summary_for_submission,
)
from app.services.audit_log import append_governance_audit_log
from app.services.identity import Principal, normalize_email, normalize_id
from app.services.notification import NotificationService
from app.services.role_contexts import (
    BUSINESS_DELEGATE,
    BUSINESS_SPONSOR,
    get_required_approval_role_contexts_for_submission,
    map_role_context_to_approval_stage,
)
from app.storage import get_repositories

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Principal(id="system", email="system@portal.local", name="System")

CONTACT_KEYS = (
    "business_sponsor",
    "business_delegate",
    "technology_sponsor",
    "finance_sponsor",
    "benefits_sponsor",
)

# Approval stage → sponsor contacts that make it applicable
APPROVAL_STAGE_ORDER = (
    ("BUSINESS", ("business_sponsor", "business_delegate")),
    ("TECHNOLOGY", ("technology_sponsor",)),
    ("FINANCE", ("finance_sponsor",)),
    ("BENEFITS", ("benefits_sponsor",)),
)
APPROVAL_STAGE_STATUSES = ("PENDING", "APPROVED", "REJECTED", "NEED_MORE_INFO")

DECISION_VALUES = ("Pending", "Approved", "Rejected", "Need More Info", "Returned to Submitter")
FUNDING_STATUSES = ("Not Requested", "Requested", "Funded", "Live")

LOCK_REASON = "Submission is locked in the current workflow stage."

# Sections deep-merged by update_submission; everything else is replaced
_MERGED_SECTIONS = ("workflow", "financials", "benefits")

_DEFAULT_FINANCIALS = {"capex": 0, "opex": 0, "one_time_costs": 0, "run_rate_savings": 0, "payback_months": 0}
_DEFAULT_BENEFITS = {"cost_save_est": 0, "revenue_uplift_est": 0, "qualitative_benefits": ""}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _repo():
    return get_repositories().submissions


# ═══════════════════════════════════════════════════════════════════════════
#  Normalisation
# ═══════════════════════════════════════════════════════════════════════════


def to_person_ref(value) -> dict | None:
    """Normalise a contact reference; None when it names nobody."""
    if not isinstance(value, dict):
        return None
    display_name = _text(value.get("display_name"))
    email = normalize_email(value.get("email"))
    if not display_name and not email:
        return None
    return {
        "azure_object_id": _text(value.get("azure_object_id")) or f"legacy-{email or display_name}",
        "display_name": display_name or email,
        "email": email,
        "job_title": _text(value.get("job_title")),
    }


def _normalize_sponsor_contacts(row: dict) -> dict:
    existing = row.get("sponsor_contacts") or {}
    legacy = {
        "business_sponsor": {
            "display_name": row.get("business_sponsor") or row.get("sponsor_name"),
            "email": row.get("sponsor_email"),
        },
    }
    for key in CONTACT_KEYS[1:]:
        legacy[key] = {"display_name": row.get(key), "email": ""}

    contacts = {}
    for key in CONTACT_KEYS:
        source = existing[key] if key in existing else legacy[key]
        contacts[key] = to_person_ref(source)
    return contacts


def _approval_status_from_decision(decision) -> str:
    if decision == "Approved":
        return "APPROVED"
    if decision == "Rejected":
        return "REJECTED"
    return "PENDING"


def build_approval_stages(row: dict, contacts: dict, workflow: dict) -> list[dict]:
    """One record per applicable stage (BUSINESS, TECHNOLOGY, FINANCE, BENEFITS order).

    Existing records keep their status; a new BUSINESS record takes its
    initial status from the legacy sponsor decision.
    """
    now = _now_iso()
    by_stage = {s.get("stage"): s for s in (row.get("approval_stages") or []) if isinstance(s, dict)}
    stages = []
    for code, contact_keys in APPROVAL_STAGE_ORDER:
        if not any(contacts.get(k) for k in contact_keys):
            continue
        current = by_stage.get(code) or {}
        initial = _approval_status_from_decision(workflow.get("sponsor_decision")) if code == "BUSINESS" else "PENDING"
        stages.append({
            "id": current.get("id") or f"approval-{row.get('id', 'project')}-{code.lower()}",
            "stage": code,
            "status": current.get("status") or initial,
            "decided_by_user_id": current.get("decided_by_user_id"),
            "acting_as": current.get("acting_as"),
            "comment": current.get("comment"),
            "decided_at": current.get("decided_at"),
            "created_at": current.get("created_at") or now,
            "updated_at": current.get("updated_at") or now,
        })
    return stages


def _normalize_assignments(row: dict, project_id: str) -> list[dict]:
    now = _now_iso()
    return [
        {
            "id": a.get("id") or f"assignment-{project_id}-{index}",
            "project_id": a.get("project_id") or project_id,
            "user_id": a.get("user_id"),
            "user_email": normalize_email(a.get("user_email")) or None,
            "user_azure_object_id": _text(a.get("user_azure_object_id")) or None,
            "assignment_type": _text(a.get("assignment_type")) or "Contributor",
            "created_at": a.get("created_at") or now,
            "updated_at": a.get("updated_at") or now,
        }
        for index, a in enumerate(row.get("assignments") or [], start=1)
        if isinstance(a, dict)
    ]


def _normalize_workflow(row: dict) -> dict:
    raw = dict(row.get("workflow") or {})
    if not ws.is_lifecycle_status(raw.get("lifecycle_status")):
        raw["lifecycle_status"] = ws.resolve_workflow_lifecycle_status({**row, "workflow": {
            k: v for k, v in raw.items() if k != "lifecycle_status"
        }})
    return {
        "entity_type": raw.get("entity_type") or ws.entity_type_for_lifecycle(raw["lifecycle_status"]),
        "lifecycle_status": raw["lifecycle_status"],
        "sponsor_decision": raw.get("sponsor_decision") or "Pending",
        "pgo_decision": raw.get("pgo_decision") or "Pending",
        "finance_decision": raw.get("finance_decision") or "Pending",
        "spo_decision": raw.get("spo_decision") or "Pending",
        "funding_status": raw.get("funding_status") or "Not Requested",
        "last_saved_at": raw.get("last_saved_at") or row.get("updated_at") or row.get("created_at"),
        "locked_at": raw.get("locked_at"),
        "lock_reason": raw.get("lock_reason"),
    }


def normalize_submission(row: dict) -> dict:
    """Fill defaults and re-derive every display value from the lifecycle status."""
    out = copy.deepcopy(row)
    now = _now_iso()
    out.setdefault("created_at", now)
    out.setdefault("updated_at", out["created_at"])

    workflow = _normalize_workflow(out)
    canonical = ws.map_lifecycle_to_stage_status(workflow["lifecycle_status"])
    out["workflow"] = workflow
    out["stage"] = canonical["stage"]
    out["status"] = canonical["status"]

    contacts = _normalize_sponsor_contacts(out)
    business = contacts["business_sponsor"] or {}
    out["sponsor_contacts"] = contacts
    out["sponsor_name"] = _text(out.get("sponsor_name")) or _text(out.get("business_sponsor")) or business.get("display_name", "")
    out["sponsor_email"] = normalize_email(out.get("sponsor_email")) or business.get("email", "")
    out["business_sponsor"] = _text(out.get("business_sponsor")) or out["sponsor_name"]
    for key in CONTACT_KEYS[1:]:
        out[key] = _text(out.get(key)) or (contacts[key] or {}).get("display_name", "")

    out["approval_stages"] = build_approval_stages(out, contacts, workflow)
    out["assignments"] = _normalize_assignments(out, out["id"])

    out["title"] = out.get("title") or "Untitled Initiative"
    out.setdefault("summary", "")
    out["owner_name"] = _text(out.get("owner_name"))
    out["owner_email"] = normalize_email(out.get("owner_email"))
    out.setdefault("priority", "Medium")
    out.setdefault("risk_level", "Medium")
    out.setdefault("committee_decision", None)
    out["financials"] = {**_DEFAULT_FINANCIALS, **(out.get("financials") or {})}
    out["benefits"] = {**_DEFAULT_BENEFITS, **(out.get("benefits") or {})}
    out["audit_trail"] = list(out.get("audit_trail") or [])
    return out


def _audit_entry(submission: dict, action: str, note: str, actor: Principal | None) -> dict:
    actor = actor or SYSTEM_ACTOR
    return {
        "id": f"audit-{uuid.uuid4().hex[:12]}",
        "action": action,
        "note": note,
        "stage": submission["stage"],
        "status": submission["status"],
        "lifecycle_status": submission["workflow"]["lifecycle_status"],
        "actor_name": actor.display_name,
        "actor_email": actor.normalized_email or None,
        "at": _now_iso(),
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Store operations
# ═══════════════════════════════════════════════════════════════════════════


def _next_case_id(rows: list[dict]) -> str:
    prefix = f"SP-{datetime.now(timezone.utc).year}-"
    seqs = [int(r["id"][len(prefix):]) for r in rows
            if r.get("id", "").startswith(prefix) and r["id"][len(prefix):].isdigit()]
    return f"{prefix}{max(seqs, default=0) + 1:03d}"


_CREATE_FIELDS = (
    "title", "summary", "category", "request_type", "priority", "risk_level",
    "owner_name", "owner_email", "sponsor_name", "sponsor_email", "business_sponsor",
    "business_delegate", "technology_sponsor", "finance_sponsor", "benefits_sponsor",
    "sponsor_contacts", "segment_unit", "project_theme", "strategic_objective",
    "project_classification", "project_type", "start_date", "end_date", "target_go_live",
    "financials", "benefits", "assignments",
)


def create_draft_submission(data: dict | None = None, actor: Principal | None = None) -> dict:
    """Create a PROPOSAL/DRAFT submission with a fresh ``SP-<year>-<seq>`` id."""
    data = data or {}
    repo = _repo()
    rows = repo.read_all()
    now = _now_iso()
    row = {key: copy.deepcopy(data[key]) for key in _CREATE_FIELDS if key in data}
    if actor:
        row.setdefault("owner_name", actor.display_name)
        row.setdefault("owner_email", actor.normalized_email)
    row.update(
        id=_next_case_id(rows),
        created_by_user_id=(actor.id or actor.normalized_email) if actor else None,
        workflow={
            "entity_type": ws.ENTITY_PROPOSAL,
            "lifecycle_status": "DRAFT",
            "funding_status": "Not Requested",
            "last_saved_at": now,
        },
        created_at=now,
        updated_at=now,
    )
    submission = normalize_submission(row)
    submission["audit_trail"].append(_audit_entry(submission, "CREATED", "Submission created.", actor))
    rows.append(submission)
    repo.write_all(rows)
    logger.info("Created submission %s", submission["id"], extra={"submission_id": submission["id"]})
    return submission


def list_submissions() -> list[dict]:
    rows = [normalize_submission(r) for r in _repo().read_all()]
    rows.sort(key=lambda r: r.get("updated_at") or "", reverse=True)
    return rows


def find_submission(submission_id: str) -> dict | None:
    row = next((r for r in _repo().read_all() if r.get("id") == submission_id), None)
    return normalize_submission(row) if row else None


def get_submission(submission_id: str) -> dict:
    submission = find_submission(submission_id)
    if submission is None:
        raise NotFoundError(resource="Submission", resource_id=submission_id)
    return submission


def _merge_patch(current: dict, patch: dict) -> dict:
    merged = copy.deepcopy(current)
    for key, value in patch.items():
        if key in _MERGED_SECTIONS and isinstance(value, dict):
            merged[key] = {**(merged.get(key) or {}), **copy.deepcopy(value)}
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def update_submission(
    submission_id: str,
    patch: dict,
    *,
    audit: dict | None = None,
    actor: Principal | None = None,
) -> dict:
    """Deep-merge ``patch`` and persist.

    ``audit`` is ``{"action": ..., "note": ...}``; when given, an audit-trail
    entry is appended for ``actor``.
    """
    repo = _repo()
    rows = repo.read_all()
    index = next((i for i, r in enumerate(rows) if r.get("id") == submission_id), None)
    if index is None:
        raise NotFoundError(resource="Submission", resource_id=submission_id)

    current = normalize_submission(rows[index])
    merged = _merge_patch(current, patch)
    merged["id"] = submission_id
    merged["updated_at"] = _now_iso()
    updated = normalize_submission(merged)
    if audit:
        updated["audit_trail"].append(
            _audit_entry(updated, audit.get("action", "UPDATED"), audit.get("note", ""), actor)
        )
    rows[index] = updated
    repo.write_all(rows)
    return updated


def update_submission_sponsors(submission_id: str, contacts: dict, actor: Principal | None = None) -> dict:
    """Replace sponsor contacts, retract stale requests and request the new approvers."""
    current = get_submission(submission_id)
    normalized = {key: to_person_ref((contacts or {}).get(key)) for key in CONTACT_KEYS}
    business = normalized["business_sponsor"]
    if business:
        # A replaced sponsor never inherits the previous holder's e-mail
        sponsor_name = business.get("display_name") or business.get("email") or ""
        sponsor_email = business.get("email") or ""
    else:
        sponsor_name = current["business_sponsor"] or current["sponsor_name"]
        sponsor_email = current["sponsor_email"]
    patch = {
        "sponsor_contacts": normalized,
        "business_sponsor": sponsor_name,
        "sponsor_name": sponsor_name,
        "sponsor_email": sponsor_email,
    }
    for key in CONTACT_KEYS[1:]:
        patch[key] = (normalized[key] or {}).get("display_name", "")
    patch["approval_stages"] = build_approval_stages(
        {**current, "sponsor_contacts": normalized}, normalized, current["workflow"],
    )

    updated = update_submission(
        submission_id, patch,
        audit={"action": "UPDATED", "note": "Sponsor assignments updated."}, actor=actor,
    )

    cancel_pending_approval_requests_for_submission(
        updated, reason="Pending approval request cancelled due to sponsor change.",
    )
    created = create_approval_requests_for_submission(
        updated,
        get_required_approval_role_contexts_for_submission(updated),
        created_by=actor.normalized_email if actor else None,
    )
    for request in created:
        NotificationService.notify_approval_request_created(updated, request)
    return updated


def record_approval_stage_decision(
    submission_id: str,
    stage: str,
    status: str,
    *,
    decided_by_user_id: str | None = None,
    acting_as: str | None = None,
    comment: str | None = None,
    actor: Principal | None = None,
) -> dict:
    """Mark one pending approval stage with a decision."""
    if status not in APPROVAL_STAGE_STATUSES or status == "PENDING":
        raise ValidationError(f"Invalid approval stage status {status!r}", details={"status": status})
    current = get_submission(submission_id)
    stages = current["approval_stages"]
    target = next((s for s in stages if s["stage"] == stage), None)
    if target is None:
        raise ValidationError(f"Approval stage {stage} is not configured for this project.")
    if target["status"] != "PENDING":
        raise ValidationError(f"Approval stage {stage} is not pending.")

    now = _now_iso()
    target.update(
        status=status,
        decided_by_user_id=decided_by_user_id or target.get("decided_by_user_id"),
        acting_as=acting_as or target.get("acting_as"),
        comment=_text(comment) or None,
        decided_at=now,
        updated_at=now,
    )
    return update_submission(
        submission_id, {"approval_stages": stages},
        audit={"action": "UPDATED", "note": f"{stage} approval marked {status}."}, actor=actor,
    )


def is_sponsor_user(submission: dict, user: Principal) -> bool:
    """True for an ADMIN, or when the user's e-mail is one of the sponsor e-mails."""
    email = normalize_email(user.email)
    if not email:
        return False
    if user.is_admin:
        return True
    candidates = {(ref or {}).get("email") for ref in (submission.get("sponsor_contacts") or {}).values()}
    candidates.add(normalize_email(submission.get("sponsor_email")))
    candidates.discard(None)
    candidates.discard("")
    return email in candidates


# ═══════════════════════════════════════════════════════════════════════════
#  Workflow actions
# ═══════════════════════════════════════════════════════════════════════════


def build_workflow_patch_from_lifecycle(submission: dict, lifecycle: str, workflow_patch: dict | None = None) -> dict:
    """Patch moving ``submission`` to ``lifecycle`` with consistent lock fields."""
    editable = ws.is_workflow_editable_status(lifecycle)
    workflow = submission["workflow"]
    return {
        "workflow": {
            **(workflow_patch or {}),
            "entity_type": ws.entity_type_for_lifecycle(lifecycle),
            "lifecycle_status": lifecycle,
            "last_saved_at": workflow.get("last_saved_at") or submission.get("updated_at"),
            "locked_at": None if editable else (workflow.get("locked_at") or _now_iso()),
            "lock_reason": None if editable else LOCK_REASON,
        },
    }


_PENDING_DECISIONS = {
    "sponsor_decision": "Pending",
    "pgo_decision": "Pending",
    "finance_decision": "Pending",
    "spo_decision": "Pending",
}

_ACTION_NOTES = {
    "SEND_TO_SPONSOR": ("sent to sponsor", "Proposal submitted and routed to sponsor review."),
    "SPO_APPROVE": ("SPO approved", "Funding draft is now available for completion."),
    "SPO_REJECT": ("SPO rejected", "Submission was rejected by SPO committee."),
    "SUBMIT_FUNDING_REQUEST": ("funding request submitted", "Funding request sent to required sponsors for approval."),
    "RAISE_CHANGE_REQUEST": ("moved to change review", "Project is now in change review workflow."),
}


def _action_patch(submission: dict, action: str) -> dict:
    if action == "SEND_TO_SPONSOR":
        return build_workflow_patch_from_lifecycle(submission, "AT_SPONSOR_REVIEW", {
            **_PENDING_DECISIONS, "funding_status": "Not Requested",
        })
    if action == "SUBMIT_FUNDING_REQUEST":
        return build_workflow_patch_from_lifecycle(submission, "FR_AT_SPONSOR_APPROVALS", {
            **_PENDING_DECISIONS, "funding_status": "Requested",
        })
    if action == "SPO_APPROVE":
        patch = build_workflow_patch_from_lifecycle(submission, "FR_DRAFT", {
            **_PENDING_DECISIONS, "spo_decision": "Approved", "funding_status": "Requested",
        })
        patch["committee_decision"] = "APPROVED"
        return patch
    if action == "SPO_REJECT":
        patch = build_workflow_patch_from_lifecycle(submission, "SPO_DECISION_REJECTED", {"spo_decision": "Rejected"})
        patch["committee_decision"] = "REJECTED"
        return patch
    # RAISE_CHANGE_REQUEST
    patch = build_workflow_patch_from_lifecycle(submission, "ARCHIVED")
    patch["workflow"]["lock_reason"] = "Project is in change review."
    return patch


def _reset_approval_stages(stages: list[dict]) -> list[dict]:
    now = _now_iso()
    return [
        {**s, "status": "PENDING", "decided_by_user_id": None, "acting_as": None,
         "comment": None, "decided_at": None, "updated_at": now}
        for s in stages
    ]


def run_workflow_action(submission_id: str, action: str, actor: Principal | None = None) -> dict:
    """Apply a human workflow action, then reconcile.

    Raises:
        ValidationError: unknown action.
        WorkflowTransitionError: action not allowed at the current position.
    """
    if action not in ws.WORKFLOW_ACTIONS:
        raise ValidationError(f"Unsupported workflow action: {action}", details={"action": action})
    submission = get_submission(submission_id)
    allowed = ws.get_allowed_workflow_actions(submission)
    if action not in allowed:
        raise WorkflowTransitionError(
            submission_id, action, f"{submission['stage']}/{submission['status']}", allowed,
        )

    patch = _action_patch(submission, action)
    if action in ("SEND_TO_SPONSOR", "SUBMIT_FUNDING_REQUEST") and submission["approval_stages"]:
        patch["approval_stages"] = _reset_approval_stages(submission["approval_stages"])

    next_canonical = ws.map_lifecycle_to_stage_status(patch["workflow"]["lifecycle_status"])
    updated = update_submission(
        submission_id, patch,
        audit={
            "action": action,
            "note": (f"Workflow action {action} moved record from {submission['stage']}/{submission['status']} "
                     f"to {next_canonical['stage']}/{next_canonical['status']}."),
        },
        actor=actor,
    )
    logger.info("Workflow action %s applied to %s", action, submission_id,
                extra={"submission_id": submission_id, "lifecycle_status": updated["workflow"]["lifecycle_status"]})

    created_by = (actor.id or actor.normalized_email) if actor else None
    if action == "SEND_TO_SPONSOR":
        cancel_pending_approval_requests_for_submission(
            updated, reason="Superseded by a new proposal sponsor review submission.", supersede_open=True,
        )
        for request in create_approval_requests_for_submission(updated, [BUSINESS_SPONSOR], created_by=created_by):
            NotificationService.notify_approval_request_created(updated, request)
        _dispatch_sponsor_review_notices(updated)
    elif action == "SUBMIT_FUNDING_REQUEST":
        cancel_pending_approval_requests_for_submission(
            updated, reason="Superseded by a newly submitted funding request.", supersede_open=True,
        )
        required = get_required_approval_role_contexts_for_submission(updated)
        for request in create_approval_requests_for_submission(updated, required, created_by=created_by):
            NotificationService.notify_approval_request_created(updated, request)

    title, body = _ACTION_NOTES[action]
    NotificationService.notify_workflow_event(updated, f"{updated['id']} {title}", body)

    return reconcile_submission_workflow(
        submission_id, actor=actor, reason=f"Reconciled after workflow action {action}.",
    )


# Actions a submitter performs on their own record versus committee decisions
FORM_ACTIONS = ("SEND_TO_SPONSOR", "SUBMIT_FUNDING_REQUEST", "RAISE_CHANGE_REQUEST")
SPO_ACTIONS = ("SPO_APPROVE", "SPO_REJECT")
FORM_ADMIN_ROLES = ("ADMIN", "PROJECT_MANAGEMENT_HUB_ADMIN")
SPO_ROLES = ("ADMIN", "SPO_COMMITTEE_HUB_USER")


def can_run_workflow_action(submission: dict, action: str, principal: Principal | None) -> bool:
    """True when ``principal`` may trigger ``action`` on ``submission``.

    Committee actions need an SPO committee or admin role.  Form actions
    belong to the submission owner; hub admins and admins may act for them.
    """
    if principal is None or principal.is_anonymous:
        return False
    role = (principal.role_type or "").upper()
    if action in SPO_ACTIONS:
        return role in SPO_ROLES
    if action not in FORM_ACTIONS:
        return False
    if role in FORM_ADMIN_ROLES:
        return True
    owner = normalize_email(submission.get("owner_email"))
    return bool(owner) and owner == principal.normalized_email


def _audit_workflow_action(submission_id: str, action: str, principal: Principal, outcome: str, details: str) -> None:
    append_governance_audit_log(
        area="WORKFLOW",
        action=action,
        entity_type="submission",
        entity_id=submission_id,
        outcome=outcome,
        actor_name=principal.display_name,
        actor_email=principal.normalized_email or None,
        actor_role=principal.role_type,
        details=details,
    )


def perform_workflow_action(submission_id: str, action: str, principal: Principal) -> dict:
    """``run_workflow_action`` on behalf of a request principal, with access checks and audit.

    Every attempt by an identified caller lands in the governance audit log
    as SUCCESS, FAILED or DENIED.

    Raises:
        ValidationError: unknown action.
        AuthenticationRequiredError: anonymous caller.
        PermissionDeniedError: caller may not run this action on this submission.
        WorkflowTransitionError: action not allowed at the current position.
    """
    if action not in ws.WORKFLOW_ACTIONS:
        raise ValidationError(f"Unsupported workflow action: {action}", details={"action": action})
    if principal is None or principal.is_anonymous:
        raise AuthenticationRequiredError()

    submission = get_submission(submission_id)
    if not can_run_workflow_action(submission, action, principal):
        _audit_workflow_action(submission_id, action, principal, "DENIED",
                               f"{principal.display_name} may not run {action}.")
        logger.warning("Workflow action %s denied on %s", action, submission_id,
                       extra={"submission_id": submission_id, "actor_email": principal.normalized_email or None})
        raise PermissionDeniedError(f"You are not allowed to run {action} on this submission.")

    try:
        updated = run_workflow_action(submission_id, action, actor=principal)
    except (WorkflowTransitionError, ValidationError) as exc:
        _audit_workflow_action(submission_id, action, principal, "FAILED", str(exc))
        raise
    _audit_workflow_action(
        submission_id, action, principal, "SUCCESS",
        f"Moved to {updated['workflow']['lifecycle_status']}.",
    )
    return updated


def _dispatch_sponsor_review_notices(submission: dict) -> None:
    sponsor_name = submission["sponsor_name"] or "Business Sponsor"
    href = f"/submissions/{submission['id']}?focus=sponsor-approval"
    NotificationService.notify_workflow_event(
        submission, f"{submission['id']} awaiting your approval",
        "Please review and decide.", href, to_email=submission["sponsor_email"] or None,
    )
    if submission["owner_email"]:
        NotificationService.notify_workflow_event(
            submission, f"{submission['id']} submitted",
            f"Your request was sent to sponsor {sponsor_name} for approval.", href,
            to_email=submission["owner_email"],
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Reconciliation
# ═══════════════════════════════════════════════════════════════════════════


def _next_lifecycle(submission: dict, lifecycle: str) -> tuple[str, dict, str | None]:
    """Derived transition for the current position: (next lifecycle, workflow patch, committee decision)."""
    from app.services.governance_board import get_governance_task_completion

    summary = get_approval_request_summary_for_submission(submission)
    stages = submission["approval_stages"]
    stages_approved = bool(stages) and all(s["status"] == "APPROVED" for s in stages)
    stages_rejected = any(s["status"] == "REJECTED" for s in stages)
    stages_need_info = any(s["status"] == "NEED_MORE_INFO" for s in stages)

    if lifecycle == "AT_SPONSOR_REVIEW":
        if summary["any_need_more_info"]:
            return "DRAFT", {"sponsor_decision": "Need More Info"}, None
        if summary["any_rejected"]:
            return "SPO_DECISION_REJECTED", {"sponsor_decision": "Rejected"}, "REJECTED"
        if summary["all_required_approved"]:
            return "AT_PGO_FGO_REVIEW", {
                "sponsor_decision": "Approved", "pgo_decision": "Pending", "finance_decision": "Pending",
            }, None
    elif lifecycle == "AT_PGO_FGO_REVIEW":
        if get_governance_task_completion(submission["id"], submission["workflow"]["entity_type"])["both_done"]:
            return "AT_SPO_REVIEW", {
                "pgo_decision": "Approved", "finance_decision": "Approved", "spo_decision": "Pending",
            }, None
    elif lifecycle == "FR_AT_SPONSOR_APPROVALS":
        if summary["any_need_more_info"] or stages_need_info:
            return "FR_DRAFT", {"sponsor_decision": "Need More Info"}, None
        if summary["any_rejected"] or stages_rejected:
            return "FR_DRAFT", {"sponsor_decision": "Rejected"}, None
        if summary["all_required_approved"] or stages_approved:
            return "FR_AT_PGO_FGO_REVIEW", {"sponsor_decision": "Approved"}, None
    elif lifecycle == "FR_AT_PGO_FGO_REVIEW":
        if summary["any_rejected"]:
            return "FR_DRAFT", {"pgo_decision": "Rejected", "finance_decision": "Rejected"}, None
        if get_governance_task_completion(submission["id"], submission["workflow"]["entity_type"])["both_done"]:
            return "FR_APPROVED", {
                "funding_status": "Funded", "pgo_decision": "Approved", "finance_decision": "Approved",
            }, None
    return lifecycle, {}, None


def reconcile_submission_workflow(
    submission_id: str,
    actor: Principal | None = None,
    reason: str | None = None,
) -> dict:
    """Apply any derived transition the current state calls for; returns the submission."""
    current = get_submission(submission_id)
    lifecycle = current["workflow"]["lifecycle_status"]
    next_lifecycle, workflow_patch, committee_decision = _next_lifecycle(current, lifecycle)
    if next_lifecycle == lifecycle:
        return current

    patch = build_workflow_patch_from_lifecycle(current, next_lifecycle, workflow_patch)
    if committee_decision is not None:
        patch["committee_decision"] = committee_decision
    updated = update_submission(
        submission_id, patch,
        audit={"action": "UPDATED", "note": reason or f"Workflow reconciled from {lifecycle} to {next_lifecycle}."},
        actor=actor or SYSTEM_ACTOR,
    )
    logger.info("Workflow reconciled %s -> %s", lifecycle, next_lifecycle,
                extra={"submission_id": submission_id, "lifecycle_status": next_lifecycle})

    if next_lifecycle in ("AT_PGO_FGO_REVIEW", "FR_AT_PGO_FGO_REVIEW"):
        _ensure_governance_cards(submission_id)

    if next_lifecycle == "FR_APPROVED":
        ensure_project_management_assignment_task(updated)
        NotificationService.notify_workflow_event(
            updated, f"{updated['id']} funding request approved",
            "Funding Request is approved and locked. Project Management task created for PM assignment.",
            to_email=updated["owner_email"] or None,
        )
    else:
        NotificationService.notify_workflow_event(
            updated, f"{updated['id']} workflow updated", f"Workflow moved to {next_lifecycle}.",
            to_email=updated["owner_email"] or None,
        )
    return updated


def _ensure_governance_cards(submission_id: str) -> None:
    from app.services.governance_board import list_board_cards

    try:
        list_board_cards()
    except Exception:
        logger.exception("Governance board sync failed", extra={"submission_id": submission_id})


def ensure_project_management_assignment_task(submission: dict) -> dict:
    """Open ASSIGN_PROJECT_MANAGER task for a funded submission (one per project)."""
    repo = get_repositories().pm_tasks
    rows = repo.read_all()
    existing = next(
        (t for t in rows
         if t["project_id"] == submission["id"] and t["task_type"] == "ASSIGN_PROJECT_MANAGER"
         and t["status"] == "OPEN"),
        None,
    )
    if existing:
        return existing
    now = _now_iso()
    task = {
        "id": f"pm-task-{uuid.uuid4().hex[:12]}",
        "project_id": submission["id"],
        "funding_request_id": submission["id"],
        "task_type": "ASSIGN_PROJECT_MANAGER",
        "status": "OPEN",
        "created_at": now,
        "updated_at": now,
    }
    rows.append(task)
    repo.write_all(rows)
    return task


# ═══════════════════════════════════════════════════════════════════════════
#  API-level decision flow
# ═══════════════════════════════════════════════════════════════════════════


def decide_submission_approval(
    submission_id: str,
    principal: Principal,
    decision: str,
    *,
    comment: str | None = None,
    stage: str | None = None,
    request_id: str | None = None,
) -> dict:
    """Record an approver's decision and advance the workflow.

    Returns ``{"submission": ..., "request": ...}``.
    """
    comment = _text(comment)
    if decision in ("REJECTED", "NEED_MORE_INFO") and not comment:
        raise ValidationError("A comment is required for this decision.", details={"comment": "required"})

    submission = get_submission(submission_id)
    request = decide_approval_request_for_principal(
        submission, principal, decision, comment=comment, request_id=request_id, stage=stage,
    )

    stage_code = map_role_context_to_approval_stage(request["role_context"])
    stage_record = next((s for s in submission["approval_stages"] if s["stage"] == stage_code), None)
    if stage_record and stage_record["status"] == "PENDING":
        record_approval_stage_decision(
            submission_id, stage_code, decision,
            decided_by_user_id=normalize_id(principal.id) or principal.normalized_email or None,
            acting_as="DELEGATE" if request["role_context"] == BUSINESS_DELEGATE else "SPONSOR",
            comment=comment,
            actor=principal,
        )

    reconciled = reconcile_submission_workflow(
        submission_id, actor=principal,
        reason=f"Reconciled after {request['role_context']} decision {decision}.",
    )
    return {"submission": reconciled, "request": request}
