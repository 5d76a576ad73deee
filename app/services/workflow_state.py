"""
Canonical State Resolver.

Translates between three vocabularies:

    legacy free-text stage/status  ("Sponsor Approval" / "Sent for Approval")
    canonical pair                 {stage: PROPOSAL|FUNDING|LIVE, status: ...}
    lifecycle status               the persisted enum, authoritative when set

All mappings are exhaustive lookup tables checked at import time; there are
no free-form string comparisons outside this module.

Usage:
    from app.services.workflow_state import resolve_canonical_workflow_state

    state = resolve_canonical_workflow_state(submission)
    # {"stage": "PROPOSAL", "status": "SPONSOR_REVIEW"}
"""

from __future__ import annotations

# ── Vocabularies ─────────────────────────────────────────────────────────────

STAGE_PROPOSAL = "PROPOSAL"
STAGE_FUNDING = "FUNDING"
STAGE_LIVE = "LIVE"
CANONICAL_STAGES = (STAGE_PROPOSAL, STAGE_FUNDING, STAGE_LIVE)

CANONICAL_STATUSES = (
    "DRAFT",
    "SPONSOR_REVIEW",
    "PGO_FGO_REVIEW",
    "SPO_REVIEW",
    "REJECTED",
    "APPROVED",
    "ACTIVE",
    "CHANGE_REVIEW",
)

LIFECYCLE_STATUSES = (
    "DRAFT",
    "AT_SPONSOR_REVIEW",
    "AT_PGO_FGO_REVIEW",
    "AT_SPO_REVIEW",
    "SPO_DECISION_DEFERRED",
    "SPO_DECISION_REJECTED",
    "SPO_DECISION_APPROVED",
    "FR_DRAFT",
    "FR_AT_SPONSOR_APPROVALS",
    "FR_AT_PGO_FGO_REVIEW",
    "FR_APPROVED",
    "FR_REJECTED",
    "ARCHIVED",
    "CLOSED",
)

ENTITY_PROPOSAL = "PROPOSAL"
ENTITY_FUNDING_REQUEST = "FUNDING_REQUEST"

WORKFLOW_ACTIONS = (
    "SEND_TO_SPONSOR",
    "SPO_APPROVE",
    "SPO_REJECT",
    "SUBMIT_FUNDING_REQUEST",
    "RAISE_CHANGE_REQUEST",
)

# ── Lookup tables ────────────────────────────────────────────────────────────

# lifecycle → (stage, status).  The single place encoding the full state space.
LIFECYCLE_TO_CANONICAL: dict[str, tuple[str, str]] = {
    "DRAFT": (STAGE_PROPOSAL, "DRAFT"),
    "AT_SPONSOR_REVIEW": (STAGE_PROPOSAL, "SPONSOR_REVIEW"),
    "AT_PGO_FGO_REVIEW": (STAGE_PROPOSAL, "PGO_FGO_REVIEW"),
    "AT_SPO_REVIEW": (STAGE_PROPOSAL, "SPO_REVIEW"),
    "SPO_DECISION_DEFERRED": (STAGE_PROPOSAL, "SPO_REVIEW"),
    "SPO_DECISION_REJECTED": (STAGE_PROPOSAL, "REJECTED"),
    "SPO_DECISION_APPROVED": (STAGE_FUNDING, "DRAFT"),
    "FR_DRAFT": (STAGE_FUNDING, "DRAFT"),
    "FR_AT_SPONSOR_APPROVALS": (STAGE_FUNDING, "SPONSOR_REVIEW"),
    "FR_AT_PGO_FGO_REVIEW": (STAGE_FUNDING, "PGO_FGO_REVIEW"),
    "FR_APPROVED": (STAGE_FUNDING, "APPROVED"),
    "FR_REJECTED": (STAGE_FUNDING, "REJECTED"),
    "ARCHIVED": (STAGE_LIVE, "CHANGE_REVIEW"),
    "CLOSED": (STAGE_LIVE, "ACTIVE"),
}

# (stage, status) → lifecycle; per-stage fallback for pairs no lifecycle maps to
CANONICAL_TO_LIFECYCLE: dict[str, dict[str, str]] = {
    STAGE_PROPOSAL: {
        "DRAFT": "DRAFT",
        "SPONSOR_REVIEW": "AT_SPONSOR_REVIEW",
        "PGO_FGO_REVIEW": "AT_PGO_FGO_REVIEW",
        "SPO_REVIEW": "AT_SPO_REVIEW",
        "REJECTED": "SPO_DECISION_REJECTED",
    },
    STAGE_FUNDING: {
        "DRAFT": "FR_DRAFT",
        "SPONSOR_REVIEW": "FR_AT_SPONSOR_APPROVALS",
        "PGO_FGO_REVIEW": "FR_AT_PGO_FGO_REVIEW",
        "APPROVED": "FR_APPROVED",
        "REJECTED": "FR_REJECTED",
    },
    STAGE_LIVE: {
        "CHANGE_REVIEW": "ARCHIVED",
    },
}
_STAGE_FALLBACK_LIFECYCLE = {
    STAGE_PROPOSAL: "AT_SPO_REVIEW",
    STAGE_FUNDING: "FR_DRAFT",
    STAGE_LIVE: "CLOSED",
}

# Lifecycle values that share a canonical pair with another value and
# therefore cannot survive a round trip.  Value = what they collapse to.
COLLAPSED_LIFECYCLE_STATUSES: dict[str, str] = {
    "SPO_DECISION_DEFERRED": "AT_SPO_REVIEW",
    "SPO_DECISION_APPROVED": "FR_DRAFT",
}

LEGACY_STAGE_TO_CANONICAL: dict[str, str] = {
    "PLACEMAT PROPOSAL": STAGE_PROPOSAL,
    "SPONSOR APPROVAL": STAGE_PROPOSAL,
    "PGO & FINANCE REVIEW": STAGE_PROPOSAL,
    "SPO COMMITTEE REVIEW": STAGE_PROPOSAL,
    "FUNDING REQUEST": STAGE_FUNDING,
    "LIVE PROJECT": STAGE_LIVE,
    "CHANGE REQUEST": STAGE_LIVE,
    "CHANGE REQUEST (IF REQUIRED)": STAGE_LIVE,
}

# Legacy status → canonical status; APPROVED depends on the stage
LEGACY_STATUS_TO_CANONICAL: dict[str, str | dict[str, str]] = {
    "DRAFT": "DRAFT",
    "SENT FOR APPROVAL": "SPONSOR_REVIEW",
    "SUBMITTED": "PGO_FGO_REVIEW",
    "AT SPO REVIEW": "PGO_FGO_REVIEW",
    "APPROVED": {STAGE_PROPOSAL: "SPO_REVIEW", STAGE_FUNDING: "APPROVED", STAGE_LIVE: "ACTIVE"},
    "REJECTED": "REJECTED",
    "RETURNED TO SUBMITTER": "DRAFT",
    "DEFERRED": "CHANGE_REVIEW",
    "CANCELLED": "CHANGE_REVIEW",
}

FUNDING_HINT_STATUSES = frozenset({"Funded", "Live"})

EDITABLE_LIFECYCLE_STATUSES = frozenset({"DRAFT", "FR_DRAFT"})

# (stage, status) → workflow actions permitted there
ALLOWED_WORKFLOW_ACTIONS: dict[tuple[str, str], tuple[str, ...]] = {
    (STAGE_PROPOSAL, "DRAFT"): ("SEND_TO_SPONSOR",),
    (STAGE_PROPOSAL, "SPO_REVIEW"): ("SPO_APPROVE", "SPO_REJECT"),
    (STAGE_FUNDING, "DRAFT"): ("SUBMIT_FUNDING_REQUEST",),
    (STAGE_LIVE, "ACTIVE"): ("RAISE_CHANGE_REQUEST",),
}

STAGE_LABELS = {STAGE_PROPOSAL: "Proposal", STAGE_FUNDING: "Funding", STAGE_LIVE: "Live"}
STATUS_LABELS = {
    "DRAFT": "Draft",
    "SPONSOR_REVIEW": "Sponsor Review",
    "PGO_FGO_REVIEW": "PGO/FGO Review",
    "SPO_REVIEW": "SPO Review",
    "REJECTED": "Rejected",
    "APPROVED": "Approved",
    "ACTIVE": "Active",
    "CHANGE_REVIEW": "Change Review",
}


def _check_tables() -> None:
    """Fail at import time if a table drifts from its vocabulary."""
    missing = set(LIFECYCLE_STATUSES) - set(LIFECYCLE_TO_CANONICAL)
    extra = set(LIFECYCLE_TO_CANONICAL) - set(LIFECYCLE_STATUSES)
    if missing or extra:
        raise RuntimeError(f"Lifecycle table out of sync: missing={missing} extra={extra}")
    for stage, status in LIFECYCLE_TO_CANONICAL.values():
        if stage not in CANONICAL_STAGES or status not in CANONICAL_STATUSES:
            raise RuntimeError(f"Lifecycle table maps to unknown pair {stage}/{status}")
    if set(CANONICAL_TO_LIFECYCLE) != set(CANONICAL_STAGES) or set(_STAGE_FALLBACK_LIFECYCLE) != set(CANONICAL_STAGES):
        raise RuntimeError("Inverse lifecycle table must cover every canonical stage")
    for stage, by_status in CANONICAL_TO_LIFECYCLE.items():
        for status, lifecycle in by_status.items():
            if LIFECYCLE_TO_CANONICAL[lifecycle] != (stage, status):
                raise RuntimeError(f"Inverse table is not a left-inverse at {stage}/{status}")
    for label_table, vocab in ((STAGE_LABELS, CANONICAL_STAGES), (STATUS_LABELS, CANONICAL_STATUSES)):
        if set(label_table) != set(vocab):
            raise RuntimeError("Display label table out of sync")
    for actions in ALLOWED_WORKFLOW_ACTIONS.values():
        if not set(actions) <= set(WORKFLOW_ACTIONS):
            raise RuntimeError(f"Unknown workflow action in {actions}")


_check_tables()


# ── Helpers ──────────────────────────────────────────────────────────────────


def _text(value) -> str:
    return (value or "").strip() if isinstance(value, str) else ""


def _workflow_of(subject) -> dict:
    return (subject or {}).get("workflow") or {}


# ── Forward / inverse mapping ────────────────────────────────────────────────


def map_lifecycle_to_stage_status(lifecycle_status: str) -> dict:
    """Return ``{"stage", "status"}`` for a lifecycle value.

    Raises ValueError for a value outside the enumeration; the table is
    total over the enumeration, so there is no silent default.
    """
    try:
        stage, status = LIFECYCLE_TO_CANONICAL[lifecycle_status]
    except KeyError:
        raise ValueError(f"Unknown lifecycle status: {lifecycle_status!r}") from None
    return {"stage": stage, "status": status}


def lifecycle_from_canonical(stage: str, status: str) -> str:
    """Inverse of ``map_lifecycle_to_stage_status`` (left-inverse except collapsed states)."""
    if stage not in CANONICAL_TO_LIFECYCLE:
        raise ValueError(f"Unknown canonical stage: {stage!r}")
    return CANONICAL_TO_LIFECYCLE[stage].get(status, _STAGE_FALLBACK_LIFECYCLE[stage])


def is_lifecycle_status(value) -> bool:
    return isinstance(value, str) and value in LIFECYCLE_TO_CANONICAL


# ── Legacy normalisation ─────────────────────────────────────────────────────


def normalize_project_stage(stage, workflow: dict | None = None) -> str:
    """Upper-case a legacy stage and map it; unmatched → FUNDING on funding hints, else PROPOSAL."""
    normalized = _text(stage).upper()
    if normalized in CANONICAL_STAGES:
        return normalized
    if normalized in LEGACY_STAGE_TO_CANONICAL:
        return LEGACY_STAGE_TO_CANONICAL[normalized]
    workflow = workflow or {}
    if (workflow.get("entity_type") == ENTITY_FUNDING_REQUEST
            or workflow.get("funding_status") in FUNDING_HINT_STATUSES):
        return STAGE_FUNDING
    return STAGE_PROPOSAL


def _map_legacy_status(normalized: str, stage: str) -> str | None:
    mapped = LEGACY_STATUS_TO_CANONICAL.get(normalized)
    if isinstance(mapped, dict):
        return mapped[stage]
    return mapped


def normalize_project_status(status, stage: str, workflow: dict | None = None) -> str:
    normalized = _text(status).upper()
    if normalized in CANONICAL_STATUSES:
        return normalized
    mapped = _map_legacy_status(normalized, stage) if normalized else None
    if mapped:
        return mapped
    lifecycle = (workflow or {}).get("lifecycle_status")
    if is_lifecycle_status(lifecycle):
        return LIFECYCLE_TO_CANONICAL[lifecycle][1]
    return "ACTIVE" if stage == STAGE_LIVE else "DRAFT"


# ── Public resolver API ──────────────────────────────────────────────────────


def resolve_canonical_state(stage, status, workflow: dict | None = None) -> dict:
    """Resolve ``{"stage", "status"}`` from raw parts.

    A set lifecycle status is authoritative; otherwise the legacy stage and
    status are normalised.  An unrecognised stored lifecycle value is treated
    as absent.
    """
    workflow = workflow or {}
    lifecycle = workflow.get("lifecycle_status")
    if is_lifecycle_status(lifecycle):
        return map_lifecycle_to_stage_status(lifecycle)
    canonical_stage = normalize_project_stage(stage, workflow)
    canonical_status = normalize_project_status(status, canonical_stage, workflow)
    return {"stage": canonical_stage, "status": canonical_status}


def resolve_canonical_workflow_state(submission: dict) -> dict:
    return resolve_canonical_state(
        submission.get("stage"), submission.get("status"), _workflow_of(submission),
    )


def resolve_workflow_lifecycle_status(submission: dict) -> str:
    canonical = resolve_canonical_workflow_state(submission)
    return lifecycle_from_canonical(canonical["stage"], canonical["status"])


def derive_workflow_entity_type(submission: dict) -> str:
    workflow = _workflow_of(submission)
    if workflow.get("entity_type"):
        return workflow["entity_type"]
    stage = normalize_project_stage(submission.get("stage"), workflow)
    return ENTITY_PROPOSAL if stage == STAGE_PROPOSAL else ENTITY_FUNDING_REQUEST


def entity_type_for_lifecycle(lifecycle_status: str) -> str:
    stage = LIFECYCLE_TO_CANONICAL[lifecycle_status][0]
    return ENTITY_PROPOSAL if stage == STAGE_PROPOSAL else ENTITY_FUNDING_REQUEST


# ── Gating ───────────────────────────────────────────────────────────────────


def is_workflow_editable_status(lifecycle_status: str, stage: str | None = None) -> bool:
    """True only for draft-equivalent lifecycle values.

    With a stage, LIVE is never editable here (live projects change through
    change requests) and any lifecycle resolving to a DRAFT status counts.
    """
    if stage:
        if normalize_project_stage(stage) == STAGE_LIVE:
            return False
        if lifecycle_status in EDITABLE_LIFECYCLE_STATUSES:
            return True
        return is_lifecycle_status(lifecycle_status) and LIFECYCLE_TO_CANONICAL[lifecycle_status][1] == "DRAFT"
    return lifecycle_status in EDITABLE_LIFECYCLE_STATUSES


def is_submission_locked_for_submitter(submission: dict) -> bool:
    canonical = resolve_canonical_workflow_state(submission)
    lifecycle = lifecycle_from_canonical(canonical["stage"], canonical["status"])
    return not is_workflow_editable_status(lifecycle, canonical["stage"])


def is_funding_stage_submission(submission: dict) -> bool:
    return resolve_canonical_workflow_state(submission)["stage"] != STAGE_PROPOSAL


def get_allowed_workflow_actions(submission: dict) -> list[str]:
    canonical = resolve_canonical_workflow_state(submission)
    return list(ALLOWED_WORKFLOW_ACTIONS.get((canonical["stage"], canonical["status"]), ()))


def stage_label(stage: str) -> str:
    return STAGE_LABELS[stage]


def status_label(status: str) -> str:
    return STATUS_LABELS[status]
