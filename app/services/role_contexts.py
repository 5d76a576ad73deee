"""
Role-Context Resolver.

A role-context is a named approval role on a submission.  This module
decides which role-contexts must approve at the submission's current
canonical position, and who concretely holds each one.

Resolution chain per role:
    structured contact reference (sponsor_contacts.<role>)
      → legacy flat field (business_sponsor / sponsor_name / ...)
      → None  (role skipped: nobody to approve)
"""

from __future__ import annotations

from app.services.identity import normalize_email
from app.services.workflow_state import (
    ENTITY_FUNDING_REQUEST,
    ENTITY_PROPOSAL,
    STAGE_FUNDING,
    STAGE_LIVE,
    resolve_canonical_workflow_state,
)

BUSINESS_SPONSOR = "BUSINESS_SPONSOR"
BUSINESS_DELEGATE = "BUSINESS_DELEGATE"
TECH_SPONSOR = "TECH_SPONSOR"
FINANCE_SPONSOR = "FINANCE_SPONSOR"
BENEFITS_SPONSOR = "BENEFITS_SPONSOR"
PROJECT_MANAGER = "PROJECT_MANAGER"

ROLE_CONTEXTS = (
    BUSINESS_SPONSOR,
    BUSINESS_DELEGATE,
    TECH_SPONSOR,
    FINANCE_SPONSOR,
    BENEFITS_SPONSOR,
    PROJECT_MANAGER,
)

# Contexts a decision may target when the caller names no approval stage
SPONSOR_ROLE_CONTEXTS = ROLE_CONTEXTS[:5]

APPROVAL_STAGE_CODES = ("BUSINESS", "TECHNOLOGY", "FINANCE", "BENEFITS", "PROJECT_MANAGER")

ROLE_CONTEXT_TO_STAGE: dict[str, str] = {
    BUSINESS_SPONSOR: "BUSINESS",
    BUSINESS_DELEGATE: "BUSINESS",
    TECH_SPONSOR: "TECHNOLOGY",
    FINANCE_SPONSOR: "FINANCE",
    BENEFITS_SPONSOR: "BENEFITS",
    PROJECT_MANAGER: "PROJECT_MANAGER",
}

STAGE_TO_ROLE_CONTEXTS: dict[str, tuple[str, ...]] = {
    "BUSINESS": (BUSINESS_SPONSOR, BUSINESS_DELEGATE),
    "TECHNOLOGY": (TECH_SPONSOR,),
    "FINANCE": (FINANCE_SPONSOR,),
    "BENEFITS": (BENEFITS_SPONSOR,),
    "PROJECT_MANAGER": (PROJECT_MANAGER,),
}

# role-context → (sponsor_contacts key, legacy flat field)
_CONTACT_FIELDS: dict[str, tuple[str, str]] = {
    BUSINESS_SPONSOR: ("business_sponsor", "business_sponsor"),
    BUSINESS_DELEGATE: ("business_delegate", "business_delegate"),
    TECH_SPONSOR: ("technology_sponsor", "technology_sponsor"),
    FINANCE_SPONSOR: ("finance_sponsor", "finance_sponsor"),
    BENEFITS_SPONSOR: ("benefits_sponsor", "benefits_sponsor"),
}

ROLE_CONTEXT_LABELS = {
    BUSINESS_SPONSOR: "Business Sponsor",
    BUSINESS_DELEGATE: "Business Delegate",
    TECH_SPONSOR: "Technology Sponsor",
    FINANCE_SPONSOR: "Finance Sponsor",
    BENEFITS_SPONSOR: "Benefits Sponsor",
    PROJECT_MANAGER: "Project Manager",
}

if set(ROLE_CONTEXT_TO_STAGE) != set(ROLE_CONTEXTS) or set(STAGE_TO_ROLE_CONTEXTS) != set(APPROVAL_STAGE_CODES):
    raise RuntimeError("Role-context lookup tables out of sync")


def map_role_context_to_approval_stage(role_context: str) -> str:
    try:
        return ROLE_CONTEXT_TO_STAGE[role_context]
    except KeyError:
        raise ValueError(f"Unknown role context: {role_context!r}") from None


def role_contexts_for_stage(stage: str) -> tuple[str, ...]:
    try:
        return STAGE_TO_ROLE_CONTEXTS[stage]
    except KeyError:
        raise ValueError(f"Unknown approval stage: {stage!r}") from None


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def resolve_role_context_person(submission: dict, role_context: str) -> dict | None:
    """Return ``{"name", "email", "azure_object_id"}`` for the holder of a role, or None."""
    if role_context == PROJECT_MANAGER:
        email = normalize_email(submission.get("owner_email"))
        name = _text(submission.get("owner_name"))
        if not name and not email:
            return None
        return {"name": name or email, "email": email, "azure_object_id": None}

    if role_context not in _CONTACT_FIELDS:
        raise ValueError(f"Unknown role context: {role_context!r}")

    contact_key, legacy_field = _CONTACT_FIELDS[role_context]
    ref = (submission.get("sponsor_contacts") or {}).get(contact_key) or {}
    email = normalize_email(ref.get("email"))
    name = _text(ref.get("display_name")) or _text(submission.get(legacy_field))
    if role_context == BUSINESS_SPONSOR:
        email = email or normalize_email(submission.get("sponsor_email"))
        name = name or _text(submission.get("sponsor_name"))
    if not name and not email:
        return None
    return {"name": name or email, "email": email, "azure_object_id": ref.get("azure_object_id") or None}


def get_required_approval_role_contexts_for_submission(submission: dict) -> list[str]:
    """Role-contexts that must approve at the submission's current position.

    PROPOSAL/SPONSOR_REVIEW needs the business sponsor only.  FUNDING in
    sponsor or PGO/FGO review needs the business sponsor plus every other
    sponsor role that actually has a person assigned.  Anything else has no
    open approval gate.
    """
    canonical = resolve_canonical_workflow_state(submission)
    stage, status = canonical["stage"], canonical["status"]
    if stage == "PROPOSAL" and status == "SPONSOR_REVIEW":
        return [BUSINESS_SPONSOR]
    if stage == STAGE_FUNDING and status in ("SPONSOR_REVIEW", "PGO_FGO_REVIEW"):
        contexts = [BUSINESS_SPONSOR]
        for role_context in (BUSINESS_DELEGATE, FINANCE_SPONSOR, TECH_SPONSOR, BENEFITS_SPONSOR):
            if resolve_role_context_person(submission, role_context):
                contexts.append(role_context)
        return contexts
    return []


def resolve_stage_context(submission: dict) -> str:
    """Approval-request stage context: PROPOSAL, FUNDING or PM_ASSIGNMENT."""
    stage = resolve_canonical_workflow_state(submission)["stage"]
    if stage == STAGE_FUNDING:
        return "FUNDING"
    if stage == STAGE_LIVE:
        return "PM_ASSIGNMENT"
    return "PROPOSAL"


def approval_entity_type(submission: dict) -> str:
    """Entity type recorded on approval requests for the submission's current stage."""
    context = resolve_stage_context(submission)
    if context == "FUNDING":
        return ENTITY_FUNDING_REQUEST
    if context == "PM_ASSIGNMENT":
        return "PM_ASSIGNMENT"
    return ENTITY_PROPOSAL
