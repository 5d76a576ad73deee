"""
Submission Blueprint.

Routes:
  POST   /submissions                           – create a draft proposal
  GET    /submissions                           – list submissions (newest first)
  GET    /submissions/<sid>                     – detail with canonical state and allowed actions
  PUT    /submissions/<sid>/sponsors            – reassign sponsor contacts
  POST   /submissions/<sid>/workflow-action     – run a workflow action
  POST   /submissions/<sid>/decision            – approver decision
  POST   /submissions/<sid>/sponsor-decision    – retired (410)
"""

import logging

from flask import Blueprint, jsonify

from app.blueprints import current_principal, json_body, register_domain_error_handlers
from app.services import workflow_state as ws
from app.services.approval_requests import (
    DECISIONS,
    get_approval_request_summary_for_submission,
)
from app.services.submission_service import (
    CONTACT_KEYS,
    create_draft_submission,
    decide_submission_approval,
    get_submission,
    list_submissions,
    perform_workflow_action,
    update_submission_sponsors,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

submission_bp = Blueprint("submission_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(submission_bp)


def _with_state(submission):
    """Submission plus its canonical position, display labels and allowed actions."""
    state = ws.resolve_canonical_workflow_state(submission)
    return {
        **submission,
        "canonical_state": state,
        "stage_label": ws.stage_label(state["stage"]),
        "status_label": ws.status_label(state["status"]),
        "allowed_actions": ws.get_allowed_workflow_actions(submission),
        "is_locked": ws.is_submission_locked_for_submitter(submission),
    }


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════

@submission_bp.route("/submissions", methods=["POST"])
def create_submission():
    """Create a PROPOSAL/DRAFT submission.

    Body: { title, summary, owner_name?, owner_email?, sponsor_contacts?, financials?, ... }
    """
    data = json_body()
    if not (data.get("title") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    submission = create_draft_submission(data, actor=current_principal())
    return jsonify(_with_state(submission)), 201


@submission_bp.route("/submissions", methods=["GET"])
def list_all():
    return jsonify([_with_state(s) for s in list_submissions()])


@submission_bp.route("/submissions/<sid>", methods=["GET"])
def get_one(sid):
    submission = get_submission(sid)
    summary = get_approval_request_summary_for_submission(submission)
    return jsonify({
        **_with_state(submission),
        "approval_summary": {k: v for k, v in summary.items() if k != "rows"},
        "approval_requests": summary["rows"],
    })


@submission_bp.route("/submissions/<sid>/sponsors", methods=["PUT"])
def update_sponsors(sid):
    """Body: { sponsor_contacts: { business_sponsor: {display_name, email, ...}, ... } }"""
    data = json_body()
    contacts = data.get("sponsor_contacts", data)
    if not isinstance(contacts, dict):
        return api_error(E.VALIDATION_INVALID, "sponsor_contacts must be an object")
    unknown = sorted(set(contacts) - set(CONTACT_KEYS))
    if unknown:
        return api_error(E.VALIDATION_INVALID, f"Unknown sponsor roles: {', '.join(unknown)}")
    submission = update_submission_sponsors(sid, contacts, actor=current_principal())
    return jsonify(_with_state(submission))


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW
# ═════════════════════════════════════════════════════════════════════════════

@submission_bp.route("/submissions/<sid>/workflow-action", methods=["POST"])
def workflow_action(sid):
    """Body: { action: SEND_TO_SPONSOR | SPO_APPROVE | SPO_REJECT | SUBMIT_FUNDING_REQUEST | RAISE_CHANGE_REQUEST }

    Form actions need the submission owner or a hub admin; SPO actions need
    an SPO committee or admin role.  401 without identity headers.
    """
    action = (json_body().get("action") or "").strip().upper()
    if not action:
        return api_error(E.VALIDATION_REQUIRED, "action is required")
    submission = perform_workflow_action(sid, action, current_principal())
    return jsonify(_with_state(submission))


@submission_bp.route("/submissions/<sid>/decision", methods=["POST"])
def decide(sid):
    """Record the caller's decision on their pending approval request.

    Body: { decision: APPROVED | REJECTED | NEED_MORE_INFO, comment?, stage?, request_id? }
    """
    data = json_body()
    decision = (data.get("decision") or "").strip().upper()
    if decision not in DECISIONS:
        return api_error(E.VALIDATION_INVALID, f"decision must be one of {list(DECISIONS)}")
    principal = current_principal()
    if principal.is_anonymous:
        return api_error(E.FORBIDDEN, "An identified user is required to record a decision")

    result = decide_submission_approval(
        sid, principal, decision,
        comment=data.get("comment"),
        stage=(data.get("stage") or "").strip().upper() or None,
        request_id=data.get("request_id"),
    )
    return jsonify({"submission": _with_state(result["submission"]), "request": result["request"]})


@submission_bp.route("/submissions/<sid>/sponsor-decision", methods=["POST"])
def sponsor_decision_retired(sid):
    return api_error(
        E.GONE,
        "This endpoint has been retired. Use POST /api/v1/submissions/<id>/decision.",
        details={"replacement": f"/api/v1/submissions/{sid}/decision"},
    )
