"""
Approval Queue Blueprint.

Routes:
  GET    /approvals/my-queue          – open proposal/funding and change approvals for the caller
  GET    /approvals/initiated         – approval requests the caller created
  GET    /notifications               – in-app notifications for the caller
  GET    /governance/audit-log        – governance audit trail (newest first)
"""

from flask import Blueprint, jsonify, request

from app.blueprints import current_principal, register_domain_error_handlers
from app.services.approval_requests import (
    list_approval_requests_initiated_by_principal,
    list_pending_approval_requests_for_principal,
)
from app.services.audit_log import list_governance_audit_log
from app.services.change_requests import list_pending_change_approvals_for_principal
from app.services.notification import NotificationService
from app.services.submission_service import find_submission
from app.utils.errors import E, api_error

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(approval_bp)


# ── helpers ──────────────────────────────────────────────────────────────

def _queue_item(row):
    submission = find_submission(row["entity_id"]) or {}
    return {
        **row,
        "submission_title": submission.get("title"),
        "href": f"/submissions/{row['entity_id']}",
    }


# ═════════════════════════════════════════════════════════════════════════════
# QUEUES
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/my-queue", methods=["GET"])
def my_queue():
    """Everything waiting on the caller's decision."""
    principal = current_principal()
    if principal.is_anonymous:
        return api_error(E.FORBIDDEN, "An identified user is required")

    workflow_items = [_queue_item(r) for r in list_pending_approval_requests_for_principal(principal)]
    workflow_items.sort(key=lambda r: r.get("requested_at") or "")
    change_items = list_pending_change_approvals_for_principal(principal)
    return jsonify({
        "workflow_approvals": workflow_items,
        "change_approvals": change_items,
        "total": len(workflow_items) + len(change_items),
    })


@approval_bp.route("/approvals/initiated", methods=["GET"])
def initiated():
    principal = current_principal()
    if principal.is_anonymous:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify([_queue_item(r) for r in list_approval_requests_initiated_by_principal(principal)])


# ═════════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS / AUDIT
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/notifications", methods=["GET"])
def notifications():
    principal = current_principal()
    return jsonify(NotificationService.list_for_recipient(principal.email))


@approval_bp.route("/governance/audit-log", methods=["GET"])
def audit_log():
    limit = request.args.get("limit", 200, type=int)
    return jsonify(list_governance_audit_log(limit))
