"""
Change Request Blueprint.

Routes:
  GET    /change-requests                          – list (optionally ?project_id=)
  POST   /change-requests                          – create a DRAFT
  GET    /change-requests/config                   – templates and thresholds
  GET    /change-requests/analytics                – portfolio analytics (?project_id= repeatable)
  GET    /change-requests/<crid>                   – detail with deltas, approvals, comments, attachments
  POST   /change-requests/<crid>/submit            – DRAFT → SUBMITTED
  POST   /change-requests/<crid>/approve           – approver decision
  POST   /change-requests/<crid>/reject            – approver decision (comment required)
  POST   /change-requests/<crid>/implement         – apply deltas to the project
  POST   /change-requests/<crid>/close             – IMPLEMENTED → CLOSED
  POST   /change-requests/<crid>/comments          – add comment
  POST   /change-requests/<crid>/attachments       – add attachment reference
  GET    /projects/<pid>/change-log                – per-project change log
  GET    /projects/<pid>/change-indicator          – per-project change badge data
"""

from flask import Blueprint, jsonify, request

from app.blueprints import current_principal, json_body, register_domain_error_handlers
from app.services import change_requests as crs
from app.utils.errors import E, api_error

change_request_bp = Blueprint("change_request_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(change_request_bp)


def _identified_principal():
    principal = current_principal()
    return None if principal.is_anonymous else principal


# ═════════════════════════════════════════════════════════════════════════════
# LIST / CREATE / CONFIG
# ═════════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/change-requests", methods=["GET"])
def list_change_requests():
    project_id = request.args.get("project_id")
    return jsonify(crs.list_change_requests_with_details(project_id))


@change_request_bp.route("/change-requests", methods=["POST"])
def create_change_request():
    """Body: { project_id, change_type, title, description, justification, impact_*, field_changes[] }"""
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.create_change_request_draft(principal, json_body())), 201


@change_request_bp.route("/change-requests/config", methods=["GET"])
def change_request_config():
    return jsonify(crs.get_change_request_templates_and_thresholds())


@change_request_bp.route("/change-requests/analytics", methods=["GET"])
def change_request_analytics():
    project_ids = request.args.getlist("project_id") or None
    return jsonify(crs.get_change_management_analytics(project_ids))


@change_request_bp.route("/change-requests/<crid>", methods=["GET"])
def get_change_request(crid):
    return jsonify(crs.get_change_request_details(crid))


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/change-requests/<crid>/submit", methods=["POST"])
def submit(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.submit_change_request(crid, principal))


@change_request_bp.route("/change-requests/<crid>/approve", methods=["POST"])
def approve(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.approve_change_request(crid, principal, json_body().get("comment")))


@change_request_bp.route("/change-requests/<crid>/reject", methods=["POST"])
def reject(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    comment = (json_body().get("comment") or "").strip()
    if not comment:
        return api_error(E.VALIDATION_REQUIRED, "comment is required to reject a Change Request")
    return jsonify(crs.reject_change_request(crid, principal, comment))


@change_request_bp.route("/change-requests/<crid>/implement", methods=["POST"])
def implement(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    close_after = bool(json_body().get("close_after_implement", False))
    return jsonify(crs.implement_change_request(crid, principal, close_after_implement=close_after))


@change_request_bp.route("/change-requests/<crid>/close", methods=["POST"])
def close(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.close_change_request(crid, principal))


# ═════════════════════════════════════════════════════════════════════════════
# COMMENTS / ATTACHMENTS
# ═════════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/change-requests/<crid>/comments", methods=["POST"])
def add_comment(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.add_change_request_comment(crid, principal, json_body().get("comment"))), 201


@change_request_bp.route("/change-requests/<crid>/attachments", methods=["POST"])
def add_attachment(crid):
    principal = _identified_principal()
    if principal is None:
        return api_error(E.FORBIDDEN, "An identified user is required")
    return jsonify(crs.add_change_request_attachment(crid, principal, json_body())), 201


# ═════════════════════════════════════════════════════════════════════════════
# PROJECT VIEWS
# ═════════════════════════════════════════════════════════════════════════════

@change_request_bp.route("/projects/<pid>/change-log", methods=["GET"])
def project_change_log(pid):
    return jsonify(crs.get_project_change_log(pid))


@change_request_bp.route("/projects/<pid>/change-indicator", methods=["GET"])
def project_change_indicator(pid):
    return jsonify(crs.get_project_change_indicator(pid))
