"""
Operations (Governance Board) Blueprint.

Routes:
  GET    /operations/board               – reconciled Finance / Project Governance cards
  PATCH  /operations/task                – set a task's status
  POST   /operations/task                – add a task to a card
  PUT    /operations/task                – edit a task
  DELETE /operations/task                – remove a task
  POST   /operations/comment             – comment on a card (with mentions)
  POST   /operations/characteristics     – mark governance characteristics updated
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import current_principal, json_body, register_domain_error_handlers
from app.services import governance_board as board
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

operations_bp = Blueprint("operations_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(operations_bp)


def _require(data, *keys):
    missing = [k for k in keys if not data.get(k)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"Missing required field(s): {', '.join(missing)}")
    return None


# ═════════════════════════════════════════════════════════════════════════════
# BOARD
# ═════════════════════════════════════════════════════════════════════════════

@operations_bp.route("/operations/board", methods=["GET"])
def get_board():
    lane = request.args.get("lane")
    cards = board.list_board_cards()
    if lane:
        cards = [c for c in cards if c["lane"] == lane]
    return jsonify(cards)


# ═════════════════════════════════════════════════════════════════════════════
# TASKS
# ═════════════════════════════════════════════════════════════════════════════

@operations_bp.route("/operations/task", methods=["PATCH"])
def update_task_status():
    """Body: { card_id, task_id, status }"""
    data = json_body()
    err = _require(data, "card_id", "task_id", "status")
    if err:
        return err
    return jsonify(board.update_task_status(data["card_id"], data["task_id"], data["status"]))


@operations_bp.route("/operations/task", methods=["POST"])
def add_task():
    """Body: { card_id, title, due_date?, assignee_name?, assignee_email? }"""
    data = json_body()
    err = _require(data, "card_id", "title")
    if err:
        return err
    card = board.add_task(
        data["card_id"], data["title"],
        due_date=data.get("due_date"),
        assignee_name=data.get("assignee_name"),
        assignee_email=data.get("assignee_email"),
    )
    return jsonify(card), 201


@operations_bp.route("/operations/task", methods=["PUT"])
def edit_task():
    """Body: { card_id, task_id, title?, due_date?, status?, assignee_name?, assignee_email? }"""
    data = json_body()
    err = _require(data, "card_id", "task_id")
    if err:
        return err
    patch = {k: v for k, v in data.items() if k not in ("card_id", "task_id")}
    return jsonify(board.edit_task(data["card_id"], data["task_id"], patch))


@operations_bp.route("/operations/task", methods=["DELETE"])
def remove_task():
    data = json_body()
    card_id = data.get("card_id") or request.args.get("card_id")
    task_id = data.get("task_id") or request.args.get("task_id")
    if not card_id or not task_id:
        return api_error(E.VALIDATION_REQUIRED, "card_id and task_id are required")
    return jsonify(board.remove_task(card_id, task_id))


# ═════════════════════════════════════════════════════════════════════════════
# COMMENTS / CHARACTERISTICS
# ═════════════════════════════════════════════════════════════════════════════

@operations_bp.route("/operations/comment", methods=["POST"])
def add_comment():
    """Body: { card_id, body, author?, mentions? }"""
    data = json_body()
    err = _require(data, "card_id", "body")
    if err:
        return err
    author = data.get("author") or current_principal().display_name
    comment = board.add_comment(data["card_id"], author, data["body"], data.get("mentions"))
    return jsonify(comment), 201


@operations_bp.route("/operations/characteristics", methods=["POST"])
def mark_characteristics():
    """Body: { project_id }"""
    data = json_body()
    err = _require(data, "project_id")
    if err:
        return err
    return jsonify(board.mark_governance_characteristics_updated(data["project_id"]))
