"""
Governance board (Finance / Project Governance hub).

While a submission sits in a governance-review lifecycle status it owns two
cards, one per lane, each seeded with a single gating task.  The board is
reconciled against the submission store on every read:

    1. sponsor-approved funding submissions are advanced into governance review
    2. cards of submissions that left governance review are dropped
    3. missing cards are seeded
    4. a card whose workflow sub-phase changed gets its tasks regenerated

Usage:
    from app.services.governance_board import list_board_cards, update_task_status

    cards = list_board_cards()
    update_task_status("SP-2026-001-Finance", "SP-2026-001-task-1", "Done")
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone

from app.core.exceptions import NotFoundError, ValidationError
from app.services import workflow_state as ws
from app.services.identity import Principal
from app.services.notification import NotificationService
from app.services.submission_service import list_submissions, reconcile_submission_workflow
from app.storage import get_repositories

logger = logging.getLogger(__name__)

LANE_FINANCE = "Finance"
LANE_GOVERNANCE = "Project Governance"
LANES = (LANE_FINANCE, LANE_GOVERNANCE)

TASK_STATUSES = ("To Do", "In Progress", "Blocked", "Done")
TASK_TYPE_GATING = "GOVERNANCE_REVIEW"

PROPOSAL_GATING_TASK_TITLE = "Conduct proposal placemat gating review"
FUNDING_GATING_TASK_TITLE = "Conduct project funding gating review"
PROPOSAL_DEFAULT_DUE_DAYS = 5
FUNDING_DEFAULT_DUE_DAYS = PROPOSAL_DEFAULT_DUE_DAYS * 2

GOVERNANCE_ACTIVE_STATUSES = frozenset({
    "AT_PGO_FGO_REVIEW",
    "FR_AT_SPONSOR_APPROVALS",
    "FR_AT_PGO_FGO_REVIEW",
})

BOARD_ACTOR = Principal(id="system", email="system@portal.local", name="System")

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EDITABLE_TASK_FIELDS = ("title", "due_date", "status", "assignee_name", "assignee_email")


def _repo():
    return get_repositories().work_cards


def _card_id(project_id: str, lane: str) -> str:
    return f"{project_id}-{lane.replace(' ', '-')}"


def _due_days(workflow_stage: str) -> int:
    return FUNDING_DEFAULT_DUE_DAYS if workflow_stage == ws.ENTITY_FUNDING_REQUEST else PROPOSAL_DEFAULT_DUE_DAYS


def _gating_title(workflow_stage: str) -> str:
    return FUNDING_GATING_TASK_TITLE if workflow_stage == ws.ENTITY_FUNDING_REQUEST else PROPOSAL_GATING_TASK_TITLE


def _default_due_date(workflow_stage: str) -> str:
    return (date.today() + timedelta(days=_due_days(workflow_stage))).isoformat()


def normalize_due_date(value, workflow_stage: str = ws.ENTITY_PROPOSAL) -> str:
    """ISO date (YYYY-MM-DD); unparseable input falls back to the phase default."""
    if not value or not isinstance(value, str):
        return _default_due_date(workflow_stage)
    value = value.strip()
    if _DATE_ONLY.match(value):
        return value
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return _default_due_date(workflow_stage)


def make_default_governance_tasks(project_id: str, workflow_stage: str) -> list[dict]:
    return [{
        "id": f"{project_id}-task-1",
        "title": _gating_title(workflow_stage),
        "task_type": TASK_TYPE_GATING,
        "status": "To Do",
        "due_date": _default_due_date(workflow_stage),
        "assignee_name": "Unassigned",
        "assignee_email": None,
        "subtasks": [],
    }]


def seed_card(submission: dict, lane: str, workflow_stage: str) -> dict:
    return {
        "id": _card_id(submission["id"], lane),
        "project_id": submission["id"],
        "project_title": submission["title"],
        "stage": submission["stage"],
        "status": submission["status"],
        "lane": lane,
        "workflow_stage": workflow_stage,
        "characteristics_updated": lane == LANE_FINANCE,
        "tasks": make_default_governance_tasks(submission["id"], workflow_stage),
        "comments": [],
    }


def _workflow_stage_for(submission: dict) -> str:
    if submission["workflow"].get("entity_type") == ws.ENTITY_FUNDING_REQUEST:
        return ws.ENTITY_FUNDING_REQUEST
    return ws.ENTITY_PROPOSAL


def is_governance_queue_eligible(submission: dict) -> bool:
    return ws.resolve_workflow_lifecycle_status(submission) in GOVERNANCE_ACTIVE_STATUSES


def _should_auto_reconcile(submission: dict) -> bool:
    if ws.resolve_workflow_lifecycle_status(submission) != "FR_AT_SPONSOR_APPROVALS":
        return False
    stages = submission.get("approval_stages") or []
    return bool(stages) and all(s.get("status") == "APPROVED" for s in stages)


def _normalize_tasks(card: dict) -> list[dict]:
    workflow_stage = card.get("workflow_stage") or ws.ENTITY_PROPOSAL
    primary_id = f"{card['project_id']}-task-1"
    tasks = []
    for task in card.get("tasks") or []:
        task = {
            **task,
            "due_date": normalize_due_date(task.get("due_date"), workflow_stage),
            "assignee_name": (task.get("assignee_name") or "").strip()
            or (task.get("assignee_email") or "").strip() or "Unassigned",
            "assignee_email": (task.get("assignee_email") or "").strip() or None,
            "subtasks": task.get("subtasks") or [],
        }
        if task["id"] == primary_id:
            task.update(title=_gating_title(workflow_stage), task_type=TASK_TYPE_GATING)
        tasks.append(task)
    return tasks


def _refresh_card(card: dict, submission: dict, lane: str, workflow_stage: str) -> None:
    card["project_title"] = submission["title"]
    card["stage"] = submission["stage"]
    card["status"] = submission["status"]
    needs_reset = bool(card.get("workflow_stage")) and card["workflow_stage"] != workflow_stage
    card["workflow_stage"] = workflow_stage
    if lane == LANE_FINANCE:
        card["characteristics_updated"] = True
    else:
        card["characteristics_updated"] = bool(card.get("characteristics_updated", False))
    card.setdefault("comments", [])
    card["tasks"] = (
        make_default_governance_tasks(submission["id"], workflow_stage) if needs_reset else _normalize_tasks(card)
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Board read / reconciliation
# ═══════════════════════════════════════════════════════════════════════════


def list_board_cards() -> list[dict]:
    """Reconcile the board with the submission store and return every card."""
    submissions = []
    for submission in list_submissions():
        if _should_auto_reconcile(submission):
            submission = reconcile_submission_workflow(
                submission["id"], actor=BOARD_ACTOR,
                reason="Auto-reconciled sponsor-approved funding submission into governance review.",
            )
        submissions.append(submission)

    eligible = [s for s in submissions if is_governance_queue_eligible(s)]
    eligible_ids = {_card_id(s["id"], lane) for s in eligible for lane in LANES}

    repo = _repo()
    merged = [card for card in repo.read_all() if card.get("id") in eligible_ids]
    by_id = {card["id"]: card for card in merged}
    for submission in eligible:
        workflow_stage = _workflow_stage_for(submission)
        for lane in LANES:
            card = by_id.get(_card_id(submission["id"], lane))
            if card is None:
                card = seed_card(submission, lane, workflow_stage)
                merged.append(card)
                by_id[card["id"]] = card
            else:
                _refresh_card(card, submission, lane, workflow_stage)

    repo.write_all(merged)
    return merged


def _find_card(rows: list[dict], card_id: str) -> dict:
    card = next((row for row in rows if row["id"] == card_id), None)
    if card is None:
        raise NotFoundError(resource="Board card", resource_id=card_id)
    return card


def _find_task(card: dict, task_id: str) -> dict:
    task = next((t for t in card["tasks"] if t["id"] == task_id), None)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def _validate_status(status) -> None:
    if status not in TASK_STATUSES:
        raise ValidationError(
            f"Invalid task status: {status}", details={"status": f"must be one of {list(TASK_STATUSES)}"},
        )


def _sync_submission(project_id: str, reason: str) -> None:
    reconcile_submission_workflow(project_id, actor=BOARD_ACTOR, reason=reason)


# ═══════════════════════════════════════════════════════════════════════════
#  Task / comment operations
# ═══════════════════════════════════════════════════════════════════════════


def update_task_status(card_id: str, task_id: str, status: str) -> dict:
    """Set a task's status, then reconcile the owning submission."""
    _validate_status(status)
    rows = list_board_cards()
    card = _find_card(rows, card_id)
    _find_task(card, task_id)["status"] = status
    _repo().write_all(rows)
    logger.info("Board task %s set to %s", task_id, status,
                extra={"card_id": card_id, "submission_id": card["project_id"]})
    _sync_submission(card["project_id"], "Reconciled workflow after governance task status update.")
    return card


def add_task(card_id: str, title: str, due_date: str | None = None,
             assignee_name: str | None = None, assignee_email: str | None = None) -> dict:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title is required", details={"title": "required"})
    rows = list_board_cards()
    card = _find_card(rows, card_id)
    card["tasks"].append({
        "id": f"{card_id}-task-{len(card['tasks']) + 1}",
        "title": title,
        "status": "To Do",
        "due_date": normalize_due_date(due_date, card.get("workflow_stage") or ws.ENTITY_PROPOSAL),
        "assignee_name": (assignee_name or "").strip() or "Unassigned",
        "assignee_email": (assignee_email or "").strip() or None,
        "subtasks": [],
    })
    _repo().write_all(rows)
    return card


def edit_task(card_id: str, task_id: str, patch: dict) -> dict:
    """Patch title / due date / status / assignee, then reconcile."""
    patch = {k: v for k, v in (patch or {}).items() if k in _EDITABLE_TASK_FIELDS}
    if "status" in patch:
        _validate_status(patch["status"])
    rows = list_board_cards()
    card = _find_card(rows, card_id)
    task = _find_task(card, task_id)

    next_name = patch.get("assignee_name", task.get("assignee_name"))
    next_email = patch.get("assignee_email", task.get("assignee_email"))
    task.update(patch)
    task["assignee_name"] = (next_name or "").strip() or "Unassigned"
    task["assignee_email"] = (next_email or "").strip() or None
    if patch.get("due_date"):
        task["due_date"] = normalize_due_date(patch["due_date"], card.get("workflow_stage") or ws.ENTITY_PROPOSAL)

    _repo().write_all(rows)
    _sync_submission(card["project_id"], "Reconciled workflow after governance task edit.")
    return card


def remove_task(card_id: str, task_id: str) -> dict:
    rows = list_board_cards()
    card = _find_card(rows, card_id)
    _find_task(card, task_id)
    card["tasks"] = [t for t in card["tasks"] if t["id"] != task_id]
    _repo().write_all(rows)
    return card


def add_comment(card_id: str, author: str, body: str, mentions: list[str] | None = None) -> dict:
    """Append a comment; mentioned people get an in-app notice."""
    body = (body or "").strip()
    if not body:
        raise ValidationError("Comment body is required", details={"body": "required"})
    mentions = [m.strip() for m in (mentions or []) if isinstance(m, str) and m.strip()]
    rows = list_board_cards()
    card = _find_card(rows, card_id)
    comment = {
        "id": f"{card_id}-comment-{len(card['comments']) + 1}",
        "author": (author or "").strip() or "Anonymous",
        "body": body,
        "mentions": mentions,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    card["comments"].append(comment)
    _repo().write_all(rows)

    if mentions:
        try:
            NotificationService.send_in_app(
                title=f"{card['project_id']} mention",
                body=f"{comment['author']} mentioned {', '.join(mentions)} in {card['lane']}.",
                href="/operations",
            )
        except Exception:
            logger.exception("Mention notification failed", extra={"card_id": card_id})
    return comment


def mark_governance_characteristics_updated(project_id: str) -> dict:
    """Flag the governance card and start its primary task."""
    rows = list_board_cards()
    card = _find_card(rows, _card_id(project_id, LANE_GOVERNANCE))
    card["characteristics_updated"] = True
    for index, task in enumerate(card["tasks"]):
        primary = task["id"] == f"{project_id}-task-1" or index == 0
        if primary and task["status"] == "To Do":
            task["status"] = "In Progress"
    _repo().write_all(rows)
    return card


# ═══════════════════════════════════════════════════════════════════════════
#  Gating queries
# ═══════════════════════════════════════════════════════════════════════════


def is_gating_task_done(task: dict) -> bool:
    if (task.get("task_type") or "").upper() == TASK_TYPE_GATING:
        return task.get("status") == "Done"
    return (task.get("title") or "").strip().lower() == PROPOSAL_GATING_TASK_TITLE.lower() \
        and task.get("status") == "Done"


def get_governance_task_completion(project_id: str, entity_type: str) -> dict:
    """Finance / governance gating completion for the given workflow sub-phase.

    Reads the stored cards without reconciling.
    """
    in_scope = [
        card for card in _repo().read_all()
        if card.get("project_id") == project_id
        and (not card.get("workflow_stage") or card["workflow_stage"] == entity_type)
    ]

    def _lane_done(lane):
        card = next((c for c in in_scope if c.get("lane") == lane), None)
        return bool(card and any(is_gating_task_done(t) for t in card.get("tasks") or []))

    finance_done = _lane_done(LANE_FINANCE)
    governance_done = _lane_done(LANE_GOVERNANCE)
    return {
        "finance_done": finance_done,
        "governance_done": governance_done,
        "both_done": finance_done and governance_done,
    }
