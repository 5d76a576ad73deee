"""
Governance board reconciliation tests.

Covers ``app/services/governance_board.py``:
    - card seeding / removal against the submission store
    - gating task completion driving PGO/FGO → SPO and FR → FR_APPROVED
    - sub-phase change regenerating tasks
    - task, comment and characteristics operations
"""

from datetime import date, timedelta

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.services import governance_board as gb
from app.services.notification import NotificationService
from app.services.submission_service import get_submission
from app.storage import get_repositories


@pytest.fixture()
def in_review(draft_submission, move_to):
    submission = move_to(draft_submission["id"], "AT_PGO_FGO_REVIEW")
    gb.list_board_cards()
    return submission


def _cards_by_lane(project_id):
    return {c["lane"]: c for c in gb.list_board_cards() if c["project_id"] == project_id}


def _complete_gating(project_id, lanes=gb.LANES):
    for lane in lanes:
        card_id = f"{project_id}-{lane.replace(' ', '-')}"
        gb.update_task_status(card_id, f"{project_id}-task-1", "Done")


# ═════════════════════════════════════════════════════════════════════════════
# Board reconciliation
# ═════════════════════════════════════════════════════════════════════════════


class TestBoardSync:
    def test_cards_seeded_per_lane(self, in_review):
        cards = _cards_by_lane(in_review["id"])
        assert set(cards) == {"Finance", "Project Governance"}

        finance = cards["Finance"]
        assert finance["id"] == f"{in_review['id']}-Finance"
        assert finance["characteristics_updated"] is True
        assert cards["Project Governance"]["characteristics_updated"] is False
        assert finance["workflow_stage"] == "PROPOSAL"
        assert (finance["stage"], finance["status"]) == ("PROPOSAL", "PGO_FGO_REVIEW")

        task = finance["tasks"][0]
        assert task["id"] == f"{in_review['id']}-task-1"
        assert task["title"] == gb.PROPOSAL_GATING_TASK_TITLE
        assert task["task_type"] == gb.TASK_TYPE_GATING
        assert task["status"] == "To Do"
        assert task["assignee_name"] == "Unassigned"
        assert task["due_date"] == (date.today() + timedelta(days=5)).isoformat()

    def test_draft_submissions_have_no_cards(self, draft_submission):
        assert gb.list_board_cards() == []

    def test_cards_dropped_when_submission_leaves_review(self, in_review, move_to):
        move_to(in_review["id"], "AT_SPO_REVIEW")
        assert gb.list_board_cards() == []

    def test_sync_is_idempotent(self, in_review):
        first = gb.list_board_cards()
        second = gb.list_board_cards()
        assert [c["id"] for c in first] == [c["id"] for c in second]
        assert len(second) == 2

    def test_card_mirrors_title_changes(self, in_review):
        from app.services.submission_service import update_submission

        update_submission(in_review["id"], {"title": "Renamed Initiative"})
        assert {c["project_title"] for c in gb.list_board_cards()} == {"Renamed Initiative"}

    def test_sub_phase_change_regenerates_tasks(self, in_review, move_to):
        card_id = f"{in_review['id']}-Finance"
        gb.update_task_status(card_id, f"{in_review['id']}-task-1", "In Progress")
        gb.add_task(card_id, "Check cost centres")

        move_to(in_review["id"], "FR_AT_PGO_FGO_REVIEW")
        finance = _cards_by_lane(in_review["id"])["Finance"]
        assert finance["workflow_stage"] == "FUNDING_REQUEST"
        assert len(finance["tasks"]) == 1
        task = finance["tasks"][0]
        assert task["title"] == gb.FUNDING_GATING_TASK_TITLE
        assert task["status"] == "To Do"
        assert task["due_date"] == (date.today() + timedelta(days=10)).isoformat()

    def test_sponsor_approved_funding_is_auto_reconciled(self, draft_submission, move_to):
        move_to(
            draft_submission["id"], "FR_AT_SPONSOR_APPROVALS",
            approval_stages=[{"stage": "BUSINESS", "status": "APPROVED"}],
        )
        cards = gb.list_board_cards()
        assert get_submission(draft_submission["id"])["workflow"]["lifecycle_status"] == "FR_AT_PGO_FGO_REVIEW"
        assert {c["workflow_stage"] for c in cards} == {"FUNDING_REQUEST"}
        assert len(cards) == 2


# ═════════════════════════════════════════════════════════════════════════════
# Gating
# ═════════════════════════════════════════════════════════════════════════════


class TestGating:
    def test_one_lane_done_does_not_advance(self, in_review):
        _complete_gating(in_review["id"], lanes=("Finance",))
        completion = gb.get_governance_task_completion(in_review["id"], "PROPOSAL")
        assert completion == {"finance_done": True, "governance_done": False, "both_done": False}
        assert get_submission(in_review["id"])["workflow"]["lifecycle_status"] == "AT_PGO_FGO_REVIEW"

    def test_both_lanes_done_moves_to_spo_review(self, in_review):
        _complete_gating(in_review["id"])
        submission = get_submission(in_review["id"])
        assert submission["workflow"]["lifecycle_status"] == "AT_SPO_REVIEW"
        assert submission["workflow"]["pgo_decision"] == "Approved"
        assert submission["workflow"]["finance_decision"] == "Approved"
        assert gb.list_board_cards() == []

    def test_funding_review_done_approves_funding(self, draft_submission, move_to):
        move_to(draft_submission["id"], "FR_AT_PGO_FGO_REVIEW")
        gb.list_board_cards()
        _complete_gating(draft_submission["id"])

        submission = get_submission(draft_submission["id"])
        assert submission["workflow"]["lifecycle_status"] == "FR_APPROVED"
        assert submission["workflow"]["funding_status"] == "Funded"
        tasks = get_repositories().pm_tasks.read_all()
        assert [(t["project_id"], t["task_type"], t["status"]) for t in tasks] == [
            (draft_submission["id"], "ASSIGN_PROJECT_MANAGER", "OPEN"),
        ]
        titles = [n["title"] for n in NotificationService.list_for_recipient("owner@corp.com")]
        assert any("funding request approved" in t for t in titles)

    def test_done_tasks_of_other_sub_phase_do_not_count(self, in_review):
        _complete_gating(in_review["id"], lanes=("Finance",))
        assert gb.get_governance_task_completion(in_review["id"], "FUNDING_REQUEST")["finance_done"] is False

    def test_legacy_gating_task_recognised_by_title(self):
        legacy = {"title": "  Conduct Proposal Placemat Gating Review ", "status": "Done"}
        assert gb.is_gating_task_done(legacy)
        assert not gb.is_gating_task_done({"title": "Something else", "status": "Done"})
        assert not gb.is_gating_task_done({"task_type": "GOVERNANCE_REVIEW", "status": "Blocked"})


# ═════════════════════════════════════════════════════════════════════════════
# Task / comment operations
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskOperations:
    def test_invalid_status(self, in_review):
        with pytest.raises(ValidationError):
            gb.update_task_status(f"{in_review['id']}-Finance", f"{in_review['id']}-task-1", "Finished")

    def test_unknown_card_and_task(self, in_review):
        with pytest.raises(NotFoundError):
            gb.update_task_status("nope-Finance", "nope-task-1", "Done")
        with pytest.raises(NotFoundError):
            gb.update_task_status(f"{in_review['id']}-Finance", "missing-task", "Done")

    def test_add_task(self, in_review):
        card_id = f"{in_review['id']}-Finance"
        card = gb.add_task(card_id, " Validate capex ", due_date="2026-05-01T10:00:00Z",
                           assignee_email="fin@corp.com")
        task = card["tasks"][-1]
        assert task["id"] == f"{card_id}-task-2"
        assert task["title"] == "Validate capex"
        assert task["due_date"] == "2026-05-01"
        assert task["assignee_name"] == "Unassigned"
        assert task["assignee_email"] == "fin@corp.com"
        assert len(_cards_by_lane(in_review["id"])["Finance"]["tasks"]) == 2

    def test_add_task_requires_title(self, in_review):
        with pytest.raises(ValidationError):
            gb.add_task(f"{in_review['id']}-Finance", "   ")

    def test_edit_task(self, in_review):
        card_id = f"{in_review['id']}-Project-Governance"
        card = gb.edit_task(card_id, f"{in_review['id']}-task-1", {
            "assignee_name": "  ", "assignee_email": " gov@corp.com ", "due_date": "not a date",
            "id": "ignored",
        })
        task = card["tasks"][0]
        assert task["id"] == f"{in_review['id']}-task-1"
        assert task["assignee_name"] == "Unassigned"
        assert task["assignee_email"] == "gov@corp.com"
        assert task["due_date"] == (date.today() + timedelta(days=5)).isoformat()

    def test_edit_task_status_reconciles(self, in_review):
        gb.edit_task(f"{in_review['id']}-Finance", f"{in_review['id']}-task-1", {"status": "Done"})
        gb.edit_task(f"{in_review['id']}-Project-Governance", f"{in_review['id']}-task-1", {"status": "Done"})
        assert get_submission(in_review["id"])["workflow"]["lifecycle_status"] == "AT_SPO_REVIEW"

    def test_edit_task_rejects_bad_status(self, in_review):
        with pytest.raises(ValidationError):
            gb.edit_task(f"{in_review['id']}-Finance", f"{in_review['id']}-task-1", {"status": "Nope"})

    def test_remove_task(self, in_review):
        card_id = f"{in_review['id']}-Finance"
        gb.add_task(card_id, "Extra")
        card = gb.remove_task(card_id, f"{card_id}-task-2")
        assert [t["id"] for t in card["tasks"]] == [f"{in_review['id']}-task-1"]
        with pytest.raises(NotFoundError):
            gb.remove_task(card_id, f"{card_id}-task-2")

    def test_add_comment_with_mentions(self, in_review):
        comment = gb.add_comment(f"{in_review['id']}-Finance", "", "Looks fine", mentions=[" @gov ", "", 3])
        assert comment["author"] == "Anonymous"
        assert comment["mentions"] == ["@gov"]
        assert any(n["title"] == f"{in_review['id']} mention" for n in NotificationService.list_for_recipient())

    def test_add_comment_requires_body(self, in_review):
        with pytest.raises(ValidationError):
            gb.add_comment(f"{in_review['id']}-Finance", "Fiona", " ")

    def test_mark_characteristics_updated(self, in_review):
        card = gb.mark_governance_characteristics_updated(in_review["id"])
        assert card["lane"] == "Project Governance"
        assert card["characteristics_updated"] is True
        assert card["tasks"][0]["status"] == "In Progress"
        assert _cards_by_lane(in_review["id"])["Project Governance"]["characteristics_updated"] is True


class TestDueDates:
    def test_normalize_due_date(self):
        assert gb.normalize_due_date("2026-03-04") == "2026-03-04"
        assert gb.normalize_due_date("2026-03-04T23:00:00+00:00") == "2026-03-04"
        assert gb.normalize_due_date(None, "FUNDING_REQUEST") == (date.today() + timedelta(days=10)).isoformat()
        assert gb.normalize_due_date("garbage") == (date.today() + timedelta(days=5)).isoformat()
