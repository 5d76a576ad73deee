"""
Approval request store and decision engine tests.

Covers ``app/services/approval_requests.py``:
    - idempotent creation, approver resolution through the user directory
    - cancellation of stale / superseded rows
    - principal-bound decisions (id / e-mail / object id) and same-stage propagation
    - latest-row summary semantics
"""

import pytest

from app.core.exceptions import ApprovalAssignmentError, ValidationError
from app.services import approval_requests as ar
from app.services.identity import Principal
from app.services.submission_service import update_submission


@pytest.fixture()
def at_sponsor_review(draft_submission, move_to):
    return move_to(draft_submission["id"], "AT_SPONSOR_REVIEW")


@pytest.fixture()
def at_funding_review(make_submission, move_to):
    created = make_submission(
        sponsor_contacts={
            "business_sponsor": {"display_name": "Sid Sponsor", "email": "sponsor@corp.com"},
            "business_delegate": {"display_name": "Sid Sponsor", "email": "sponsor@corp.com"},
            "finance_sponsor": {"display_name": "Fiona Finance", "email": "finance@corp.com"},
        },
    )
    return move_to(created["id"], "FR_AT_SPONSOR_APPROVALS")


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_creates_one_pending_row_per_role(self, at_sponsor_review):
        created = ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        assert len(created) == 1
        row = created[0]
        assert row["status"] == "PENDING"
        assert row["entity_type"] == "PROPOSAL"
        assert row["stage_context"] == "PROPOSAL"
        assert row["approver_email"] == "sponsor@corp.com"
        assert row["approver_name"] == "Sid Sponsor"
        assert row["id"].startswith("apr-")

    def test_creation_is_idempotent(self, at_sponsor_review):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        again = ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        assert again == []
        assert len(ar.list_approval_requests_for_entity(at_sponsor_review["id"])) == 1

    def test_unresolvable_role_is_skipped(self, at_sponsor_review):
        assert ar.create_approval_requests_for_submission(at_sponsor_review, ["TECH_SPONSOR"]) == []

    def test_directory_user_fills_user_id(self, make_submission, move_to):
        created = make_submission(sponsor_contacts={
            "business_sponsor": {"display_name": "Gov", "email": "Project.Governance@portal.local"},
        })
        submission = move_to(created["id"], "AT_SPONSOR_REVIEW")
        row = ar.create_approval_requests_for_submission(submission, ["BUSINESS_SPONSOR"])[0]
        assert row["approver_user_id"] == "user-project-gov"

    def test_funding_rows_use_funding_entity(self, at_funding_review):
        required = ["BUSINESS_SPONSOR", "FINANCE_SPONSOR"]
        rows = ar.create_approval_requests_for_submission(at_funding_review, required, created_by="owner@corp.com")
        assert {r["entity_type"] for r in rows} == {"FUNDING_REQUEST"}
        assert {r["stage_context"] for r in rows} == {"FUNDING"}
        assert {r["created_by_user_id"] for r in rows} == {"owner@corp.com"}


# ═════════════════════════════════════════════════════════════════════════════
# Cancellation
# ═════════════════════════════════════════════════════════════════════════════


class TestCancel:
    def test_row_for_replaced_sponsor_is_cancelled(self, at_sponsor_review):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        replaced = update_submission(at_sponsor_review["id"], {"sponsor_contacts": {
            "business_sponsor": {"display_name": "New Sponsor", "email": "new@corp.com"},
        }, "sponsor_email": "new@corp.com"})

        cancelled = ar.cancel_pending_approval_requests_for_submission(replaced, reason="Sponsor changed.")
        assert len(cancelled) == 1
        assert cancelled[0]["status"] == "CANCELLED"
        assert cancelled[0]["comment"] == "Sponsor changed."
        assert cancelled[0]["decided_at"]

    def test_row_for_current_sponsor_survives(self, at_sponsor_review):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        assert ar.cancel_pending_approval_requests_for_submission(at_sponsor_review) == []

    def test_rows_no_longer_required_are_cancelled(self, at_sponsor_review, move_to):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        back_to_draft = move_to(at_sponsor_review["id"], "DRAFT")
        cancelled = ar.cancel_pending_approval_requests_for_submission(back_to_draft)
        assert [r["comment"] for r in cancelled] == [ar.DEFAULT_CANCEL_REASON]

    def test_supersede_cancels_need_more_info_rows(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "NEED_MORE_INFO", comment="why?")
        assert ar.cancel_pending_approval_requests_for_submission(at_sponsor_review) == []

        cancelled = ar.cancel_pending_approval_requests_for_submission(at_sponsor_review, supersede_open=True)
        assert len(cancelled) == 1

    def test_decided_rows_are_never_touched(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "APPROVED")
        assert ar.cancel_pending_approval_requests_for_submission(at_sponsor_review, supersede_open=True) == []
        rows = ar.list_approval_requests_for_entity(at_sponsor_review["id"])
        assert [r["status"] for r in rows] == ["APPROVED"]


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


class TestDecide:
    def test_assigned_principal_approves(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        row = ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "APPROVED", comment=" fine ")
        assert row["status"] == "APPROVED"
        assert row["comment"] == "fine"
        assert ar.get_approval_request(row["id"])["status"] == "APPROVED"

    def test_email_match_is_case_insensitive(self, at_sponsor_review):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        row = ar.decide_approval_request_for_principal(
            at_sponsor_review, Principal(email="SPONSOR@corp.com"), "APPROVED",
        )
        assert row["status"] == "APPROVED"

    def test_object_id_match(self, make_submission, move_to):
        created = make_submission(sponsor_contacts={
            "business_sponsor": {"display_name": "Sid", "email": "sid@corp.com", "azure_object_id": "oid-77"},
        })
        submission = move_to(created["id"], "AT_SPONSOR_REVIEW")
        ar.create_approval_requests_for_submission(submission, ["BUSINESS_SPONSOR"])
        row = ar.decide_approval_request_for_principal(submission, Principal(azure_object_id="oid-77"), "APPROVED")
        assert row["approver_azure_object_id"] == "oid-77"

    def test_wrong_principal_gets_generic_error(self, at_sponsor_review, outsider):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        with pytest.raises(ApprovalAssignmentError) as exc:
            ar.decide_approval_request_for_principal(at_sponsor_review, outsider, "APPROVED")
        assert "sponsor@corp.com" not in str(exc.value)
        assert str(exc.value) == ApprovalAssignmentError.DEFAULT_MESSAGE

    def test_admin_is_not_a_wildcard(self, at_sponsor_review, admin):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        with pytest.raises(ApprovalAssignmentError):
            ar.decide_approval_request_for_principal(at_sponsor_review, admin, "APPROVED")

    def test_unknown_decision(self, at_sponsor_review, sponsor):
        with pytest.raises(ValidationError):
            ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "MAYBE")

    def test_stage_filter_limits_candidates(self, at_funding_review, sponsor):
        ar.create_approval_requests_for_submission(at_funding_review, ["BUSINESS_SPONSOR", "FINANCE_SPONSOR"])
        with pytest.raises(ApprovalAssignmentError):
            ar.decide_approval_request_for_principal(at_funding_review, sponsor, "APPROVED", stage="FINANCE")

    def test_same_stage_rows_of_one_holder_decided_together(self, at_funding_review, sponsor, finance_sponsor):
        ar.create_approval_requests_for_submission(
            at_funding_review, ["BUSINESS_SPONSOR", "BUSINESS_DELEGATE", "FINANCE_SPONSOR"],
        )
        ar.decide_approval_request_for_principal(at_funding_review, sponsor, "APPROVED", stage="BUSINESS")

        by_role = {r["role_context"]: r["status"] for r in ar.list_approval_requests_for_entity(at_funding_review["id"])}
        assert by_role == {"BUSINESS_SPONSOR": "APPROVED", "BUSINESS_DELEGATE": "APPROVED",
                           "FINANCE_SPONSOR": "PENDING"}

    def test_other_stage_rows_of_one_holder_stay_open(self, make_submission, move_to, sponsor):
        created = make_submission(sponsor_contacts={
            "business_sponsor": {"display_name": "Sid", "email": "sponsor@corp.com"},
            "finance_sponsor": {"display_name": "Sid", "email": "sponsor@corp.com"},
        })
        submission = move_to(created["id"], "FR_AT_SPONSOR_APPROVALS")
        ar.create_approval_requests_for_submission(submission, ["BUSINESS_SPONSOR", "FINANCE_SPONSOR"])

        ar.decide_approval_request_for_principal(submission, sponsor, "APPROVED", stage="BUSINESS")
        assert len(ar.list_pending_approval_requests_for_principal(sponsor)) == 1
        ar.decide_approval_request_for_principal(submission, sponsor, "APPROVED", stage="FINANCE")
        assert ar.list_pending_approval_requests_for_principal(sponsor) == []

    def test_need_more_info_row_can_still_be_decided(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "NEED_MORE_INFO", comment="?")
        row = ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "APPROVED")
        assert row["status"] == "APPROVED"
        assert row["comment"] == "?"

    def test_explicit_request_id(self, at_sponsor_review, sponsor):
        row = ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])[0]
        decided = ar.decide_approval_request_for_principal(
            at_sponsor_review, sponsor, "REJECTED", comment="no", request_id=row["id"],
        )
        assert decided["id"] == row["id"]
        with pytest.raises(ApprovalAssignmentError):
            ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "APPROVED", request_id="apr-missing")


# ═════════════════════════════════════════════════════════════════════════════
# Queries & summary
# ═════════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_pending_for_principal(self, at_sponsor_review, sponsor, outsider):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        assert len(ar.list_pending_approval_requests_for_principal(sponsor)) == 1
        assert ar.list_pending_approval_requests_for_principal(outsider) == []

    def test_initiated_by_principal_matches_id_or_email(self, at_sponsor_review, owner):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"], created_by="user-owner")
        assert len(ar.list_approval_requests_initiated_by_principal(owner)) == 1
        assert len(ar.list_approval_requests_initiated_by_principal(Principal(email="OWNER@corp.com"))) == 0
        ar.create_approval_requests_for_submission(
            update_submission(at_sponsor_review["id"], {"sponsor_contacts": {
                "business_sponsor": {"display_name": "B", "email": "b@corp.com"},
            }}),
            ["BUSINESS_SPONSOR"], created_by="owner@corp.com",
        )
        assert len(ar.list_approval_requests_initiated_by_principal(Principal(email="OWNER@corp.com"))) == 1


class TestSummary:
    def test_nothing_required_is_never_all_approved(self, draft_submission):
        summary = ar.get_approval_request_summary_for_submission(draft_submission)
        assert summary["required_contexts"] == []
        assert summary["all_required_approved"] is False

    def test_all_required_approved(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        before = ar.get_approval_request_summary_for_submission(at_sponsor_review)
        assert before["pending_count"] == 1 and not before["all_required_approved"]

        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "APPROVED")
        after = ar.get_approval_request_summary_for_submission(at_sponsor_review)
        assert after["all_required_approved"] is True
        assert after["pending_count"] == 0

    def test_flags_follow_latest_row_only(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "NEED_MORE_INFO", comment="?")
        assert ar.get_approval_request_summary_for_submission(at_sponsor_review)["any_need_more_info"]

        ar.cancel_pending_approval_requests_for_submission(at_sponsor_review, supersede_open=True)
        ar.create_approval_requests_for_submission(
            at_sponsor_review, ["BUSINESS_SPONSOR"], requested_at="9999-01-01T00:00:00+00:00",
        )
        summary = ar.get_approval_request_summary_for_submission(at_sponsor_review)
        assert summary["any_need_more_info"] is False
        assert summary["pending_count"] == 1

    def test_rejection_is_reported(self, at_sponsor_review, sponsor):
        ar.create_approval_requests_for_submission(at_sponsor_review, ["BUSINESS_SPONSOR"])
        ar.decide_approval_request_for_principal(at_sponsor_review, sponsor, "REJECTED", comment="no")
        assert ar.get_approval_request_summary_for_submission(at_sponsor_review)["any_rejected"] is True
