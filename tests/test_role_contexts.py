"""
Role-context resolver and identity matching tests.

Covers ``app/services/role_contexts.py`` and ``app/services/identity.py``.
"""

import pytest

from app.services import role_contexts as rc
from app.services.identity import Principal, approver_identity, identity_matches


def _submission(lifecycle="DRAFT", **fields):
    data = {"id": "SP-TEST-001", "workflow": {"lifecycle_status": lifecycle}}
    data.update(fields)
    return data


# ═════════════════════════════════════════════════════════════════════════════
# Identity matching
# ═════════════════════════════════════════════════════════════════════════════


class TestIdentityMatches:
    def test_email_match_is_case_insensitive(self):
        assert identity_matches({"email": " Sponsor@Corp.com "}, {"email": "sponsor@corp.com"})

    def test_any_shared_value_is_enough(self):
        assert identity_matches({"id": "u1", "email": "a@x.com"}, {"id": "u1", "email": "b@x.com"})
        assert identity_matches({"azure_object_id": "oid-1"}, {"azure_object_id": "oid-1", "email": "z@x.com"})

    def test_empty_values_never_match(self):
        assert not identity_matches({"id": "", "email": None}, {"id": "", "email": None})
        assert not identity_matches({}, {})

    def test_disjoint_identities(self):
        assert not identity_matches({"id": "u1", "email": "a@x.com"}, {"id": "u2", "email": "b@x.com"})

    def test_approver_identity_from_row(self):
        row = {"approver_user_id": "u1", "approver_email": "a@x.com", "approver_azure_object_id": None}
        assert identity_matches(approver_identity(row), {"email": "A@X.COM"})


class TestPrincipal:
    def test_anonymous(self):
        assert Principal().is_anonymous
        assert not Principal(email="x@y.com").is_anonymous

    def test_admin_flag_is_case_insensitive(self):
        assert Principal(email="a@x.com", role_type=" admin ").is_admin
        assert not Principal(email="a@x.com", role_type="PROJECT_MANAGEMENT_HUB_ADMIN").is_admin

    def test_display_name_fallbacks(self):
        assert Principal(name="Ann", email="a@x.com").display_name == "Ann"
        assert Principal(email="A@X.com").display_name == "a@x.com"
        assert Principal().display_name == "Portal User"


# ═════════════════════════════════════════════════════════════════════════════
# Role-context ↔ approval stage
# ═════════════════════════════════════════════════════════════════════════════


class TestStageMapping:
    @pytest.mark.parametrize("role_context,stage", [
        ("BUSINESS_SPONSOR", "BUSINESS"),
        ("BUSINESS_DELEGATE", "BUSINESS"),
        ("TECH_SPONSOR", "TECHNOLOGY"),
        ("FINANCE_SPONSOR", "FINANCE"),
        ("BENEFITS_SPONSOR", "BENEFITS"),
        ("PROJECT_MANAGER", "PROJECT_MANAGER"),
    ])
    def test_role_context_to_stage(self, role_context, stage):
        assert rc.map_role_context_to_approval_stage(role_context) == stage
        assert role_context in rc.role_contexts_for_stage(stage)

    def test_unknown_role_context(self):
        with pytest.raises(ValueError):
            rc.map_role_context_to_approval_stage("JANITOR")

    def test_unknown_stage(self):
        with pytest.raises(ValueError):
            rc.role_contexts_for_stage("LEGAL")


# ═════════════════════════════════════════════════════════════════════════════
# Person resolution
# ═════════════════════════════════════════════════════════════════════════════


class TestResolvePerson:
    def test_structured_contact_wins(self):
        sub = _submission(
            sponsor_contacts={"business_sponsor": {"display_name": "Sid", "email": "Sid@Corp.com",
                                                   "azure_object_id": "oid-sid"}},
            business_sponsor="Legacy Name",
        )
        person = rc.resolve_role_context_person(sub, "BUSINESS_SPONSOR")
        assert person == {"name": "Sid", "email": "sid@corp.com", "azure_object_id": "oid-sid"}

    def test_legacy_flat_field_fallback(self):
        sub = _submission(business_sponsor="Legacy Name", sponsor_email="legacy@corp.com")
        person = rc.resolve_role_context_person(sub, "BUSINESS_SPONSOR")
        assert person["name"] == "Legacy Name"
        assert person["email"] == "legacy@corp.com"

    def test_sponsor_name_fallback(self):
        person = rc.resolve_role_context_person(_submission(sponsor_name="Old Sponsor"), "BUSINESS_SPONSOR")
        assert person["name"] == "Old Sponsor"

    def test_missing_role_resolves_to_none(self):
        assert rc.resolve_role_context_person(_submission(), "FINANCE_SPONSOR") is None

    def test_email_only_contact_uses_email_as_name(self):
        sub = _submission(sponsor_contacts={"technology_sponsor": {"email": "cto@corp.com"}})
        assert rc.resolve_role_context_person(sub, "TECH_SPONSOR")["name"] == "cto@corp.com"

    def test_project_manager_is_owner(self):
        sub = _submission(owner_email="Owner@Corp.com", owner_name="Olivia")
        assert rc.resolve_role_context_person(sub, "PROJECT_MANAGER") == {
            "name": "Olivia", "email": "owner@corp.com", "azure_object_id": None,
        }

    def test_unknown_role_context(self):
        with pytest.raises(ValueError):
            rc.resolve_role_context_person(_submission(), "JANITOR")


# ═════════════════════════════════════════════════════════════════════════════
# Required contexts per position
# ═════════════════════════════════════════════════════════════════════════════


class TestRequiredContexts:
    CONTACTS = {
        "business_sponsor": {"display_name": "Sid", "email": "sid@corp.com"},
        "finance_sponsor": {"display_name": "Fi", "email": "fi@corp.com"},
        "benefits_sponsor": {"display_name": "Ben", "email": "ben@corp.com"},
    }

    def test_proposal_sponsor_review_needs_business_only(self):
        sub = _submission("AT_SPONSOR_REVIEW", sponsor_contacts=self.CONTACTS)
        assert rc.get_required_approval_role_contexts_for_submission(sub) == ["BUSINESS_SPONSOR"]

    def test_funding_review_adds_assigned_roles(self):
        sub = _submission("FR_AT_SPONSOR_APPROVALS", sponsor_contacts=self.CONTACTS)
        assert rc.get_required_approval_role_contexts_for_submission(sub) == [
            "BUSINESS_SPONSOR", "FINANCE_SPONSOR", "BENEFITS_SPONSOR",
        ]

    def test_funding_pgo_review_keeps_the_same_gate(self):
        sub = _submission("FR_AT_PGO_FGO_REVIEW", sponsor_contacts=self.CONTACTS)
        assert "FINANCE_SPONSOR" in rc.get_required_approval_role_contexts_for_submission(sub)

    @pytest.mark.parametrize("lifecycle", ["DRAFT", "AT_PGO_FGO_REVIEW", "AT_SPO_REVIEW", "FR_DRAFT",
                                           "FR_APPROVED", "CLOSED"])
    def test_other_positions_have_no_gate(self, lifecycle):
        sub = _submission(lifecycle, sponsor_contacts=self.CONTACTS)
        assert rc.get_required_approval_role_contexts_for_submission(sub) == []

    def test_stage_context_and_entity_type(self):
        assert rc.resolve_stage_context(_submission("AT_SPONSOR_REVIEW")) == "PROPOSAL"
        assert rc.resolve_stage_context(_submission("FR_DRAFT")) == "FUNDING"
        assert rc.resolve_stage_context(_submission("CLOSED")) == "PM_ASSIGNMENT"
        assert rc.approval_entity_type(_submission("FR_DRAFT")) == "FUNDING_REQUEST"
        assert rc.approval_entity_type(_submission("DRAFT")) == "PROPOSAL"
