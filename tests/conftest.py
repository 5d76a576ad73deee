"""
Shared pytest fixtures for the Capital Project Portal test suite.

Provides:
    - app: Flask application (session-scoped, memory data store)
    - session: Per-test store reset + DB table recreate (autouse)
    - client: Flask test client (function-scoped)
    - admin / owner / sponsor / finance_sponsor / pm_admin / outsider: principals
    - draft_submission: PROPOSAL/DRAFT submission with a business sponsor
    - make_submission / move_to: factories for drafts and direct lifecycle placement
    - live_submission: LIVE/ACTIVE submission eligible for change requests
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services.identity import Principal
from app.services.submission_service import create_draft_submission, update_submission
from app.storage import get_repositories


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, start from an empty store and fresh tables."""
    with app.app_context():
        get_repositories().reset()
        _db.create_all()
        yield
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Principals ───────────────────────────────────────────────────────────


@pytest.fixture()
def admin():
    return Principal(id="user-admin", email="admin@portal.local", name="Portal Admin", role_type="ADMIN")


@pytest.fixture()
def owner():
    return Principal(
        id="user-owner", email="owner@corp.com", name="Olivia Owner",
        role_type="PROJECT_MANAGEMENT_HUB_BASIC_USER",
    )


@pytest.fixture()
def sponsor():
    return Principal(id="user-sponsor", email="sponsor@corp.com", name="Sid Sponsor")


@pytest.fixture()
def finance_sponsor():
    return Principal(id="user-fin", email="finance@corp.com", name="Fiona Finance")


@pytest.fixture()
def pm_admin():
    return Principal(
        id="user-pm-admin", email="pm.hub@portal.local", name="Priya PM Hub",
        role_type="PROJECT_MANAGEMENT_HUB_ADMIN",
    )


@pytest.fixture()
def outsider():
    return Principal(id="user-x", email="someone.else@corp.com", name="Someone Else")


# ── Domain fixtures ──────────────────────────────────────────────────────


def submission_payload(**overrides):
    data = {
        "title": "Warehouse Automation",
        "summary": "Automate picking in the central warehouse.",
        "sponsor_contacts": {
            "business_sponsor": {"display_name": "Sid Sponsor", "email": "sponsor@corp.com"},
        },
        "financials": {"capex": 100000, "opex": 50000, "one_time_costs": 50000, "run_rate_savings": 20000},
        "benefits": {"cost_save_est": 80000, "revenue_uplift_est": 20000},
        "start_date": "2026-01-01",
        "end_date": "2026-12-31",
    }
    data.update(overrides)
    return data


@pytest.fixture()
def draft_submission(owner):
    return create_draft_submission(submission_payload(), actor=owner)


@pytest.fixture()
def live_submission(owner):
    created = create_draft_submission(
        submission_payload(
            title="Plant Modernisation",
            sponsor_contacts={
                "business_sponsor": {"display_name": "Sid Sponsor", "email": "sponsor@corp.com"},
                "finance_sponsor": {"display_name": "Fiona Finance", "email": "finance@corp.com"},
            },
        ),
        actor=owner,
    )
    return update_submission(
        created["id"],
        {"workflow": {"lifecycle_status": "CLOSED", "entity_type": "FUNDING_REQUEST", "funding_status": "Live"}},
    )


@pytest.fixture()
def make_submission(owner):
    """Factory: create a draft with payload overrides."""

    def _make(actor=None, **overrides):
        return create_draft_submission(submission_payload(**overrides), actor=actor or owner)

    return _make


@pytest.fixture()
def move_to():
    """Factory: place a submission at a lifecycle status directly."""

    def _move(submission_id, lifecycle, **extra):
        entity_type = "PROPOSAL" if lifecycle.startswith(("AT_", "SPO_", "DRAFT")) else "FUNDING_REQUEST"
        return update_submission(
            submission_id, {"workflow": {"lifecycle_status": lifecycle, "entity_type": entity_type}, **extra},
        )

    return _move
