"""
Repositories: one per entity type, over a pluggable StorageBackend.

Each repository reads and writes its whole collection (read-modify-write,
last-write-wins).  ``read_all`` always returns a fresh copy; mutate it and
hand it back to ``write_all``.  A missing collection yields the repository's
default seed; a failed read propagates as PersistenceError.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from app.storage.backends import StorageBackend

logger = logging.getLogger(__name__)


class JsonCollectionRepository:
    """Base repository: a list of dict rows stored under one key."""

    key = ""

    def __init__(self, backend: StorageBackend) -> None:
        self.backend = backend

    def default(self) -> Any:
        return []

    def normalize(self, payload: Any) -> Any:
        return payload if isinstance(payload, list) else []

    def read_all(self) -> Any:
        payload = self.backend.read(self.key)
        if payload is None:
            return self.default()
        return self.normalize(payload)

    def write_all(self, rows: Any) -> bool:
        persisted = self.backend.write(self.key, rows)
        if not persisted:
            logger.warning("Write for %s was not persisted", self.key, extra={"store_key": self.key})
        return persisted


class SubmissionRepository(JsonCollectionRepository):
    key = "submissions"


class ApprovalRequestRepository(JsonCollectionRepository):
    key = "approval-requests"


class WorkCardRepository(JsonCollectionRepository):
    key = "operations-board"


class ProjectManagementTaskRepository(JsonCollectionRepository):
    key = "project-management-tasks"


class NotificationRepository(JsonCollectionRepository):
    key = "notifications"


class GovernanceAuditRepository(JsonCollectionRepository):
    """Append-only governance audit log, capped at ``max_entries`` (newest kept)."""

    key = "governance-audit-log"

    def __init__(self, backend: StorageBackend, max_entries: int = 5000) -> None:
        super().__init__(backend)
        self.max_entries = max_entries

    def append(self, entry: dict) -> dict:
        rows = self.read_all()
        rows.append(entry)
        if len(rows) > self.max_entries:
            rows = rows[-self.max_entries:]
        self.write_all(rows)
        return entry


# ── Users ────────────────────────────────────────────────────────────────────


def _seed_user(user_id, name, email, role_type):
    return {
        "id": user_id,
        "name": name,
        "email": email,
        "role_type": role_type,
        "azure_object_id": f"aad-{user_id}",
        "is_active": True,
    }


DEFAULT_USERS = (
    _seed_user("user-admin", "Portal Admin", "admin@portal.local", "ADMIN"),
    _seed_user("user-finance-gov", "Farah Finance", "finance.governance@portal.local",
               "FINANCE_GOVERNANCE_USER"),
    _seed_user("user-project-gov", "Gareth Governance", "project.governance@portal.local",
               "PROJECT_GOVERNANCE_USER"),
    _seed_user("user-pm-admin", "Priya PM Hub", "pm.hub@portal.local", "PROJECT_MANAGEMENT_HUB_ADMIN"),
    _seed_user("user-pm", "Pat Manager", "pm@portal.local", "PROJECT_MANAGEMENT_HUB_BASIC_USER"),
    _seed_user("user-spo", "Sam Committee", "spo@portal.local", "SPO_COMMITTEE_HUB_USER"),
)


class UserRepository(JsonCollectionRepository):
    """Portal user directory; seeded with one user per role on first read."""

    key = "users"

    def default(self):
        return [dict(user) for user in DEFAULT_USERS]


# ── Change management aggregate ─────────────────────────────────────────────

DEFAULT_CHANGE_TEMPLATES = (
    {
        "id": "template-budget-revision",
        "name": "Budget Revision",
        "description": "Use when approved project costs require financial revision.",
        "change_type": "BUDGET_CHANGE",
        "default_impact_scope": "Financial baseline updates.",
        "default_priority": "High",
    },
    {
        "id": "template-timeline-extension",
        "name": "Timeline Extension",
        "description": "Use when delivery dates shift due to dependency or execution constraints.",
        "change_type": "SCHEDULE_CHANGE",
        "default_impact_scope": "Delivery schedule adjustment.",
        "default_priority": "Medium",
    },
    {
        "id": "template-scope-addition",
        "name": "Scope Addition",
        "description": "Use when approved scope is expanded with additional deliverables.",
        "change_type": "SCOPE_CHANGE",
        "default_impact_scope": "Scope and implementation plan adjustment.",
        "default_priority": "High",
    },
)

CHANGE_COLLECTIONS = (
    "change_requests", "field_deltas", "approvals", "comments", "attachments", "snapshots",
)


class ChangeManagementRepository(JsonCollectionRepository):
    """Change requests and their child rows, stored as one aggregate."""

    key = "change-requests"

    def __init__(self, backend: StorageBackend, default_thresholds: dict | None = None) -> None:
        super().__init__(backend)
        self.default_thresholds = dict(default_thresholds or {})

    def default(self):
        store = {name: [] for name in CHANGE_COLLECTIONS}
        store["templates"] = [dict(t) for t in DEFAULT_CHANGE_TEMPLATES]
        store["thresholds"] = dict(self.default_thresholds)
        return store

    def normalize(self, payload):
        payload = payload if isinstance(payload, dict) else {}
        store = {
            name: payload[name] if isinstance(payload.get(name), list) else []
            for name in CHANGE_COLLECTIONS
        }
        templates = payload.get("templates")
        store["templates"] = templates if isinstance(templates, list) and templates else [
            dict(t) for t in DEFAULT_CHANGE_TEMPLATES
        ]
        store["thresholds"] = {**self.default_thresholds, **(payload.get("thresholds") or {})}
        return store


# ── Container ────────────────────────────────────────────────────────────────


@dataclass
class Repositories:
    """All repositories sharing one backend, built once per app."""

    backend: StorageBackend
    submissions: SubmissionRepository = field(init=False)
    approval_requests: ApprovalRequestRepository = field(init=False)
    work_cards: WorkCardRepository = field(init=False)
    pm_tasks: ProjectManagementTaskRepository = field(init=False)
    change_management: ChangeManagementRepository = field(init=False)
    audit_log: GovernanceAuditRepository = field(init=False)
    users: UserRepository = field(init=False)
    notifications: NotificationRepository = field(init=False)
    change_thresholds: dict = field(default_factory=dict)
    audit_max_entries: int = 5000

    def __post_init__(self):
        self.submissions = SubmissionRepository(self.backend)
        self.approval_requests = ApprovalRequestRepository(self.backend)
        self.work_cards = WorkCardRepository(self.backend)
        self.pm_tasks = ProjectManagementTaskRepository(self.backend)
        self.change_management = ChangeManagementRepository(
            self.backend, copy.deepcopy(self.change_thresholds),
        )
        self.audit_log = GovernanceAuditRepository(self.backend, self.audit_max_entries)
        self.users = UserRepository(self.backend)
        self.notifications = NotificationRepository(self.backend)

    def reset(self) -> None:
        self.backend.reset()
