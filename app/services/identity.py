"""
Identity-set matching for approvers and principals.

A person can be referred to by internal user id, e-mail address or external
(directory) object id.  Two references denote the same person when ANY of
the three values is present on both sides and equal; e-mail comparison is
case-insensitive.  Every "is this the assigned approver" check in the
service layer goes through ``identity_matches``.

Usage:
    from app.services.identity import Principal, identity_matches

    principal = Principal(email="Sponsor@Corp.com")
    identity_matches(principal.identity(), {"email": "sponsor@corp.com"})  # True
"""

from __future__ import annotations

from dataclasses import dataclass


def normalize_email(value) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def normalize_id(value) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class Principal:
    """The caller acting on the workflow (approver, initiator, admin)."""

    id: str | None = None
    email: str | None = None
    azure_object_id: str | None = None
    name: str | None = None
    role_type: str | None = None

    def identity(self) -> dict:
        return {"id": self.id, "email": self.email, "azure_object_id": self.azure_object_id}

    @property
    def normalized_email(self) -> str:
        return normalize_email(self.email)

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or self.normalized_email or "Portal User"

    @property
    def is_admin(self) -> bool:
        return (self.role_type or "").strip().upper() == "ADMIN"

    @property
    def is_anonymous(self) -> bool:
        return not (normalize_id(self.id) or self.normalized_email or normalize_id(self.azure_object_id))


def identity_matches(left: dict, right: dict) -> bool:
    """True when the two identity sets share any non-empty id, e-mail or object id.

    Both sides are mappings with optional ``id``, ``email`` and
    ``azure_object_id`` keys.
    """
    left_id, right_id = normalize_id(left.get("id")), normalize_id(right.get("id"))
    if left_id and right_id and left_id == right_id:
        return True
    left_email, right_email = normalize_email(left.get("email")), normalize_email(right.get("email"))
    if left_email and right_email and left_email == right_email:
        return True
    left_oid = normalize_id(left.get("azure_object_id"))
    right_oid = normalize_id(right.get("azure_object_id"))
    return bool(left_oid and right_oid and left_oid == right_oid)


def approver_identity(row: dict) -> dict:
    """Identity set of the approver recorded on an approval row."""
    return {
        "id": row.get("approver_user_id"),
        "email": row.get("approver_email"),
        "azure_object_id": row.get("approver_azure_object_id"),
    }
