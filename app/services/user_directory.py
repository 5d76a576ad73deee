"""Portal user directory lookups (read-only)."""

from __future__ import annotations

from app.services.identity import normalize_email, normalize_id
from app.storage import get_repositories


def list_users() -> list[dict]:
    return get_repositories().users.read_all()


def find_user_by_email(email) -> dict | None:
    target = normalize_email(email)
    if not target:
        return None
    return next((u for u in list_users() if normalize_email(u.get("email")) == target), None)


def find_user_by_id(user_id) -> dict | None:
    target = normalize_id(user_id)
    if not target:
        return None
    return next((u for u in list_users() if u.get("id") == target), None)


def find_users_by_role(*role_types: str, active_only: bool = True) -> list[dict]:
    """Users holding any of ``role_types``, in directory order."""
    wanted = set(role_types)
    return [
        u for u in list_users()
        if u.get("role_type") in wanted and (u.get("is_active", True) or not active_only)
    ]
