"""
Storage layer: repositories over a pluggable persistence backend.

Usage:
    from app.storage import get_repositories

    repos = get_repositories()
    rows = repos.submissions.read_all()
    ...
    repos.submissions.write_all(rows)

The backend strategy (memory / file / database, cached or not) is chosen once
in ``init_storage`` from the app config; nothing downstream knows which one
is active.
"""

import logging

from flask import current_app

from app.storage.backends import build_backend
from app.storage.repositories import Repositories

logger = logging.getLogger(__name__)

EXTENSION_KEY = "portal_repositories"


def init_storage(app, backend=None) -> Repositories:
    """Build the repositories for ``app`` and register them as an extension."""
    repos = Repositories(
        backend=backend or build_backend(app.config),
        change_thresholds=app.config.get("CHANGE_THRESHOLDS", {}),
        audit_max_entries=app.config.get("GOVERNANCE_AUDIT_MAX_ENTRIES", 5000),
    )
    app.extensions[EXTENSION_KEY] = repos
    return repos


def get_repositories() -> Repositories:
    """Return the repositories bound to the current app."""
    return current_app.extensions[EXTENSION_KEY]
