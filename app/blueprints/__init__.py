"""
Capital Project Portal
Blueprint helpers shared by every API blueprint.
"""

import logging

from flask import request

from app.core.exceptions import PersistenceError
from app.services.identity import Principal
from app.utils.errors import DOMAIN_ERRORS, error_response

logger = logging.getLogger(__name__)


def current_principal():
    """Build the calling principal from the identity headers set by the gateway."""

    def _header(name):
        return (request.headers.get(name) or "").strip() or None

    return Principal(
        id=_header("X-User-Id"),
        email=_header("X-User-Email"),
        azure_object_id=_header("X-User-Object-Id"),
        name=_header("X-User-Name"),
        role_type=(_header("X-User-Role") or "").upper() or None,
    )


def json_body():
    return request.get_json(silent=True) or {}


def register_domain_error_handlers(bp):
    """Map service-layer exceptions to JSON error responses on ``bp``."""

    def _handle(error):
        if isinstance(error, PersistenceError):
            logger.error("Persistence failure on %s: %s", request.path, error,
                         extra={"persistence_code": error.code})
        return error_response(error)

    for exc_type in DOMAIN_ERRORS:
        bp.register_error_handler(exc_type, _handle)
    return bp
