"""Standardised API error responses.

Usage
-----
    from delivery.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Task not found")
    return api_error(E.CONFLICT_STATE, "Instance is not in progress", details={"current_status": "REJECTED"})

``register_error_handlers(app)`` wires the service exception hierarchy
(``delivery.core.exceptions``) to this envelope once, at app level.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from delivery.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DeliveryError,
    NotFoundError,
    ResolutionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (ERR_ prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Authentication – HTTP 401
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Approver resolution – HTTP 422
    APPROVER_UNRESOLVED = "ERR_APPROVER_UNRESOLVED"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.APPROVER_UNRESOLVED: 422,
    E.INTERNAL: 500,
}

_EXCEPTION_CODES: dict[type, str] = {
    ValidationError: E.VALIDATION_INVALID,
    AuthenticationError: E.UNAUTHENTICATED,
    AuthorizationError: E.FORBIDDEN,
    NotFoundError: E.NOT_FOUND,
    ConflictError: E.CONFLICT_STATE,
    ResolutionError: E.APPROVER_UNRESOLVED,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(app) -> None:
    """Map service exceptions and HTTP errors to the JSON envelope."""

    @app.errorhandler(DeliveryError)
    def _handle_delivery_error(error: DeliveryError):
        from delivery.models import db

        # A failed action never leaves partial state behind.
        db.session.rollback()
        code = _EXCEPTION_CODES.get(type(error), E.VALIDATION_INVALID)
        logger.info(
            "Request refused: %s %s -> %s (%s)",
            request.method, request.path, code, error.message,
        )
        return api_error(code, error.message, status=error.status_code, details=error.details)

    @app.errorhandler(HTTPException)
    def _handle_http(error: HTTPException):
        return jsonify({"error": error.description or error.name, "code": f"HTTP_{error.code}"}), error.code

    @app.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        from delivery.models import db

        db.session.rollback()
        logger.exception("Unexpected error endpoint=%s", request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
