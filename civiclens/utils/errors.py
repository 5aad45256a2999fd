"""Standardised API error responses.

Usage
-----
    from civiclens.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Issue not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")

``register_error_handlers(app)`` maps the service-layer exception hierarchy
(``civiclens.core.exceptions``) onto these responses once for every blueprint.
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from civiclens.core.exceptions import (
    AuthorizationError,
    InvalidTransition,
    NoBeforeImage,
    NotFoundError,
    ProvenanceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ``ERR_`` prefix for every application error.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Auth – HTTP 401 / 403
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Evidence – HTTP 422
    PROVENANCE = "ERR_PROVENANCE"
    NO_BEFORE_IMAGE = "ERR_NO_BEFORE_IMAGE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.PROVENANCE: 422,
    E.NO_BEFORE_IMAGE: 422,
    E.INTERNAL: 500,
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
    """Translate service exceptions into ``api_error`` responses."""

    @app.errorhandler(ValidationError)
    def _validation(exc: ValidationError):
        code = E.VALIDATION_REQUIRED if "required" in str(exc) else E.VALIDATION_INVALID
        return api_error(code, str(exc), details=exc.details or None)

    @app.errorhandler(AuthorizationError)
    def _authorization(exc: AuthorizationError):
        if not exc.authenticated:
            return api_error(E.UNAUTHORIZED, str(exc))
        return api_error(E.FORBIDDEN, str(exc))

    @app.errorhandler(NotFoundError)
    def _not_found(exc: NotFoundError):
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @app.errorhandler(InvalidTransition)
    def _invalid_transition(exc: InvalidTransition):
        return api_error(
            E.CONFLICT_STATE,
            str(exc),
            details={"current_status": exc.current_status, "target_status": exc.target_status},
        )

    @app.errorhandler(ProvenanceError)
    def _provenance(exc: ProvenanceError):
        return api_error(E.PROVENANCE, exc.reason, details={"reason_code": exc.code})

    @app.errorhandler(NoBeforeImage)
    def _no_before_image(exc: NoBeforeImage):
        return api_error(E.NO_BEFORE_IMAGE, str(exc))

    @app.errorhandler(404)
    def _route_not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.VALIDATION_INVALID, "Request body too large", status=413)

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return {"error": exc.description or exc.name}, exc.code
        logger.error("Unhandled exception on %s %s: %s", request.method, request.path, exc, exc_info=True)
        from civiclens.models import db
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error")
