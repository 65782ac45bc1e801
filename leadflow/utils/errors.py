"""Standardised API error responses.

Usage
-----
    from leadflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Pipeline not found")
    return api_error(E.VALIDATION_REQUIRED, "lead_id is required")
    return api_error(E.CRITERIA_NOT_MET, "Advance blocked", details=result.to_dict())
"""

from __future__ import annotations

from flask import jsonify

from leadflow.core.exceptions import (
    ConcurrencyTimeout,
    ConfigurationError,
    InvalidTarget,
    NotFoundError,
    StateConflict,
    ValidationError,
)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    CONFIGURATION = "ERR_CONFIGURATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    INVALID_TARGET = "ERR_INVALID_TARGET"
    CRITERIA_NOT_MET = "ERR_CRITERIA_NOT_MET"

    # Retryable – HTTP 503
    CONCURRENCY_TIMEOUT = "ERR_CONCURRENCY_TIMEOUT"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.CONFIGURATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.INVALID_TARGET: 409,
    E.CRITERIA_NOT_MET: 409,
    E.CONCURRENCY_TIMEOUT: 503,
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
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (blockers, conflicting entry id, etc.).

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


# Exceptions the service layer raises on purpose; anything else is a 500
SERVICE_ERRORS = (NotFoundError, ValidationError, StateConflict, InvalidTarget, ConcurrencyTimeout)


def error_from_exception(exc: Exception):
    """Map a service-layer exception to ``api_error``; unknown types re-raise."""
    if isinstance(exc, NotFoundError):
        return api_error(E.NOT_FOUND, str(exc))
    if isinstance(exc, ConfigurationError):
        return api_error(E.CONFIGURATION, str(exc), details=exc.details)
    if isinstance(exc, ValidationError):
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)
    if isinstance(exc, StateConflict):
        details = {"reason": exc.code}
        entry_id = getattr(exc, "entry_id", None)
        if entry_id is not None:
            details["entry_id"] = entry_id
        return api_error(E.CONFLICT_STATE, str(exc), details=details)
    if isinstance(exc, InvalidTarget):
        return api_error(
            E.INVALID_TARGET, str(exc),
            details={"reason": exc.code, "target_stage_id": exc.target_stage_id},
        )
    if isinstance(exc, ConcurrencyTimeout):
        details = {"retryable": True}
        if exc.stage_id is not None:
            details["stage_id"] = exc.stage_id
        return api_error(E.CONCURRENCY_TIMEOUT, str(exc), details=details)
    raise exc
