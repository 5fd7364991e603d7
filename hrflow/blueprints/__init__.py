"""
HR Process Engine
Blueprint registry and shared request helpers.

Every API blueprint calls ``register_error_handlers`` so the engine's
exception taxonomy maps to the same JSON error shape everywhere:

    UnauthorizedError            → 401 (no identity) / 403
    NotFoundError                → 404
    ValidationError              → 422 (with per-field ``details``)
    ConflictError                → 409
    RateLimitedError             → 429 (with ``Retry-After``)
    ConfigurationError           → 500 (logged, message kept generic)
"""

import logging

from flask import request

from hrflow.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationError,
)
from hrflow.models import db
from hrflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def json_body() -> dict:
    """Request JSON as a dict; non-object bodies become an empty dict."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def paginate_query(query, default_limit=50, max_limit=500):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp):
    """Attach taxonomy → HTTP handlers to ``bp``. Each handler rolls back the session."""

    @bp.errorhandler(UnauthorizedError)
    def _handle_unauthorized(error: UnauthorizedError):
        db.session.rollback()
        if not error.authenticated:
            return api_error(E.UNAUTHENTICATED, str(error))
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        code = E.CONFLICT_STATE if error.field == "version" else E.CONFLICT_DUPLICATE
        return api_error(code, str(error))

    @bp.errorhandler(RateLimitedError)
    def _handle_rate_limited(error: RateLimitedError):
        db.session.rollback()
        response, status = api_error(
            E.RATE_LIMITED, str(error),
            details={"retry_after_seconds": error.retry_after_seconds},
        )
        response.headers["Retry-After"] = str(error.retry_after_seconds)
        return response, status

    @bp.errorhandler(ConfigurationError)
    def _handle_configuration(error: ConfigurationError):
        db.session.rollback()
        logger.error("Configuration error on %s: %s", request.endpoint, error,
                     extra={"event_type": "configuration_error"})
        return api_error(E.CONFIGURATION, "Invalid stage configuration")

    return bp
