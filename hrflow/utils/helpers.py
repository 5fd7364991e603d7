"""Shared utility functions.

parse_date:         lenient date parsing (returns None on bad input)
parse_datetime:     ISO datetime / epoch-millis parsing for API payloads
pagination_args:    limit/offset query-string parsing
commit_or_conflict: service-level commit that turns write races into ConflictError
"""
import logging
from datetime import date, datetime, timezone

from flask import request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from hrflow.core.exceptions import ConflictError
from hrflow.models import db

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value):
    """Parse an ISO datetime string or epoch milliseconds. None on bad input."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


def pagination_args(default_limit: int = 50) -> tuple[int, int]:
    """Parse limit/offset pagination query parameters from the current request."""
    try:
        limit = min(int(request.args.get("limit", default_limit)), 500)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_conflict(resource: str = "Record"):
    """Commit the current session; translate write races into ConflictError.

    StaleDataError → a versioned row changed since it was read.
    IntegrityError → a unique constraint was violated.
    Anything else rolls back and propagates.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale write on %s: %s", resource, exc)
        raise ConflictError(resource, "version", message=f"{resource} was modified concurrently; reload and retry") from exc
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        raise ConflictError(resource, "unique", message="Duplicate or constraint violation") from exc
    except Exception:
        db.session.rollback()
        raise
