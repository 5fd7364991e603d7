"""
Per-user, per-action quotas for expensive domain mutations.

Request-level throttling is Flask-Limiter's job (see
``hrflow.middleware.rate_limiter``); this module bounds how many processes
or events one user can create in a window, independent of client IP.

Quotas come from ``RATE_LIMITS`` in app config:
    {"process.create": (10, 3600), ..., "default": (100, 3600)}

Usage:
    require_rate_limit(user.id, "process.create")   # raises RateLimitedError
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import select

from hrflow.core.exceptions import RateLimitedError
from hrflow.models import db
from hrflow.models.scheduling import RateLimitRecord

logger = logging.getLogger(__name__)

_FALLBACK_LIMIT = (100, 3600)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime


def _limit_for(action: str) -> tuple[int, int]:
    limits = current_app.config.get("RATE_LIMITS") or {}
    return tuple(limits.get(action) or limits.get("default") or _FALLBACK_LIMIT)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def check_rate_limit(user_id: int, action: str) -> RateLimitResult:
    """Count one attempt of ``action`` for ``user_id`` and report whether it is allowed."""
    max_actions, window_seconds = _limit_for(action)
    window = timedelta(seconds=window_seconds)
    now = datetime.now(timezone.utc)

    record = db.session.execute(
        select(RateLimitRecord).where(
            RateLimitRecord.user_id == user_id,
            RateLimitRecord.action == action,
        )
    ).scalars().first()

    if record is None:
        db.session.add(RateLimitRecord(user_id=user_id, action=action, count=1, window_start=now))
        db.session.flush()
        return RateLimitResult(True, max_actions - 1, now + window)

    window_start = _aware(record.window_start)
    if now - window_start >= window:
        record.count = 1
        record.window_start = now
        db.session.flush()
        return RateLimitResult(True, max_actions - 1, now + window)

    if record.count >= max_actions:
        return RateLimitResult(False, 0, window_start + window)

    record.count += 1
    db.session.flush()
    return RateLimitResult(True, max_actions - record.count, window_start + window)


def require_rate_limit(user_id: int, action: str) -> None:
    """Raise RateLimitedError when ``user_id`` has exhausted its quota for ``action``."""
    result = check_rate_limit(user_id, action)
    if not result.allowed:
        retry_after = int((result.reset_at - datetime.now(timezone.utc)).total_seconds())
        logger.info("Rate limit hit: user=%s action=%s retry_after=%ss", user_id, action, retry_after)
        raise RateLimitedError(action, max(retry_after, 1))
