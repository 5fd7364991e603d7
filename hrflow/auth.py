"""
Viewer resolution and coarse role guards.

The JWT middleware stores the token subject on ``g.viewer_id``; services
receive the resolved ``User`` explicitly so they can run outside a request
(scheduled tasks, CLI commands, tests).

Usage:
    from hrflow.auth import get_viewer, ensure_admin

    viewer = get_viewer()
    ensure_admin(viewer)
"""

import logging

from flask import g, has_request_context

from hrflow.core.constants import SystemRole, has_minimum_role, is_admin
from hrflow.core.exceptions import UnauthorizedError
from hrflow.models import db
from hrflow.models.user import User

logger = logging.getLogger(__name__)


def get_viewer() -> User | None:
    """Return the authenticated, non-deleted user for this request, or None."""
    if not has_request_context():
        return None
    viewer_id = getattr(g, "viewer_id", None)
    if viewer_id is None:
        return None
    try:
        user = db.session.get(User, int(viewer_id))
    except (TypeError, ValueError):
        return None
    if user is None or user.is_deleted:
        return None
    return user


def require_viewer(viewer: User | None) -> User:
    """Raise if no identity was presented or the account is blocked."""
    if viewer is None:
        raise UnauthorizedError("Not authenticated", authenticated=False)
    if viewer.hr_status == "blocked":
        raise UnauthorizedError("Account is blocked")
    return viewer


def require_role(viewer: User | None, minimum: str, action: str | None = None) -> User:
    """Raise unless the viewer holds at least ``minimum``; names the missing privilege."""
    viewer = require_viewer(viewer)
    if not has_minimum_role(viewer.system_role, minimum):
        reason = f"Requires role '{minimum}' or higher"
        if action:
            reason += f" to {action}"
        logger.info("Denied %s for user %s (role=%s)", action or minimum, viewer.id, viewer.system_role)
        raise UnauthorizedError(reason)
    return viewer


def ensure_admin(viewer: User | None, action: str | None = None) -> User:
    viewer = require_viewer(viewer)
    if not is_admin(viewer.system_role):
        raise UnauthorizedError(f"Admin access required{' to ' + action if action else ''}")
    return viewer


def ensure_reviewer(viewer: User | None, action: str | None = None) -> User:
    """Manager level or above."""
    return require_role(viewer, SystemRole.MANAGER.value, action)
