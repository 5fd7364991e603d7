"""
JWT Auth Middleware — parses the Bearer token and sets ``g.viewer_id``.

Requests without a valid token proceed with ``g.viewer_id = None``; the
service layer decides whether an anonymous caller is acceptable (most
operations raise ``UnauthorizedError("Not authenticated")``).
"""

import logging

import jwt as pyjwt
from flask import g, request

from hrflow.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.viewer_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired token on %s", path)
            return
        except pyjwt.InvalidTokenError as exc:
            logger.info("Invalid token on %s: %s", path, exc)
            return

        g.viewer_id = payload.get("sub")
        g.jwt_roles = payload.get("roles", [])
