"""
Rate limiting configuration.

Applies per-blueprint request limits using Flask-Limiter. The Limiter
instance is created in hrflow/__init__.py with no default limits; this
module applies granular limits per route category.

Per-user domain quotas (processes created per hour, and so on) are a
separate layer: see ``hrflow.services.rate_limit_service``.

Usage:
    from hrflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Write endpoints:  60/minute  (processes, programs, events)
        - Read endpoints:   200/minute (audit log)
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("process", "program", "event"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit("200/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — write: 60/min, read: 200/min")
