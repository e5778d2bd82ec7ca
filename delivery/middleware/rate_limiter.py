"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in ``delivery/__init__.py`` with no default limits; this module
applies granular limits per route category.

Usage:
    from delivery.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Blueprint name -> limit
BLUEPRINT_LIMITS = {
    "workflow": "60/minute",        # approval actions, definition admin
    "package": "30/minute",         # stage transitions
    "notification": "200/minute",   # polled by the SPA
    "audit": "120/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - workflow:      60/minute
        - package:       30/minute
        - notification:  200/minute
        - audit:         120/minute
        - health:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — %s",
        ", ".join(f"{name}: {limit}" for name, limit in BLUEPRINT_LIMITS.items()),
    )
