"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in envcrm/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from envcrm.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
CRON_LIMIT = "10/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Task / project status routes:  60/minute
        - Cron + scheduler triggers:     10/minute
        - Notification inbox:           200/minute
        - Health check:                  exempt

    Rate limiting is disabled in testing mode or with RATELIMIT_ENABLED=False.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    for bp_name in ("tasks", "project_status"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("cron")
    if bp:
        limiter.limit(CRON_LIMIT)(bp)

    bp = app.blueprints.get("notifications")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — write: %s, cron: %s, read: %s",
        WRITE_LIMIT, CRON_LIMIT, READ_LIMIT,
    )
