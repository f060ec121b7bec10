"""
Rate limiting configuration.

The Limiter instance is created in bugtracker/__init__.py with no default
limits; this module applies per-blueprint and per-route limits.

Usage:
    from bugtracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

READ_LIMIT = "300/minute"
WRITE_LIMIT = "60/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow actions:   WORKFLOW_ACTION_RATE_LIMIT (default 120/minute)
        - Task endpoints:     60/minute
        - Workflow reads:     300/minute
        - Health check:       exempt

    Rate limiting is disabled when RATELIMIT_ENABLED is false (tests).
    """
    if not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (RATELIMIT_ENABLED=False)")
        return

    action_view = app.view_functions.get("workflow.submit_action")
    if action_view is not None:
        app.view_functions["workflow.submit_action"] = limiter.limit(
            app.config.get("WORKFLOW_ACTION_RATE_LIMIT", "120/minute")
        )(action_view)

    bp = app.blueprints.get("task")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    health_view = app.view_functions.get("health")
    if health_view is not None:
        limiter.exempt(health_view)

    app.logger.info(
        "Rate limiter configured: actions: %s, tasks: %s, workflow reads: %s",
        app.config.get("WORKFLOW_ACTION_RATE_LIMIT"), WRITE_LIMIT, READ_LIMIT,
    )
