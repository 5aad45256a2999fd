"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in civiclens/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from civiclens.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

# Oracle-backed writes (intake, resolution, duplicate check) are the costly ones
ISSUE_WRITE_LIMIT = "30/minute"
READ_LIMIT = "200/minute"


def rate_limit_key():
    """Authenticated callers are limited per user, anonymous ones per IP."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def issue_limit():
    """Writes hit the oracle; reads do not."""
    if flask_request.method in ("GET", "HEAD", "OPTIONS"):
        return READ_LIMIT
    return ISSUE_WRITE_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per user, else per remote IP):
        - Issue writes:   30/minute  (oracle calls are expensive)
        - Reads:          200/minute
        - Health, media:  exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("issues")
    if bp:
        limiter.limit(issue_limit, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("dashboard")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    for bp_name in ("health", "media"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.exempt(bp)

    app.logger.info("Rate limiter configured — issue writes: %s, reads: %s",
                    ISSUE_WRITE_LIMIT, READ_LIMIT)
