"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in signposting/__init__.py with no default
limits; this module applies granular limits per route category, keyed by
the calling user when one is known and by remote IP otherwise.

Usage:
    from signposting.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WORKFLOW_WRITE_LIMIT = "120/minute"
WORKFLOW_READ_LIMIT = "600/minute"

_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def rate_limit_key():
    """Dynamic rate limit key: user id if available, else remote IP."""
    caller = getattr(g, "caller", None)
    if caller is not None:
        return f"user:{caller.user_id}"
    return flask_request.remote_addr or "unknown"


def _is_read_request():
    return flask_request.method not in _WRITE_METHODS


def _is_write_request():
    return flask_request.method in _WRITE_METHODS


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per user, else per remote IP):
        - Workflow writes:  120/minute (authoring edits, advance, abandon)
        - Workflow reads:   600/minute (diagram loads, choice lists)
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(WORKFLOW_WRITE_LIMIT, key_func=rate_limit_key, exempt_when=_is_read_request)(bp)
        limiter.limit(WORKFLOW_READ_LIMIT, key_func=rate_limit_key, exempt_when=_is_write_request)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: workflow write=%s read=%s",
        WORKFLOW_WRITE_LIMIT, WORKFLOW_READ_LIMIT,
    )
