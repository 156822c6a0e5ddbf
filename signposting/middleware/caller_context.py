"""
Caller Context Middleware — resolves the acting user for API requests.

Authentication happens upstream (reverse proxy / SSO). The authenticated
user id arrives in the ``X-User-ID`` header; this middleware turns it into
a ``Caller`` on ``g.caller``. An absent, malformed or unknown id leaves
``g.caller`` as None, and every permission check then fails closed.

Chain order:
  timing.py  →  caller_context.py  →  route handler
"""

import logging

from flask import g, request

from signposting.services.permission_service import load_caller

logger = logging.getLogger(__name__)

CALLER_HEADER = "X-User-ID"

# Paths that never need a caller
CALLER_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_caller_context(app):
    """Register caller context middleware as a before_request hook."""

    @app.before_request
    def _caller_context():
        g.caller = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in CALLER_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        raw = request.headers.get(CALLER_HEADER)
        if not raw:
            return None

        caller = load_caller(raw)
        if caller is None:
            logger.warning(
                "Unknown caller id in %s header",
                CALLER_HEADER,
                extra={"request_id": getattr(g, "request_id", None)},
            )
            return None
        g.caller = caller
        return None

    logger.info("Caller context middleware installed")
