"""
Unit-of-work helper for service functions.

Each public workflow operation is one transaction: every row it touches is
committed together, or nothing is. Services wrap their body in ``atomic()``
instead of repeating commit/rollback blocks.

Usage:
    with atomic():
        node = WorkflowNode(...)
        db.session.add(node)
"""

import logging
from contextlib import contextmanager

from signposting.models import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic():
    """Commit on clean exit; roll back and re-raise on any exception."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.debug("atomic: transaction rolled back", exc_info=True)
        raise
