"""
Template change notifications.

Services publish an event after a template change has been committed.
Subscribers register through a decorator, the same way background jobs
register with the scheduler:

    @subscribe("template.approved")
    def notify_reviewers(event):
        ...

Events:
    template.changed   any committed authoring or lifecycle edit
    template.approved  a template reached APPROVED
    template.deleted   a template and its graph were removed

A failing subscriber is logged and skipped; it never undoes the committed
change nor stops the remaining subscribers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from signposting.services import cache_service

logger = logging.getLogger(__name__)

TEMPLATE_CHANGED = "template.changed"
TEMPLATE_APPROVED = "template.approved"
TEMPLATE_DELETED = "template.deleted"


@dataclass(frozen=True)
class TemplateEvent:
    name: str
    template_id: int
    tenant_id: int | None
    version: int | None = None
    actor_user_id: int | None = None
    payload: dict = field(default_factory=dict)


_subscribers: dict[str, list[Callable]] = {}


def subscribe(event_name: str):
    """Decorator to register a subscriber for one event name."""
    def decorator(fn: Callable) -> Callable:
        _subscribers.setdefault(event_name, []).append(fn)
        return fn
    return decorator


def unsubscribe(event_name: str, fn: Callable) -> None:
    handlers = _subscribers.get(event_name, [])
    if fn in handlers:
        handlers.remove(fn)


def get_subscribers(event_name: str) -> list[Callable]:
    return list(_subscribers.get(event_name, []))


def emit(
    event_name: str,
    *,
    template_id: int,
    tenant_id: int | None,
    version: int | None = None,
    actor_user_id: int | None = None,
    **payload,
) -> TemplateEvent:
    """Deliver an event to every subscriber of ``event_name``."""
    event = TemplateEvent(
        name=event_name,
        template_id=template_id,
        tenant_id=tenant_id,
        version=version,
        actor_user_id=actor_user_id,
        payload=payload,
    )
    for handler in get_subscribers(event_name):
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Template event subscriber failed",
                extra={"event": event_name, "template_id": template_id,
                       "subscriber": getattr(handler, "__name__", repr(handler))},
            )
    return event


# ── Built-in subscribers ─────────────────────────────────────────────────

@subscribe(TEMPLATE_CHANGED)
@subscribe(TEMPLATE_DELETED)
def _invalidate_effective_cache(event: TemplateEvent) -> None:
    cache_service.invalidate_effective(event.tenant_id)
