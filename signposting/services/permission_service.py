"""
Permission Service — who may author or run templates in which scope.

Scope rules (deny-by-default):
  - author global scope:   global superusers only
  - author tenant scope:   global superusers, or an active admin of that tenant
  - access a scope:        any active user for global; members of the tenant
                           (or superusers) for a tenant scope

A missing caller or an inactive user never passes any check.
"""

import logging
from dataclasses import dataclass

from signposting.core.exceptions import ForbiddenError
from signposting.models import db
from signposting.models.auth import User
from signposting.models.scope import GlobalScope, TemplateScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Authenticated identity as seen by the workflow services."""

    user_id: int
    tenant_id: int | None = None
    role: str = "staff"
    is_global_superuser: bool = False
    is_active: bool = True

    @classmethod
    def from_user(cls, user: User) -> "Caller":
        return cls(
            user_id=user.id,
            tenant_id=user.tenant_id,
            role=user.role,
            is_global_superuser=bool(user.is_superuser),
            is_active=user.is_active,
        )

    def is_tenant_admin(self, tenant_id: int) -> bool:
        return self.is_active and self.role == "admin" and self.tenant_id == tenant_id

    def is_tenant_member(self, tenant_id: int) -> bool:
        return self.is_active and self.tenant_id == tenant_id


def load_caller(user_id) -> Caller | None:
    """Resolve a user id to a Caller. Unknown or malformed ids yield None."""
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None:
        return None
    return Caller.from_user(user)


def can_author(caller: Caller | None, scope: TemplateScope) -> bool:
    if caller is None or not caller.is_active:
        return False
    if caller.is_global_superuser:
        return True
    if isinstance(scope, GlobalScope):
        return False
    return caller.is_tenant_admin(scope.tenant_id)


def can_access(caller: Caller | None, scope: TemplateScope) -> bool:
    if caller is None or not caller.is_active:
        return False
    if caller.is_global_superuser or isinstance(scope, GlobalScope):
        return True
    return caller.is_tenant_member(scope.tenant_id)


def require_scope_admin(caller: Caller | None, scope: TemplateScope) -> None:
    """Raise ForbiddenError unless ``caller`` may author templates in ``scope``."""
    if not can_author(caller, scope):
        _deny("Authoring denied", caller, scope)
        raise ForbiddenError(
            f"Not allowed to edit templates in scope '{scope.label}'",
            user_id=getattr(caller, "user_id", None),
        )


def require_scope_access(caller: Caller | None, scope: TemplateScope) -> None:
    """Raise ForbiddenError unless ``caller`` may read or run ``scope``."""
    if not can_access(caller, scope):
        _deny("Scope access denied", caller, scope)
        raise ForbiddenError(
            f"Not allowed to access scope '{scope.label}'",
            user_id=getattr(caller, "user_id", None),
        )


def _deny(message: str, caller: Caller | None, scope: TemplateScope) -> None:
    logger.warning(
        message,
        extra={"user_id": getattr(caller, "user_id", None), "scope": scope.label},
    )
