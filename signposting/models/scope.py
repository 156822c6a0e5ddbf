"""
Template scope — Global | Tenant(id).

Workflow templates live either in the shared global default set or in one
tenant's own set. Both kinds share one table; the ``tenant_id`` column is
NULL for global rows. Outside this module nobody inspects that NULL:
callers receive a ``TemplateScope`` value and branch on its type.

Usage:
    scope = parse_scope("global")          # -> GLOBAL
    scope = parse_scope(7)                 # -> TenantScope(7)
    stmt = select(WorkflowTemplate).where(scope_filter(WorkflowTemplate, scope))
"""

from __future__ import annotations

from dataclasses import dataclass

GLOBAL_SCOPE_LABEL = "global"


@dataclass(frozen=True)
class GlobalScope:
    """The shared default set, editable by global superusers only."""

    @property
    def label(self) -> str:
        return GLOBAL_SCOPE_LABEL

    @property
    def column_value(self) -> None:
        return None


@dataclass(frozen=True)
class TenantScope:
    """Templates owned by a single tenant."""

    tenant_id: int

    @property
    def label(self) -> str:
        return str(self.tenant_id)

    @property
    def column_value(self) -> int:
        return self.tenant_id


TemplateScope = GlobalScope | TenantScope

GLOBAL = GlobalScope()


def scope_from_column(tenant_id: int | None) -> TemplateScope:
    """Build the scope value for a stored ``tenant_id`` column."""
    if tenant_id is None:
        return GLOBAL
    return TenantScope(tenant_id)


def parse_scope(value) -> TemplateScope:
    """Convert API input (``"global"``, an int, or a digit string) to a scope.

    Raises:
        ValueError: If the value is neither the global label nor a positive int.
    """
    if isinstance(value, (GlobalScope, TenantScope)):
        return value
    if isinstance(value, str):
        value = value.strip().lower()
        if value == GLOBAL_SCOPE_LABEL:
            return GLOBAL
        if not value.isdigit():
            raise ValueError(f"Invalid scope {value!r}: expected 'global' or a tenant id")
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"Invalid scope {value!r}: expected 'global' or a tenant id")
    return TenantScope(value)


def scope_filter(model, scope: TemplateScope):
    """SQL predicate restricting ``model.tenant_id`` to the given scope."""
    if isinstance(scope, GlobalScope):
        return model.tenant_id.is_(None)
    return model.tenant_id == scope.tenant_id


def visible_from_tenant(model, tenant_id: int):
    """SQL predicate: rows a tenant may run, its own plus the global set."""
    return model.tenant_id.is_(None) | (model.tenant_id == tenant_id)
