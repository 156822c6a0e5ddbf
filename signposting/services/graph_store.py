"""
Graph Store — scoped reads of templates and their graphs.

Every read takes a ``TemplateScope``. A template id that exists but lives in
another scope raises NotFoundError exactly like a missing id, so tenant A
cannot probe tenant B's templates by guessing ids.

No business validation happens here; that lives in the mutation and
lifecycle services.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import selectinload

from signposting.models import db
from signposting.models.scope import (
    GLOBAL,
    TemplateScope,
    TenantScope,
    scope_filter,
    visible_from_tenant,
)
from signposting.models.workflow import (
    WorkflowAnswerOption,
    WorkflowNode,
    WorkflowTemplate,
)
from signposting.services import cache_service
from signposting.services.helpers.scoped_queries import get_in_scope

logger = logging.getLogger(__name__)

_GRAPH_LOAD = (
    selectinload(WorkflowTemplate.nodes).selectinload(WorkflowNode.answer_options),
    selectinload(WorkflowTemplate.nodes).selectinload(WorkflowNode.links),
    selectinload(WorkflowTemplate.style_defaults),
)


def get_template(template_id: int, scope: TemplateScope, *, with_graph: bool = True) -> WorkflowTemplate:
    """Return the template with its nodes, edges and links eagerly loaded.

    Raises:
        NotFoundError: Template missing or outside ``scope``.
    """
    return get_in_scope(
        WorkflowTemplate, template_id, scope,
        options=_GRAPH_LOAD if with_graph else (),
    )


def get_template_graph(template_id: int, scope: TemplateScope) -> dict:
    """Serialised template including ``nodes``, ``answer_options``, ``links``."""
    return get_template(template_id, scope).to_dict(include_graph=True)


def list_templates(scope: TemplateScope, active_only: bool = False) -> list[WorkflowTemplate]:
    stmt = select(WorkflowTemplate).where(scope_filter(WorkflowTemplate, scope))
    if active_only:
        stmt = stmt.where(WorkflowTemplate.is_active.is_(True))
    stmt = stmt.order_by(WorkflowTemplate.name)
    return list(db.session.execute(stmt).scalars())


def get_entry_node(template: WorkflowTemplate) -> WorkflowNode | None:
    """Entry node of a template (see ``resolve_entry_node``)."""
    return template.entry_node()


def count_nodes(template_id: int) -> int:
    return db.session.execute(
        select(func.count(WorkflowNode.id)).where(WorkflowNode.template_id == template_id)
    ).scalar_one()


def count_answer_options(template_id: int) -> int:
    return db.session.execute(
        select(func.count(WorkflowAnswerOption.id))
        .join(WorkflowNode, WorkflowAnswerOption.source_node_id == WorkflowNode.id)
        .where(WorkflowNode.template_id == template_id)
    ).scalar_one()


def next_sort_order(template_id: int) -> int:
    current = db.session.execute(
        select(func.max(WorkflowNode.sort_order)).where(WorkflowNode.template_id == template_id)
    ).scalar_one()
    return (current or 0) + 1


def find_override(tenant_id: int, global_template_id: int) -> WorkflowTemplate | None:
    """The tenant's clone of a global template, if one exists."""
    stmt = (
        select(WorkflowTemplate)
        .where(
            scope_filter(WorkflowTemplate, TenantScope(tenant_id)),
            WorkflowTemplate.source_template_id == global_template_id,
        )
        .order_by(WorkflowTemplate.override_of_id.is_(None), WorkflowTemplate.id)
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


# ── Effective templates ──────────────────────────────────────────────────


def list_effective_templates(
    tenant_id: int,
    include_drafts: bool = False,
    include_inactive: bool = False,
) -> list[dict]:
    """Templates a tenant actually sees, tagged with where each came from.

    - ``global``:   a global template the tenant has not overridden
    - ``override``: the tenant's clone of a global template, shown in its place
    - ``custom``:   a tenant-only template

    Only APPROVED templates are listed unless ``include_drafts`` is set.
    Results are cached per (tenant, flags) and dropped on template events.
    """
    key = cache_service.effective_key(tenant_id, include_drafts, include_inactive)
    return cache_service.get_cached(
        key,
        ttl=cache_service.EFFECTIVE_TTL,
        loader=lambda: _build_effective(tenant_id, include_drafts, include_inactive),
    )


def _build_effective(tenant_id, include_drafts, include_inactive):
    global_templates = list_templates(GLOBAL, active_only=not include_inactive)
    local_templates = list_templates(TenantScope(tenant_id), active_only=not include_inactive)

    global_ids = {t.id for t in global_templates}
    overrides = {}
    custom = []
    for local in local_templates:
        if local.source_template_id in global_ids:
            overrides.setdefault(local.source_template_id, local)
        else:
            custom.append(local)

    def visible(t):
        return include_drafts or t.approval_status == "APPROVED"

    effective = []
    for g in global_templates:
        override = overrides.get(g.id)
        if override is not None:
            if visible(override):
                effective.append(_tagged(override, "override"))
        elif visible(g):
            effective.append(_tagged(g, "global"))

    for c in custom:
        if visible(c):
            effective.append(_tagged(c, "custom"))

    effective.sort(key=lambda row: row["name"].lower())
    logger.debug(
        "Effective templates built",
        extra={"tenant_id": tenant_id, "count": len(effective)},
    )
    return effective


def _tagged(template, source):
    row = template.to_dict()
    row["source"] = source
    return row


def find_visible_template(template_id, scope: TemplateScope) -> WorkflowTemplate | None:
    """A template that ``scope`` may reference: its own rows, plus global ones.

    Used for link targets and style-default copy sources. Global templates
    only see other global templates.
    """
    if isinstance(scope, TenantScope):
        predicate = visible_from_tenant(WorkflowTemplate, scope.tenant_id)
    else:
        predicate = scope_filter(WorkflowTemplate, GLOBAL)
    stmt = select(WorkflowTemplate).where(WorkflowTemplate.id == template_id, predicate)
    return db.session.execute(stmt).scalar_one_or_none()
