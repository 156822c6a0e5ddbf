"""
Scoped query helpers.

Every get-by-id in the workflow services goes through these helpers instead
of ``db.session.get(Model, pk)``. A node id that belongs to another template,
or a template that belongs to another tenant, must look exactly like a
missing row.

Usage:
    # Child rows, scoped by their parent column
    node = get_scoped(WorkflowNode, node_id, template_id=template.id)
    option = get_scoped(WorkflowAnswerOption, option_id, source_node_id=node.id)

    # Templates, scoped by TemplateScope (global rows have tenant_id NULL)
    template = get_in_scope(WorkflowTemplate, template_id, scope)

    # When None is an acceptable outcome
    link = get_scoped_or_none(WorkflowNodeLink, link_id, source_node_id=node.id)

Scope field resolution:
    Each keyword argument maps directly to a column name on the model.
    A keyword naming a column the model lacks raises ValueError at call time.
"""

import logging

from sqlalchemy import select

from signposting.core.exceptions import NotFoundError
from signposting.models import db
from signposting.models.scope import TemplateScope, scope_filter

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: int,
    *,
    tenant_id: int | None = None,
    template_id: int | None = None,
    source_node_id: int | None = None,
    instance_id: int | None = None,
):
    """Fetch a single entity by PK with mandatory parent-column filter.

    Args:
        model: SQLAlchemy model class with an ``id`` PK.
        pk: Primary key value to look up.
        tenant_id / template_id / source_node_id / instance_id: scope columns.

    Returns:
        The model instance if found within the given scope.

    Raises:
        ValueError: No scope given, or a scope column is missing on the model.
        NotFoundError: Entity missing OR in another scope (indistinguishable).
    """
    provided = {
        "tenant_id": tenant_id,
        "template_id": template_id,
        "source_node_id": source_node_id,
        "instance_id": instance_id,
    }
    provided = {k: v for k, v in provided.items() if v is not None}

    if not provided:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter. "
            "Unscoped lookups are forbidden."
        )

    missing = sorted(field for field in provided if not hasattr(model, field))
    if missing:
        raise ValueError(f"{model.__name__} has no scope column(s) {missing}")

    stmt = select(model).where(model.id == pk)
    for field, value in provided.items():
        stmt = stmt.where(getattr(model, field) == value)

    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        logger.debug("get_scoped: %s id=%s not found in scope %s", model.__name__, pk, provided)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return result


def get_scoped_or_none(model, pk: int, **scope_kwargs):
    """Same as get_scoped but returns None instead of raising NotFoundError."""
    try:
        return get_scoped(model, pk, **scope_kwargs)
    except NotFoundError:
        return None


def get_in_scope(model, pk: int, scope: TemplateScope, *, options=()):
    """Fetch a tenant-or-global row by PK, restricted to exactly ``scope``.

    A global row is not visible through a tenant scope here; callers that
    need the "own plus global" view filter with ``visible_from_tenant``.

    Raises:
        NotFoundError: Missing row or row in a different scope.
    """
    stmt = select(model).where(model.id == pk, scope_filter(model, scope))
    if options:
        stmt = stmt.options(*options)
    result = db.session.execute(stmt).scalar_one_or_none()
    if result is None:
        raise NotFoundError(
            resource=model.__name__,
            resource_id=pk,
            tenant_id=scope.column_value,
        )
    return result
