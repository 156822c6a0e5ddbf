"""
Graph Mutation Service — validated edits to a template and its graph.

Business logic for:
    - Template CRUD:        create / update metadata / delete (with cascades)
    - Nodes:                create (sort order, position, inherited style),
                            update (type, text, style merge, start flag), delete
    - Answer options:       create / update / delete, same-template targets only
    - Node links:           create / delete, active non-self targets only
    - Layout:               all-or-nothing bulk reposition
    - Style defaults:       upsert / reset / copy (overwrite or fill gaps)

Every mutation of an existing template:
    1. checks the caller may author the template's scope (before any lookup)
    2. loads the template inside that scope (NotFoundError otherwise)
    3. refuses structural edits unless the template is DRAFT or CHANGES_REQUIRED
    4. claims the caller's ``expected_version`` with a compare-and-swap bump
    5. applies the change; everything above runs in one transaction

Template change events are emitted after the transaction commits.
"""

import logging
import re
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update

from signposting.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from signposting.models import db
from signposting.models.audit import write_audit
from signposting.models.scope import TemplateScope, scope_filter
from signposting.models.workflow import (
    ACTION_KEYS,
    DEFAULT_LINK_LABEL,
    DEFAULT_NODE_X,
    DEFAULT_NODE_Y_SPACING,
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    EDITABLE_STATUSES,
    MIN_NODE_HEIGHT,
    MIN_NODE_WIDTH,
    NODE_TYPES,
    WORKFLOW_TYPES,
    WorkflowAnswerOption,
    WorkflowInstance,
    WorkflowInstanceStep,
    WorkflowNode,
    WorkflowNodeLink,
    WorkflowNodeStyleDefault,
    WorkflowTemplate,
)
from signposting.services import graph_store, template_events
from signposting.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from signposting.services.helpers.transaction import atomic
from signposting.services.icon_inference import infer_icon_key, is_valid_icon_key
from signposting.services.permission_service import Caller, require_scope_admin

logger = logging.getLogger(__name__)

PLACEHOLDER_TEMPLATE_NAME = "new workflow"
STYLE_COLOUR_FIELDS = ("bg_color", "text_color", "border_color")
_HEX_COLOUR = re.compile(r"^#[0-9a-fA-F]{3,8}$")


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Shared guards
# ═════════════════════════════════════════════════════════════════════════════


def claim_version(template: WorkflowTemplate, expected_version, caller: Caller) -> int:
    """Compare-and-swap the template version; return the new version.

    The UPDATE only matches when the stored version still equals the
    caller's stamp, so of two concurrent writers exactly one wins.

    Raises:
        ValidationError: No version supplied.
        VersionConflictError: The stored version moved on.
    """
    if expected_version is None or isinstance(expected_version, bool):
        raise ValidationError("version is required", details={"version": "required"})
    try:
        expected_version = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("version must be an integer", details={"version": "invalid"})

    result = db.session.execute(
        update(WorkflowTemplate)
        .where(
            WorkflowTemplate.id == template.id,
            WorkflowTemplate.version == expected_version,
        )
        .values(
            version=WorkflowTemplate.version + 1,
            last_edited_by_id=caller.user_id,
            last_edited_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        actual = db.session.execute(
            select(WorkflowTemplate.version).where(WorkflowTemplate.id == template.id)
        ).scalar_one_or_none()
        raise VersionConflictError(
            "WorkflowTemplate", template.id, expected=expected_version, actual=actual,
        )
    db.session.expire(template, ["version", "last_edited_by_id", "last_edited_at", "updated_at"])
    return expected_version + 1


def load_for_edit(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    expected_version,
    *,
    structural: bool = True,
) -> WorkflowTemplate:
    """Authorize, load, check editability and claim the version."""
    require_scope_admin(caller, scope)
    template = graph_store.get_template(template_id, scope, with_graph=False)
    if structural and template.approval_status not in EDITABLE_STATUSES:
        raise InvalidStateError(
            f"Template is {template.approval_status}; reopen it for editing first",
            current_status=template.approval_status,
        )
    claim_version(template, expected_version, caller)
    return template


def _emit_changed(template_id, tenant_id, version, caller, **payload):
    template_events.emit(
        template_events.TEMPLATE_CHANGED,
        template_id=template_id,
        tenant_id=tenant_id,
        version=version,
        actor_user_id=caller.user_id,
        **payload,
    )


def _clean_text(value, field: str, *, required: bool = True, max_len: int | None = None):
    if value is None:
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "invalid"})
    value = value.strip()
    if required and not value:
        raise ValidationError(f"{field} is required", details={field: "required"})
    if max_len is not None and len(value) > max_len:
        raise ValidationError(f"{field} is too long", details={field: f"max {max_len} characters"})
    return value


def _check_action_key(value):
    if value in (None, ""):
        return None
    if value not in ACTION_KEYS:
        raise ValidationError(
            f"Unknown action key '{value}'",
            details={"action_key": sorted(ACTION_KEYS)},
        )
    return value


def _check_node_type(value):
    if value not in NODE_TYPES:
        raise ValidationError(
            f"Unknown node type '{value}'",
            details={"node_type": sorted(NODE_TYPES)},
        )
    return value


def _check_colour(value, field):
    if value in (None, ""):
        return None
    if not isinstance(value, str) or not _HEX_COLOUR.match(value):
        raise ValidationError(f"{field} must be a hex colour", details={field: "invalid"})
    return value


def _coerce_int(value, field):
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{field} must be a number", details={field: "invalid"})


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


def _check_template_name(name, scope: TemplateScope, exclude_id=None):
    name = _clean_text(name, "name", max_len=200)
    if name.lower() == PLACEHOLDER_TEMPLATE_NAME:
        raise ValidationError("Please choose a name for the workflow", details={"name": "placeholder"})
    stmt = select(WorkflowTemplate.id).where(
        func.lower(WorkflowTemplate.name) == name.lower(),
        scope_filter(WorkflowTemplate, scope),
    )
    if exclude_id is not None:
        stmt = stmt.where(WorkflowTemplate.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("WorkflowTemplate", "name", name)
    return name


def _check_workflow_type(value):
    if value not in WORKFLOW_TYPES:
        raise ValidationError(
            f"Unknown workflow type '{value}'",
            details={"workflow_type": sorted(WORKFLOW_TYPES)},
        )
    return value


def create_template(caller: Caller, scope: TemplateScope, data: dict) -> WorkflowTemplate:
    """Create an empty DRAFT template in ``scope``.

    ``icon_key`` is inferred from name and description when absent.

    Raises:
        ForbiddenError, ValidationError, ConflictError
    """
    require_scope_admin(caller, scope)
    with atomic():
        name = _check_template_name(data.get("name"), scope)
        description = _clean_text(data.get("description"), "description", required=False)
        icon_key = data.get("icon_key") or infer_icon_key(name, description)
        if not is_valid_icon_key(icon_key):
            raise ValidationError(f"Unknown icon key '{icon_key}'", details={"icon_key": "invalid"})

        template = WorkflowTemplate(
            tenant_id=scope.column_value,
            name=name,
            description=description,
            icon_key=icon_key,
            colour_hex=_check_colour(data.get("colour_hex"), "colour_hex"),
            is_active=bool(data.get("is_active", True)),
            workflow_type=_check_workflow_type(data.get("workflow_type", "SUPPORTING")),
            approval_status="DRAFT",
            last_edited_by_id=caller.user_id,
            last_edited_at=_utcnow(),
            version=1,
        )
        db.session.add(template)
        db.session.flush()
        write_audit(
            entity_type="workflow_template", entity_id=template.id,
            action="workflow_template.create",
            tenant_id=template.tenant_id, actor_user_id=caller.user_id,
            diff={"name": {"old": None, "new": name}},
        )

    logger.info(
        "Workflow template created",
        extra={"template_id": template.id, "tenant_id": template.tenant_id, "user_id": caller.user_id},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="create")
    return template


_TEMPLATE_FIELDS = ("name", "description", "icon_key", "colour_hex", "is_active", "workflow_type")


def update_template(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowTemplate:
    """Update template metadata.

    Allowed in every approval status. Editing an APPROVED template sends it
    back to DRAFT and clears the approval stamps.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        changes = {}
        for field in _TEMPLATE_FIELDS:
            if field not in data:
                continue
            value = data[field]
            if field == "name":
                value = _check_template_name(value, scope, exclude_id=template.id)
            elif field == "description":
                value = _clean_text(value, "description", required=False)
            elif field == "icon_key":
                value = value or infer_icon_key(data.get("name", template.name), template.description)
                if not is_valid_icon_key(value):
                    raise ValidationError(f"Unknown icon key '{value}'", details={"icon_key": "invalid"})
            elif field == "colour_hex":
                value = _check_colour(value, "colour_hex")
            elif field == "is_active":
                value = bool(value)
            elif field == "workflow_type":
                value = _check_workflow_type(value)
            old = getattr(template, field)
            if old != value:
                changes[field] = {"old": old, "new": value}
                setattr(template, field, value)

        if changes and template.approval_status == "APPROVED":
            changes["approval_status"] = {"old": "APPROVED", "new": "DRAFT"}
            template.approval_status = "DRAFT"
            template.approved_by_id = None
            template.approved_at = None

        write_audit(
            entity_type="workflow_template", entity_id=template.id,
            action="workflow_template.update",
            tenant_id=template.tenant_id, actor_user_id=caller.user_id, diff=changes,
        )

    logger.info(
        "Workflow template updated",
        extra={"template_id": template.id, "fields": sorted(changes)},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="update")
    return template


def delete_template(caller: Caller, scope: TemplateScope, template_id: int, *, expected_version) -> None:
    """Delete a template with its graph, instances and the links that target it.

    Clones keep existing; their ``source_template_id`` is cleared.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        tenant_id = template.tenant_id

        db.session.execute(
            delete(WorkflowNodeLink).where(WorkflowNodeLink.target_template_id == template_id)
        )
        instance_ids = select(WorkflowInstance.id).where(
            (WorkflowInstance.template_id == template_id)
            | (WorkflowInstance.origin_template_id == template_id)
        )
        db.session.execute(
            delete(WorkflowInstanceStep).where(WorkflowInstanceStep.instance_id.in_(instance_ids))
        )
        db.session.execute(
            delete(WorkflowInstance).where(WorkflowInstance.id.in_(instance_ids))
        )
        db.session.execute(
            update(WorkflowTemplate)
            .where(WorkflowTemplate.source_template_id == template_id)
            .values(source_template_id=None)
        )
        db.session.execute(
            update(WorkflowTemplate)
            .where(WorkflowTemplate.override_of_id == template_id)
            .values(override_of_id=None)
        )
        db.session.expire_all()
        db.session.delete(template)
        write_audit(
            entity_type="workflow_template", entity_id=template_id,
            action="workflow_template.delete",
            tenant_id=tenant_id, actor_user_id=caller.user_id,
        )

    logger.info("Workflow template deleted", extra={"template_id": template_id, "tenant_id": tenant_id})
    template_events.emit(
        template_events.TEMPLATE_DELETED,
        template_id=template_id, tenant_id=tenant_id, actor_user_id=caller.user_id,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Nodes
# ═════════════════════════════════════════════════════════════════════════════


def merge_style(current: dict | None, incoming) -> dict | None:
    """Merge a style override into the current one.

    ``None`` clears the override. Keys set to None are dropped. Width and
    height are clamped to the minimum node box; non-numeric sizes are dropped.
    """
    if incoming is None:
        return None
    if not isinstance(incoming, dict):
        raise ValidationError("style must be an object", details={"style": "invalid"})
    merged = {**(current or {}), **incoming}
    for key, minimum in (("width", MIN_NODE_WIDTH), ("height", MIN_NODE_HEIGHT)):
        if key not in merged or merged[key] is None:
            continue
        try:
            merged[key] = max(float(merged[key]), minimum)
        except (TypeError, ValueError):
            del merged[key]
    merged = {k: v for k, v in merged.items() if v is not None}
    return merged or None


def _inherited_style(template_id: int, node_type: str) -> dict | None:
    row = db.session.execute(
        select(WorkflowNodeStyleDefault).where(
            WorkflowNodeStyleDefault.template_id == template_id,
            WorkflowNodeStyleDefault.node_type == node_type,
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    return row.colours() or None


def _clear_other_start_flags(template_id: int, keep_node_id: int) -> None:
    db.session.execute(
        update(WorkflowNode)
        .where(
            WorkflowNode.template_id == template_id,
            WorkflowNode.id != keep_node_id,
            WorkflowNode.is_start.is_(True),
        )
        .values(is_start=False)
    )


def create_node(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowNode:
    """Append a node to the template.

    Sort order is one past the current maximum. Without explicit
    coordinates the node is stacked below the previous one. Without an
    explicit ``style`` the template's style default for the type is copied.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        node_type = _check_node_type(data.get("node_type"))
        spec = NODE_TYPES[node_type]
        sort_order = graph_store.next_sort_order(template.id)

        title = data.get("title")
        title = spec.default_title if title is None else _clean_text(title, "title", max_len=300)

        if "style" in data:
            style = merge_style(None, data["style"])
        else:
            style = _inherited_style(template.id, node_type)

        x = data.get("position_x")
        y = data.get("position_y")
        node = WorkflowNode(
            template_id=template.id,
            node_type=node_type,
            title=title,
            body=data.get("body"),
            sort_order=sort_order,
            is_start=bool(data.get("is_start", False)),
            action_key=_check_action_key(data.get("action_key")),
            position_x=DEFAULT_NODE_X if x is None else _coerce_int(x, "position_x"),
            position_y=(sort_order - 1) * DEFAULT_NODE_Y_SPACING if y is None else _coerce_int(y, "position_y"),
            style=style,
            badges=list(data.get("badges") or []),
        )
        db.session.add(node)
        db.session.flush()
        if node.is_start:
            _clear_other_start_flags(template.id, node.id)

    logger.info(
        "Workflow node created",
        extra={"template_id": template.id, "node_id": node.id, "node_type": node_type},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="node.create")
    return node


def update_node(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowNode:
    """Update a node's type, text, action key, start flag, badges or style.

    A type change keeps the node's existing edges even if the new type
    would not allow authoring them.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        node = get_scoped(WorkflowNode, node_id, template_id=template.id)

        if "node_type" in data:
            node.node_type = _check_node_type(data["node_type"])
        if "title" in data:
            node.title = _clean_text(data["title"], "title", max_len=300)
        if "body" in data:
            node.body = data["body"]
        if "action_key" in data:
            node.action_key = _check_action_key(data["action_key"])
        if "badges" in data:
            node.badges = list(data["badges"] or [])
        if "style" in data:
            node.style = merge_style(node.style, data["style"])
        if "is_start" in data:
            node.is_start = bool(data["is_start"])
            if node.is_start:
                _clear_other_start_flags(template.id, node.id)

    logger.info("Workflow node updated", extra={"template_id": template.id, "node_id": node_id})
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="node.update")
    return node


def delete_node(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_id: int,
    *,
    expected_version,
) -> WorkflowTemplate:
    """Delete a node.

    Its own answer options and links go with it. Answer options elsewhere
    in the template that targeted it are kept with ``target_node_id`` NULL.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        node = get_scoped(WorkflowNode, node_id, template_id=template.id)

        sibling_ids = select(WorkflowNode.id).where(WorkflowNode.template_id == template.id)
        detached = db.session.execute(
            update(WorkflowAnswerOption)
            .where(
                WorkflowAnswerOption.target_node_id == node.id,
                WorkflowAnswerOption.source_node_id.in_(sibling_ids),
            )
            .values(target_node_id=None)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        db.session.delete(node)

    logger.info(
        "Workflow node deleted",
        extra={"template_id": template.id, "node_id": node_id, "detached_edges": detached},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="node.delete")
    return template


# ═════════════════════════════════════════════════════════════════════════════
# Answer options (edges)
# ═════════════════════════════════════════════════════════════════════════════


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")


def _unique_value_key(source_node_id: int, label: str, exclude_id=None) -> str:
    base = slugify(label) or "option"
    stmt = select(WorkflowAnswerOption.value_key).where(
        WorkflowAnswerOption.source_node_id == source_node_id
    )
    if exclude_id is not None:
        stmt = stmt.where(WorkflowAnswerOption.id != exclude_id)
    taken = set(db.session.execute(stmt).scalars())
    value_key, counter = base, 1
    while value_key in taken:
        value_key = f"{base}_{counter}"
        counter += 1
    return value_key


def _check_target(template_id: int, target_node_id):
    if target_node_id is None:
        return None
    target = get_scoped_or_none(WorkflowNode, target_node_id, template_id=template_id)
    if target is None:
        raise ValidationError(
            "Target node must belong to the same template",
            details={"target_node_id": target_node_id},
        )
    return target.id


def create_answer_option(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowAnswerOption:
    """Add an outgoing choice to a node.

    Raises:
        ValidationError: missing label, target outside the template, or the
            source node type cannot carry another authored edge.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        node = get_scoped(WorkflowNode, node_id, template_id=template.id)

        spec = node.type_spec
        existing = db.session.execute(
            select(func.count(WorkflowAnswerOption.id)).where(WorkflowAnswerOption.source_node_id == node.id)
        ).scalar_one()
        if spec is None or (spec.max_authored_edges is not None and existing >= spec.max_authored_edges):
            raise ValidationError(
                f"{node.node_type} nodes cannot have another answer option",
                details={"node_type": node.node_type, "existing": existing},
            )

        label = _clean_text(data.get("label"), "label", max_len=300)
        option = WorkflowAnswerOption(
            source_node_id=node.id,
            label=label,
            value_key=_unique_value_key(node.id, label),
            description=_clean_text(data.get("description"), "description", required=False),
            target_node_id=_check_target(template.id, data.get("target_node_id")),
            action_key=_check_action_key(data.get("action_key")),
            source_handle=data.get("source_handle") or DEFAULT_SOURCE_HANDLE,
            target_handle=data.get("target_handle") or DEFAULT_TARGET_HANDLE,
        )
        db.session.add(option)
        db.session.flush()

    logger.info(
        "Answer option created",
        extra={"template_id": template.id, "node_id": node.id, "option_id": option.id},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="edge.create")
    return option


def _get_option(template_id: int, option_id: int) -> WorkflowAnswerOption:
    stmt = (
        select(WorkflowAnswerOption)
        .join(WorkflowNode, WorkflowAnswerOption.source_node_id == WorkflowNode.id)
        .where(WorkflowAnswerOption.id == option_id, WorkflowNode.template_id == template_id)
    )
    option = db.session.execute(stmt).scalar_one_or_none()
    if option is None:
        raise NotFoundError(resource="WorkflowAnswerOption", resource_id=option_id)
    return option


def update_answer_option(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    option_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowAnswerOption:
    """Update label, target, description, action key or anchor handles.

    A new label re-derives the value key. ``target_node_id: null`` unwires
    the option.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        option = _get_option(template.id, option_id)

        if "label" in data:
            label = _clean_text(data["label"], "label", max_len=300)
            if label != option.label:
                option.label = label
                option.value_key = _unique_value_key(option.source_node_id, label, exclude_id=option.id)
        if "target_node_id" in data:
            option.target_node_id = _check_target(template.id, data["target_node_id"])
        if "description" in data:
            option.description = _clean_text(data["description"], "description", required=False)
        if "action_key" in data:
            option.action_key = _check_action_key(data["action_key"])
        if "source_handle" in data:
            option.source_handle = data["source_handle"] or DEFAULT_SOURCE_HANDLE
        if "target_handle" in data:
            option.target_handle = data["target_handle"] or DEFAULT_TARGET_HANDLE

    logger.info("Answer option updated", extra={"template_id": template.id, "option_id": option_id})
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="edge.update")
    return option


def delete_answer_option(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    option_id: int,
    *,
    expected_version,
) -> WorkflowTemplate:
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        option = _get_option(template.id, option_id)
        db.session.delete(option)

    logger.info("Answer option deleted", extra={"template_id": template.id, "option_id": option_id})
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="edge.delete")
    return template


# ═════════════════════════════════════════════════════════════════════════════
# Node links (cross-template)
# ═════════════════════════════════════════════════════════════════════════════


def create_node_link(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_id: int,
    data: dict,
    *,
    expected_version,
) -> WorkflowNodeLink:
    """Let a node hand execution off to another template.

    The target must be visible from the source scope (same scope or global),
    active, and a different template.

    Raises:
        ValidationError: self-link, missing or inactive target.
        ConflictError: the node already links to that template.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        node = get_scoped(WorkflowNode, node_id, template_id=template.id)

        target_id = data.get("target_template_id")
        if target_id is None:
            raise ValidationError("target_template_id is required", details={"target_template_id": "required"})
        target_id = _coerce_int(target_id, "target_template_id")
        if target_id == template.id:
            raise ValidationError(
                "A node cannot link to its own template",
                details={"target_template_id": "self"},
            )
        target = graph_store.find_visible_template(target_id, scope)
        if target is None:
            raise ValidationError("Target template not found", details={"target_template_id": target_id})
        if not target.is_active:
            raise ValidationError("Target template is inactive", details={"target_template_id": target_id})

        duplicate = db.session.execute(
            select(WorkflowNodeLink.id).where(
                WorkflowNodeLink.source_node_id == node.id,
                WorkflowNodeLink.target_template_id == target_id,
            )
        ).first()
        if duplicate is not None:
            raise ConflictError("WorkflowNodeLink", "target_template_id", str(target_id))

        max_order = db.session.execute(
            select(func.max(WorkflowNodeLink.sort_order)).where(WorkflowNodeLink.source_node_id == node.id)
        ).scalar_one()
        label = data.get("label")
        link = WorkflowNodeLink(
            source_node_id=node.id,
            target_template_id=target_id,
            label=_clean_text(label, "label", max_len=300) if label else DEFAULT_LINK_LABEL,
            sort_order=(max_order if max_order is not None else -1) + 1,
        )
        db.session.add(link)
        db.session.flush()

    logger.info(
        "Node link created",
        extra={"template_id": template.id, "node_id": node.id, "target_template_id": target_id},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="link.create")
    return link


def delete_node_link(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    link_id: int,
    *,
    expected_version,
) -> WorkflowTemplate:
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version)
        link = db.session.execute(
            select(WorkflowNodeLink)
            .join(WorkflowNode, WorkflowNodeLink.source_node_id == WorkflowNode.id)
            .where(WorkflowNodeLink.id == link_id, WorkflowNode.template_id == template.id)
        ).scalar_one_or_none()
        if link is None:
            raise NotFoundError(resource="WorkflowNodeLink", resource_id=link_id)
        db.session.delete(link)

    logger.info("Node link deleted", extra={"template_id": template.id, "link_id": link_id})
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="link.delete")
    return template


# ═════════════════════════════════════════════════════════════════════════════
# Layout
# ═════════════════════════════════════════════════════════════════════════════


def bulk_reposition(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    positions: list,
    *,
    expected_version,
) -> WorkflowTemplate:
    """Move several nodes at once; all positions land or none do.

    Args:
        positions: ``[{"node_id": int, "x": number, "y": number}, ...]``.
            Coordinates are rounded to integers.

    Raises:
        ValidationError: malformed entry, or any node id outside the template.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        if not isinstance(positions, list) or not positions:
            raise ValidationError("positions must be a non-empty list", details={"positions": "invalid"})

        wanted = {}
        for index, entry in enumerate(positions):
            if not isinstance(entry, dict) or "node_id" not in entry:
                raise ValidationError("Malformed position entry", details={"index": index})
            node_id = _coerce_int(entry["node_id"], "node_id")
            wanted[node_id] = {
                "id": node_id,
                "position_x": _coerce_int(entry.get("x"), "x"),
                "position_y": _coerce_int(entry.get("y"), "y"),
            }

        found = set(db.session.execute(
            select(WorkflowNode.id).where(
                WorkflowNode.template_id == template.id,
                WorkflowNode.id.in_(wanted),
            )
        ).scalars())
        missing = sorted(set(wanted) - found)
        if missing:
            raise ValidationError(
                "Some nodes do not belong to this template",
                details={"missing_node_ids": missing},
            )

        db.session.execute(update(WorkflowNode), list(wanted.values()))

    logger.info(
        "Nodes repositioned",
        extra={"template_id": template.id, "count": len(wanted)},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="layout")
    return template


# ═════════════════════════════════════════════════════════════════════════════
# Style defaults
# ═════════════════════════════════════════════════════════════════════════════


def _style_row(template_id: int, node_type: str) -> WorkflowNodeStyleDefault | None:
    return db.session.execute(
        select(WorkflowNodeStyleDefault).where(
            WorkflowNodeStyleDefault.template_id == template_id,
            WorkflowNodeStyleDefault.node_type == node_type,
        )
    ).scalar_one_or_none()


def upsert_style_default(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_type: str,
    data: dict,
    *,
    expected_version,
) -> WorkflowNodeStyleDefault | None:
    """Set colours for one node type. Clearing every colour removes the row."""
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        node_type = _check_node_type(node_type)
        row = _style_row(template.id, node_type)
        if row is None:
            row = WorkflowNodeStyleDefault(template_id=template.id, node_type=node_type)
            db.session.add(row)
        for field in STYLE_COLOUR_FIELDS:
            if field in data:
                setattr(row, field, _check_colour(data[field], field))
        if not row.colours():
            if row.id is None:
                db.session.expunge(row)
            else:
                db.session.delete(row)
            row = None
        db.session.flush()

    logger.info(
        "Style default saved",
        extra={"template_id": template.id, "node_type": node_type},
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="style")
    return row


def reset_style_defaults(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    node_type: str | None = None,
    *,
    expected_version,
) -> WorkflowTemplate:
    """Remove the style default of one node type, or of all types."""
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        stmt = delete(WorkflowNodeStyleDefault).where(WorkflowNodeStyleDefault.template_id == template.id)
        if node_type is not None:
            stmt = stmt.where(WorkflowNodeStyleDefault.node_type == _check_node_type(node_type))
        db.session.execute(stmt)

    logger.info("Style defaults reset", extra={"template_id": template.id, "node_type": node_type})
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="style")
    return template


def copy_style_defaults(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    source_template_id: int,
    *,
    overwrite: bool,
    expected_version,
) -> list[WorkflowNodeStyleDefault]:
    """Copy per-type colours from another template.

    overwrite=True replaces rows the destination already has; otherwise
    only node types missing in the destination are filled in.
    """
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        source = graph_store.find_visible_template(source_template_id, scope)
        if source is None:
            raise ValidationError(
                "Source template not found",
                details={"source_template_id": source_template_id},
            )

        existing = {row.node_type: row for row in template.style_defaults}
        copied = 0
        for src in source.style_defaults:
            row = existing.get(src.node_type)
            if row is not None and not overwrite:
                continue
            if row is None:
                row = WorkflowNodeStyleDefault(template_id=template.id, node_type=src.node_type)
                db.session.add(row)
            row.bg_color = src.bg_color
            row.text_color = src.text_color
            row.border_color = src.border_color
            copied += 1
        db.session.flush()
        db.session.refresh(template, ["style_defaults"])
        result = list(template.style_defaults)

    logger.info(
        "Style defaults copied",
        extra={
            "template_id": template.id,
            "source_template_id": source.id,
            "overwrite": overwrite,
            "copied": copied,
        },
    )
    _emit_changed(template.id, template.tenant_id, template.version, caller, change="style")
    return result
