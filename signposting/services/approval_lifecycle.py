"""
Approval Lifecycle — template status machine, cloning and overrides.

Transitions (see APPROVAL_TRANSITIONS):
    submit_for_review   DRAFT | CHANGES_REQUIRED → PENDING_REVIEW
    approve             PENDING_REVIEW → APPROVED (stamps approver)
    request_changes     PENDING_REVIEW | APPROVED → CHANGES_REQUIRED (stores note)
    reopen_for_editing  APPROVED | CHANGES_REQUIRED → DRAFT (clears approver)

Instances already running keep running whatever the template status
becomes; only ``start`` looks at APPROVED.

Cloning deep-copies a template's graph into a new DRAFT template with
fresh ids. The copy records ``source_template_id`` and is never synced
with its source afterwards.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from signposting.core.exceptions import InvalidStateError, ValidationError
from signposting.models import db
from signposting.models.audit import lifecycle_diff, write_audit
from signposting.models.scope import GLOBAL, TemplateScope, TenantScope, scope_filter
from signposting.models.workflow import (
    WorkflowAnswerOption,
    WorkflowNode,
    WorkflowNodeLink,
    WorkflowNodeStyleDefault,
    WorkflowTemplate,
    validate_approval_transition,
)
from signposting.services import graph_store, template_events
from signposting.services.graph_mutation_service import load_for_edit
from signposting.services.helpers.transaction import atomic
from signposting.services.permission_service import (
    Caller,
    require_scope_access,
    require_scope_admin,
)

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (copy)"


def _transition(
    caller: Caller,
    scope: TemplateScope,
    template_id: int,
    new_status: str,
    *,
    expected_version,
    action: str,
    note: str | None = None,
) -> WorkflowTemplate:
    with atomic():
        template = load_for_edit(caller, scope, template_id, expected_version, structural=False)
        old_status = template.approval_status
        if not validate_approval_transition(old_status, new_status):
            raise InvalidStateError(
                f"Cannot move template from {old_status} to {new_status}",
                current_status=old_status,
            )

        if new_status == "PENDING_REVIEW":
            if graph_store.count_nodes(template.id) == 0:
                raise ValidationError(
                    "Template has no nodes to review",
                    details={"nodes": "empty"},
                )
            if graph_store.get_entry_node(template) is None:
                raise ValidationError("Template has no entry node", details={"entry_node": "missing"})

        template.approval_status = new_status
        if new_status == "APPROVED":
            template.approved_by_id = caller.user_id
            template.approved_at = datetime.now(timezone.utc)
            template.review_note = None
        else:
            template.approved_by_id = None
            template.approved_at = None
        if new_status == "CHANGES_REQUIRED":
            template.review_note = note

        diff = lifecycle_diff("approval_status", old_status, new_status)
        if note:
            diff["review_note"] = note
        write_audit(
            entity_type="workflow_template", entity_id=template.id, action=action,
            tenant_id=template.tenant_id, actor_user_id=caller.user_id, diff=diff,
        )

    logger.info(
        "Workflow template %s -> %s",
        old_status,
        new_status,
        extra={"template_id": template.id, "tenant_id": template.tenant_id, "user_id": caller.user_id},
    )
    template_events.emit(
        template_events.TEMPLATE_CHANGED,
        template_id=template.id, tenant_id=template.tenant_id,
        version=template.version, actor_user_id=caller.user_id,
        change="status", status=new_status,
    )
    if new_status == "APPROVED":
        template_events.emit(
            template_events.TEMPLATE_APPROVED,
            template_id=template.id, tenant_id=template.tenant_id,
            version=template.version, actor_user_id=caller.user_id,
        )
    return template


def submit_for_review(caller, scope, template_id, *, expected_version) -> WorkflowTemplate:
    """Send a template to review. Fails on an empty template."""
    return _transition(
        caller, scope, template_id, "PENDING_REVIEW",
        expected_version=expected_version, action="workflow_template.submit_for_review",
    )


def approve(caller, scope, template_id, *, expected_version) -> WorkflowTemplate:
    """Approve a reviewed template; the caller is recorded as approver."""
    return _transition(
        caller, scope, template_id, "APPROVED",
        expected_version=expected_version, action="workflow_template.approve",
    )


def request_changes(caller, scope, template_id, note, *, expected_version) -> WorkflowTemplate:
    if not isinstance(note, str) or not note.strip():
        raise ValidationError("A note is required when requesting changes", details={"note": "required"})
    return _transition(
        caller, scope, template_id, "CHANGES_REQUIRED",
        expected_version=expected_version, action="workflow_template.request_changes",
        note=note.strip(),
    )


def reopen_for_editing(caller, scope, template_id, *, expected_version) -> WorkflowTemplate:
    return _transition(
        caller, scope, template_id, "DRAFT",
        expected_version=expected_version, action="workflow_template.reopen_for_editing",
    )


# ═════════════════════════════════════════════════════════════════════════════
# Clone / promotion
# ═════════════════════════════════════════════════════════════════════════════


def _free_name(name: str, scope: TemplateScope) -> str:
    """``name`` if unused in ``scope``, else the first free "(copy)" variant."""
    taken = {
        n.lower()
        for n in db.session.execute(
            select(WorkflowTemplate.name).where(scope_filter(WorkflowTemplate, scope))
        ).scalars()
    }
    if name.lower() not in taken:
        return name
    candidate = f"{name}{COPY_SUFFIX}"
    counter = 2
    while candidate.lower() in taken:
        candidate = f"{name} (copy {counter})"
        counter += 1
    return candidate


def _deep_copy(
    source: WorkflowTemplate,
    destination: TemplateScope,
    caller: Caller,
    name: str | None,
    override_of_id: int | None = None,
):
    clone = WorkflowTemplate(
        tenant_id=destination.column_value,
        name=_free_name(name or source.name, destination),
        description=source.description,
        icon_key=source.icon_key,
        colour_hex=source.colour_hex,
        is_active=source.is_active,
        workflow_type=source.workflow_type,
        approval_status="DRAFT",
        source_template_id=source.id,
        override_of_id=override_of_id,
        last_edited_by_id=caller.user_id,
        last_edited_at=datetime.now(timezone.utc),
        version=1,
    )
    db.session.add(clone)
    db.session.flush()

    # Pass 1: nodes, collecting old → new ids
    node_id_map = {}
    for node in source.nodes:
        copy = WorkflowNode(
            template_id=clone.id,
            node_type=node.node_type,
            title=node.title,
            body=node.body,
            sort_order=node.sort_order,
            is_start=node.is_start,
            action_key=node.action_key,
            position_x=node.position_x,
            position_y=node.position_y,
            style=dict(node.style) if node.style else None,
            badges=list(node.badges or []),
        )
        db.session.add(copy)
        db.session.flush()
        node_id_map[node.id] = copy.id

    # Pass 2: edges and links, remapped onto the new node ids
    dropped_links = 0
    for node in source.nodes:
        new_node_id = node_id_map[node.id]
        for option in node.answer_options:
            db.session.add(WorkflowAnswerOption(
                source_node_id=new_node_id,
                label=option.label,
                value_key=option.value_key,
                description=option.description,
                target_node_id=node_id_map.get(option.target_node_id),
                action_key=option.action_key,
                source_handle=option.source_handle,
                target_handle=option.target_handle,
            ))
        for link in node.links:
            if graph_store.find_visible_template(link.target_template_id, destination) is None:
                dropped_links += 1
                continue
            db.session.add(WorkflowNodeLink(
                source_node_id=new_node_id,
                target_template_id=link.target_template_id,
                label=link.label,
                sort_order=link.sort_order,
            ))

    for style in source.style_defaults:
        db.session.add(WorkflowNodeStyleDefault(
            template_id=clone.id,
            node_type=style.node_type,
            bg_color=style.bg_color,
            text_color=style.text_color,
            border_color=style.border_color,
        ))
    db.session.flush()

    write_audit(
        entity_type="workflow_template", entity_id=clone.id, action="workflow_template.clone",
        tenant_id=clone.tenant_id, actor_user_id=caller.user_id,
        diff={
            "source_template_id": source.id,
            "nodes": len(node_id_map),
            "dropped_links": dropped_links,
        },
    )
    if dropped_links:
        logger.warning(
            "Clone dropped links to templates not visible from destination",
            extra={"source_template_id": source.id, "dropped": dropped_links},
        )
    return clone


def clone_template(
    caller: Caller,
    source_template_id: int,
    source_scope: TemplateScope,
    destination_scope: TemplateScope,
    *,
    name: str | None = None,
) -> WorkflowTemplate:
    """Deep-copy a template into ``destination_scope`` as a new DRAFT.

    Nodes keep content and positions under new ids; edges are remapped;
    links keep their target template ids (targets the destination cannot
    see are dropped); style defaults are copied.
    """
    require_scope_access(caller, source_scope)
    require_scope_admin(caller, destination_scope)
    return _clone(caller, source_template_id, source_scope, destination_scope, name=name)


def _clone(caller, source_template_id, source_scope, destination_scope, *, name=None, override_of_id=None):
    with atomic():
        source = graph_store.get_template(source_template_id, source_scope)
        clone = _deep_copy(source, destination_scope, caller, name, override_of_id)

    logger.info(
        "Workflow template cloned",
        extra={
            "source_template_id": source_template_id,
            "template_id": clone.id,
            "tenant_id": clone.tenant_id,
            "override": override_of_id is not None,
        },
    )
    template_events.emit(
        template_events.TEMPLATE_CHANGED,
        template_id=clone.id, tenant_id=clone.tenant_id, version=clone.version,
        actor_user_id=caller.user_id, change="clone", source_template_id=source_template_id,
    )
    return clone


def create_override(caller: Caller, tenant_id: int, global_template_id: int) -> tuple[WorkflowTemplate, bool]:
    """Give a tenant its own editable copy of a global template.

    Returns ``(template, created)``. A tenant has at most one override per
    global template; asking again returns the existing one. The
    ``uq_workflow_template_override`` constraint backs this when two
    requests race: the loser's insert fails and it returns the winner's copy.
    """
    destination = TenantScope(tenant_id)
    require_scope_access(caller, GLOBAL)
    require_scope_admin(caller, destination)
    existing = graph_store.find_override(tenant_id, global_template_id)
    if existing is not None:
        return existing, False
    try:
        clone = _clone(caller, global_template_id, GLOBAL, destination, override_of_id=global_template_id)
    except IntegrityError:
        existing = graph_store.find_override(tenant_id, global_template_id)
        if existing is None:
            raise
        logger.info(
            "Concurrent override request lost the race",
            extra={"tenant_id": tenant_id, "source_template_id": global_template_id},
        )
        return existing, False
    return clone, True
