"""
Instance Execution Engine — starts and advances runs of a template.

State machine per instance (see INSTANCE_TRANSITIONS):
    IN_PROGRESS → COMPLETED   on reaching an END node, or continuing past the last node
    IN_PROGRESS → ABANDONED   explicit cancellation

Choice ids offered at a node:
    "edge:<id>"   an authored answer option of the current node
    "link:<id>"   a node link of the current node (switches template)
    "continue"    synthesised for INSTRUCTION / PANEL / REFERENCE nodes without
                  an authored edge; moves to the next node by sort order
A bare integer is read as an edge id.

Every successful advance appends exactly one WorkflowInstanceStep. Two
concurrent advances of the same instance cannot both commit: the instance
row carries a version counter and (instance_id, sequence) is unique; the
loser gets VersionConflictError.

Cycles in the authored graph are legal. An instance refuses to advance
after WORKFLOW_MAX_INSTANCE_STEPS steps; it stays IN_PROGRESS and can be
abandoned.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from signposting.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from signposting.models import db
from signposting.models.audit import lifecycle_diff, write_audit
from signposting.models.scope import TenantScope
from signposting.models.workflow import (
    INSTANCE_STATUSES,
    WorkflowAnswerOption,
    WorkflowInstance,
    WorkflowInstanceStep,
    WorkflowNode,
    WorkflowNodeLink,
    validate_instance_transition,
)
from signposting.services import graph_store
from signposting.services.helpers.scoped_queries import get_scoped
from signposting.services.helpers.transaction import atomic
from signposting.services.permission_service import Caller, require_scope_access

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 500
CONTINUE_CHOICE = "continue"
CONTINUE_LABEL = "Continue"


def _utcnow():
    return datetime.now(timezone.utc)


def _max_steps() -> int:
    return int(current_app.config.get("WORKFLOW_MAX_INSTANCE_STEPS", DEFAULT_MAX_STEPS))


def _load_instance(caller: Caller, tenant_id: int, instance_id: int) -> WorkflowInstance:
    require_scope_access(caller, TenantScope(tenant_id))
    return get_scoped(WorkflowInstance, instance_id, tenant_id=tenant_id)


def _check_version(instance: WorkflowInstance, expected_version) -> None:
    if expected_version is None:
        return
    try:
        expected_version = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("version must be an integer", details={"version": "invalid"})
    if expected_version != instance.version:
        raise VersionConflictError(
            "WorkflowInstance", instance.id, expected=expected_version, actual=instance.version,
        )


def _finish(instance: WorkflowInstance, new_status: str) -> None:
    if not validate_instance_transition(instance.status, new_status):
        raise InvalidStateError(
            f"Instance cannot move from {instance.status} to {new_status}",
            current_status=instance.status,
        )
    instance.status = new_status
    if new_status == "COMPLETED":
        instance.completed_at = _utcnow()
    elif new_status == "ABANDONED":
        instance.abandoned_at = _utcnow()


# ═════════════════════════════════════════════════════════════════════════════
# start
# ═════════════════════════════════════════════════════════════════════════════


def start(
    caller: Caller,
    tenant_id: int,
    template_id: int,
    *,
    reference: str | None = None,
    category: str | None = None,
) -> WorkflowInstance:
    """Start a run of an APPROVED, active template visible to the tenant.

    Raises:
        NotFoundError: template missing or owned by another tenant.
        InvalidStateError: template not APPROVED, inactive, or without nodes.
    """
    scope = TenantScope(tenant_id)
    require_scope_access(caller, scope)
    with atomic():
        template = graph_store.find_visible_template(template_id, scope)
        if template is None:
            raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id, tenant_id=tenant_id)
        if template.approval_status != "APPROVED":
            raise InvalidStateError(
                "Only approved workflows can be started",
                current_status=template.approval_status,
            )
        if not template.is_active:
            raise InvalidStateError("Workflow is inactive", current_status="INACTIVE")
        entry = template.entry_node()
        if entry is None:
            raise InvalidStateError("Workflow has no nodes", current_status=template.approval_status)

        instance = WorkflowInstance(
            tenant_id=tenant_id,
            template_id=template.id,
            origin_template_id=template.id,
            current_node_id=entry.id,
            reference=(reference or "").strip() or None,
            category=(category or "").strip() or None,
            status="IN_PROGRESS",
            started_by_id=caller.user_id,
        )
        if entry.type_spec is not None and entry.type_spec.terminal:
            _finish(instance, "COMPLETED")
        db.session.add(instance)
        db.session.flush()
        write_audit(
            entity_type="workflow_instance", entity_id=instance.id, action="workflow_instance.start",
            tenant_id=tenant_id, actor_user_id=caller.user_id,
            diff={"template_id": template.id, "entry_node_id": entry.id},
        )

    logger.info(
        "Workflow instance started",
        extra={"instance_id": instance.id, "template_id": template_id, "tenant_id": tenant_id},
    )
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# advance
# ═════════════════════════════════════════════════════════════════════════════


def parse_choice(choice_id) -> tuple[str, int | None]:
    """Split a choice id into ``(kind, ref_id)``.

    Raises:
        ValidationError: unrecognised format.
    """
    if isinstance(choice_id, bool):
        raise ValidationError("Invalid choice id", details={"choice_id": choice_id})
    if isinstance(choice_id, int):
        return "edge", choice_id
    if isinstance(choice_id, str):
        text = choice_id.strip()
        if text == CONTINUE_CHOICE:
            return "continue", None
        if text.isdigit():
            return "edge", int(text)
        kind, sep, ref = text.partition(":")
        if sep and kind in ("edge", "link") and ref.isdigit():
            return kind, int(ref)
    raise ValidationError("Invalid choice id", details={"choice_id": choice_id})


def _current_node(instance: WorkflowInstance) -> WorkflowNode:
    node = None
    if instance.current_node_id is not None:
        node = db.session.execute(
            select(WorkflowNode).where(
                WorkflowNode.id == instance.current_node_id,
                WorkflowNode.template_id == instance.template_id,
            )
        ).scalar_one_or_none()
    if node is None:
        raise InvalidStateError(
            "The current step of this workflow no longer exists",
            current_status=instance.status,
        )
    return node


def _next_by_sort_order(node: WorkflowNode) -> WorkflowNode | None:
    stmt = (
        select(WorkflowNode)
        .where(WorkflowNode.template_id == node.template_id)
        .where(
            (WorkflowNode.sort_order > node.sort_order)
            | ((WorkflowNode.sort_order == node.sort_order) & (WorkflowNode.id > node.id))
        )
        .order_by(WorkflowNode.sort_order, WorkflowNode.id)
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def _offers_continue(node: WorkflowNode) -> bool:
    spec = node.type_spec
    return spec is not None and spec.implicit_continue and not node.answer_options


def _resolve_choice(instance: WorkflowInstance, node: WorkflowNode, kind: str, ref_id):
    """Return ``(target_template_id, target_node, label, action_key)``."""
    if kind == "continue":
        if not _offers_continue(node):
            raise ValidationError(
                f"{node.node_type} node does not offer continue",
                details={"choice_id": CONTINUE_CHOICE},
            )
        return instance.template_id, _next_by_sort_order(node), CONTINUE_LABEL, node.action_key

    if kind == "edge":
        option = db.session.get(WorkflowAnswerOption, ref_id)
        if option is None or option.source_node_id != node.id:
            raise ValidationError(
                "Choice does not belong to the current step",
                details={"choice_id": f"edge:{ref_id}"},
            )
        if option.target_node_id is None:
            raise ValidationError(
                f"Answer '{option.label}' is not connected to a next step",
                details={"choice_id": f"edge:{ref_id}", "dangling": True},
            )
        target = get_scoped(WorkflowNode, option.target_node_id, template_id=instance.template_id)
        return instance.template_id, target, option.label, option.action_key

    link = db.session.get(WorkflowNodeLink, ref_id)
    if link is None or link.source_node_id != node.id:
        raise ValidationError(
            "Choice does not belong to the current step",
            details={"choice_id": f"link:{ref_id}"},
        )
    target_template = graph_store.find_visible_template(
        link.target_template_id, TenantScope(instance.tenant_id),
    )
    if target_template is None or not target_template.is_active:
        raise InvalidStateError(
            "The linked workflow is no longer available",
            current_status=instance.status,
        )
    entry = target_template.entry_node()
    if entry is None:
        raise InvalidStateError("The linked workflow has no steps", current_status=instance.status)
    return target_template.id, entry, link.label, None


def advance(
    caller: Caller,
    tenant_id: int,
    instance_id: int,
    choice_id,
    *,
    expected_version=None,
) -> WorkflowInstance:
    """Take one choice at the instance's current node.

    Raises:
        InvalidStateError: instance not IN_PROGRESS, step bound reached,
            current node deleted, or linked template unusable.
        ValidationError: choice not on the current node, or a dangling edge.
        VersionConflictError: a concurrent advance won the race.
    """
    kind, ref_id = parse_choice(choice_id)
    try:
        with atomic():
            instance = _load_instance(caller, tenant_id, instance_id)
            _check_version(instance, expected_version)
            if instance.status != "IN_PROGRESS":
                raise InvalidStateError(
                    f"Instance is {instance.status}",
                    current_status=instance.status,
                )
            step_count = len(instance.history)
            if step_count >= _max_steps():
                raise InvalidStateError(
                    f"Instance reached the limit of {_max_steps()} steps",
                    current_status=instance.status,
                )

            node = _current_node(instance)
            to_template_id, target, label, action_key = _resolve_choice(instance, node, kind, ref_id)
            switched = to_template_id != instance.template_id

            step = WorkflowInstanceStep(
                sequence=step_count + 1,
                from_template_id=instance.template_id,
                from_node_id=node.id,
                choice_kind=kind,
                choice_ref_id=ref_id,
                choice_label=label,
                action_key=action_key,
                to_template_id=to_template_id,
                to_node_id=target.id if target is not None else None,
                template_switched=switched,
            )
            instance.history.append(step)

            instance.template_id = to_template_id
            instance.current_node_id = target.id if target is not None else None
            instance.updated_at = _utcnow()
            if target is None or (target.type_spec is not None and target.type_spec.terminal):
                _finish(instance, "COMPLETED")
                write_audit(
                    entity_type="workflow_instance", entity_id=instance.id,
                    action="workflow_instance.complete",
                    tenant_id=tenant_id, actor_user_id=caller.user_id,
                    diff=lifecycle_diff("status", "IN_PROGRESS", "COMPLETED"),
                )
    except (StaleDataError, IntegrityError) as exc:
        raise VersionConflictError("WorkflowInstance", instance_id, expected=expected_version) from exc

    logger.info(
        "Workflow instance advanced",
        extra={
            "instance_id": instance_id,
            "tenant_id": tenant_id,
            "choice": kind,
            "template_switched": switched,
            "status": instance.status,
        },
    )
    return instance


# ═════════════════════════════════════════════════════════════════════════════
# abandon / queries
# ═════════════════════════════════════════════════════════════════════════════


def abandon(caller: Caller, tenant_id: int, instance_id: int, *, expected_version=None) -> WorkflowInstance:
    try:
        with atomic():
            instance = _load_instance(caller, tenant_id, instance_id)
            _check_version(instance, expected_version)
            _finish(instance, "ABANDONED")
            instance.updated_at = _utcnow()
            write_audit(
                entity_type="workflow_instance", entity_id=instance.id,
                action="workflow_instance.abandon",
                tenant_id=tenant_id, actor_user_id=caller.user_id,
                diff=lifecycle_diff("status", "IN_PROGRESS", "ABANDONED"),
            )
    except StaleDataError as exc:
        raise VersionConflictError("WorkflowInstance", instance_id, expected=expected_version) from exc

    logger.info("Workflow instance abandoned", extra={"instance_id": instance_id, "tenant_id": tenant_id})
    return instance


def get_instance(caller: Caller, tenant_id: int, instance_id: int) -> WorkflowInstance:
    return _load_instance(caller, tenant_id, instance_id)


def list_instances(
    caller: Caller,
    tenant_id: int,
    *,
    status: str | None = None,
    template_id: int | None = None,
) -> list[WorkflowInstance]:
    require_scope_access(caller, TenantScope(tenant_id))
    stmt = select(WorkflowInstance).where(WorkflowInstance.tenant_id == tenant_id)
    if status is not None:
        if status not in INSTANCE_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": sorted(INSTANCE_STATUSES)})
        stmt = stmt.where(WorkflowInstance.status == status)
    if template_id is not None:
        stmt = stmt.where(WorkflowInstance.origin_template_id == template_id)
    stmt = stmt.order_by(WorkflowInstance.created_at.desc(), WorkflowInstance.id.desc())
    return list(db.session.execute(stmt).scalars())


def get_available_choices(caller: Caller, tenant_id: int, instance_id: int) -> list[dict]:
    """Choices the runtime UI can offer at the instance's current node.

    Empty for a finished instance. Dangling edges are listed with
    ``is_dangling`` so the UI can show them disabled.
    """
    instance = _load_instance(caller, tenant_id, instance_id)
    if instance.status != "IN_PROGRESS":
        return []
    node = _current_node(instance)

    choices = [
        {
            "choice_id": f"edge:{o.id}",
            "kind": "edge",
            "label": o.label,
            "value_key": o.value_key,
            "action_key": o.action_key,
            "target_node_id": o.target_node_id,
            "is_dangling": o.is_dangling,
        }
        for o in node.answer_options
    ]
    choices.extend(
        {
            "choice_id": f"link:{lk.id}",
            "kind": "link",
            "label": lk.label,
            "target_template_id": lk.target_template_id,
        }
        for lk in node.links
    )
    if _offers_continue(node):
        choices.append({"choice_id": CONTINUE_CHOICE, "kind": "continue", "label": CONTINUE_LABEL})
    return choices
