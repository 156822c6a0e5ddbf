"""
Demo workflow seeding for the global default set.

Inserts a small set of reception workflows (document triage scripts) so a
fresh environment has something to run. Safe to run multiple times: a
global template whose name already exists is skipped.

Call this from the ``flask seed-demo-workflows`` CLI command.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from signposting.models import db
from signposting.models.audit import write_audit
from signposting.models.workflow import (
    DEFAULT_NODE_X,
    DEFAULT_NODE_Y_SPACING,
    WorkflowAnswerOption,
    WorkflowNode,
    WorkflowNodeLink,
    WorkflowTemplate,
)
from signposting.services import template_events
from signposting.services.graph_mutation_service import slugify
from signposting.services.helpers.transaction import atomic
from signposting.services.icon_inference import infer_icon_key

logger = logging.getLogger(__name__)


def seed_demo_workflows(approve: bool = True) -> list[WorkflowTemplate]:
    """
    Insert the demo templates into the global set.

    Args:
        approve: Mark the seeded templates APPROVED so tenants can run them
                 straight away. Otherwise they stay DRAFT.

    Returns:
        The templates created by this call (empty if all already existed).
    """
    created = []
    by_name = {}
    now = datetime.now(timezone.utc)

    with atomic():
        for spec in _demo_workflows():
            existing = db.session.execute(
                select(WorkflowTemplate).where(
                    WorkflowTemplate.tenant_id.is_(None),
                    WorkflowTemplate.name == spec["name"],
                )
            ).scalar_one_or_none()
            if existing is not None:
                by_name[spec["name"]] = (existing, None)
                continue

            template = WorkflowTemplate(
                tenant_id=None,
                name=spec["name"],
                description=spec["description"],
                workflow_type=spec["workflow_type"],
                icon_key=infer_icon_key(spec["name"], spec["description"]),
                approval_status="APPROVED" if approve else "DRAFT",
                approved_at=now if approve else None,
                version=1,
            )
            db.session.add(template)
            db.session.flush()

            nodes = {}
            for index, node_spec in enumerate(spec["nodes"]):
                node = WorkflowNode(
                    template_id=template.id,
                    node_type=node_spec["node_type"],
                    title=node_spec["title"],
                    body=node_spec.get("body"),
                    sort_order=index,
                    is_start=node_spec.get("is_start", False),
                    action_key=node_spec.get("action_key"),
                    position_x=DEFAULT_NODE_X,
                    position_y=index * DEFAULT_NODE_Y_SPACING,
                    badges=[],
                )
                db.session.add(node)
                nodes[node_spec["key"]] = node
            db.session.flush()

            for source_key, label, target_key in spec["options"]:
                db.session.add(WorkflowAnswerOption(
                    source_node_id=nodes[source_key].id,
                    label=label,
                    value_key=slugify(label) or "option",
                    target_node_id=nodes[target_key].id,
                ))

            write_audit(
                entity_type="workflow_template",
                entity_id=template.id,
                action="workflow_template.create",
                diff={"name": {"old": None, "new": template.name}, "seeded": True},
            )
            by_name[spec["name"]] = (template, nodes)
            created.append(template)

        # Links resolve by name, so they are wired once every template exists
        for spec in _demo_workflows():
            template, nodes = by_name[spec["name"]]
            if nodes is None:
                continue
            for order, (source_key, target_name, label) in enumerate(spec.get("links", [])):
                target, _ = by_name[target_name]
                db.session.add(WorkflowNodeLink(
                    source_node_id=nodes[source_key].id,
                    target_template_id=target.id,
                    label=label,
                    sort_order=order,
                ))
        db.session.flush()

    for template in created:
        template_events.emit(
            template_events.TEMPLATE_CHANGED,
            template_id=template.id, tenant_id=None, version=template.version, change="seed",
        )
        if approve:
            template_events.emit(
                template_events.TEMPLATE_APPROVED,
                template_id=template.id, tenant_id=None, version=template.version,
            )

    if created:
        logger.info(
            "Seeded %s demo workflow templates", len(created),
            extra={"scope": "global", "approved": approve},
        )
    return created


def _demo_workflows() -> list[dict]:
    """Demo reception workflows. Option and link tuples refer to node keys."""
    return [
        # ════════════════════════════════════════════
        # Discharge summary triage
        # ════════════════════════════════════════════
        {
            "name": "Discharge summary",
            "description": "Incoming hospital discharge summary: decide who needs to act on it.",
            "workflow_type": "PRIMARY",
            "nodes": [
                {"key": "meds", "node_type": "QUESTION", "is_start": True,
                 "title": "Does the summary ask for a medication change?"},
                {"key": "pharmacy", "node_type": "INSTRUCTION",
                 "title": "Forward to the pharmacy team",
                 "body": "Add the summary to the pharmacy team inbox with the change highlighted.",
                 "action_key": "FORWARD_TO_PHARMACY_TEAM"},
                {"key": "followup", "node_type": "QUESTION",
                 "title": "Is a GP follow-up requested?"},
                {"key": "to_gp", "node_type": "END", "title": "Forwarded to GP",
                 "action_key": "FORWARD_TO_GP"},
                {"key": "filed", "node_type": "END", "title": "Filed without forwarding",
                 "action_key": "FILE_WITHOUT_FORWARDING"},
                {"key": "pharmacy_done", "node_type": "END", "title": "Sent to pharmacy"},
            ],
            "options": [
                ("meds", "Yes", "pharmacy"),
                ("meds", "No", "followup"),
                ("pharmacy", "Done", "pharmacy_done"),
                ("followup", "Yes", "to_gp"),
                ("followup", "No", "filed"),
            ],
            "links": [
                ("meds", "Medication change request", "Open medication change workflow"),
            ],
        },
        # ════════════════════════════════════════════
        # Medication change request
        # ════════════════════════════════════════════
        {
            "name": "Medication change request",
            "description": "A clinician or pharmacy asks for a repeat medication to be changed.",
            "workflow_type": "SUPPORTING",
            "nodes": [
                {"key": "check", "node_type": "INSTRUCTION", "is_start": True,
                 "title": "Check the request names the medicine and the new dose"},
                {"key": "urgent", "node_type": "QUESTION",
                 "title": "Is the change marked urgent?"},
                {"key": "prescriber", "node_type": "END", "title": "Forwarded to prescribing team",
                 "action_key": "FORWARD_TO_PRESCRIBING_TEAM"},
                {"key": "yellow", "node_type": "END", "title": "Added to yellow slot",
                 "action_key": "ADD_TO_YELLOW_SLOT"},
            ],
            "options": [
                ("check", "Checked", "urgent"),
                ("urgent", "Yes", "yellow"),
                ("urgent", "No", "prescriber"),
            ],
        },
        # ════════════════════════════════════════════
        # Blood test results
        # ════════════════════════════════════════════
        {
            "name": "Blood test results",
            "description": "Pathology results arriving outside a requested review.",
            "workflow_type": "SUPPORTING",
            "nodes": [
                {"key": "abnormal", "node_type": "QUESTION", "is_start": True,
                 "title": "Are any results flagged abnormal?"},
                {"key": "review", "node_type": "END", "title": "Sent for clinician review",
                 "action_key": "FORWARD_TO_GP"},
                {"key": "code", "node_type": "END", "title": "Coded and filed",
                 "action_key": "CODE_AND_FILE"},
            ],
            "options": [
                ("abnormal", "Yes", "review"),
                ("abnormal", "No", "code"),
            ],
        },
    ]
