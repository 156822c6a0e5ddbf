"""
Signposting Workflow Platform
Workflow engine domain models.

Models:
    - WorkflowTemplate:          one authored script, global or tenant-scoped
    - WorkflowNode:              one step of a template (diagram node)
    - WorkflowAnswerOption:      labelled outgoing choice (diagram edge) within a template
    - WorkflowNodeLink:          jump from a node to another template's entry node
    - WorkflowNodeStyleDefault:  per-(template, node type) colour defaults
    - WorkflowInstance:          one concrete run of a template
    - WorkflowInstanceStep:      append-only history row of an instance

Architecture:
    WorkflowTemplate ──1:N──▶ WorkflowNode ──1:N──▶ WorkflowAnswerOption ──N:1──▶ WorkflowNode
    WorkflowNode ──1:N──▶ WorkflowNodeLink ──N:1──▶ WorkflowTemplate
    WorkflowTemplate ──1:N──▶ WorkflowNodeStyleDefault
    WorkflowTemplate ──1:N──▶ WorkflowInstance ──1:N──▶ WorkflowInstanceStep

Nodes and edges are plain rows keyed by integer ids. Cycles between nodes
are ordinary data; nothing in this module walks the graph recursively.

Lifecycle states:
    WorkflowTemplate:  DRAFT → PENDING_REVIEW → APPROVED
                       PENDING_REVIEW → CHANGES_REQUIRED → PENDING_REVIEW | DRAFT
                       APPROVED → DRAFT | CHANGES_REQUIRED
    WorkflowInstance:  IN_PROGRESS → COMPLETED | ABANDONED
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import event

from signposting.core.exceptions import InvalidStateError
from signposting.models import db
from signposting.models.scope import scope_from_column


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Node types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NodeTypeSpec:
    """Capabilities attached to a node type.

    supports_branching:  any number of authored answer options
    max_authored_edges:  upper bound on authored options (None = unbounded)
    implicit_continue:   with no authored edge, the engine offers a synthesised
                         "continue" choice to the next node by sort order
    terminal:            reaching the node completes the instance
    """

    name: str
    supports_branching: bool
    max_authored_edges: int | None
    implicit_continue: bool
    terminal: bool
    default_title: str


NODE_TYPES = {
    "INSTRUCTION": NodeTypeSpec("INSTRUCTION", False, 1, True, False, "New instruction"),
    "QUESTION": NodeTypeSpec("QUESTION", True, None, False, False, "New question"),
    "END": NodeTypeSpec("END", False, 0, False, True, "New outcome"),
    "PANEL": NodeTypeSpec("PANEL", False, 0, True, False, "New panel"),
    "REFERENCE": NodeTypeSpec("REFERENCE", False, 0, True, False, "New reference"),
}


def node_type_spec(node_type: str) -> NodeTypeSpec | None:
    """Return the capability record for a node type, or None if unknown."""
    return NODE_TYPES.get(node_type)


# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_TYPES = {"PRIMARY", "SUPPORTING", "MODULE"}

ACTION_KEYS = {
    "FORWARD_TO_GP",
    "FORWARD_TO_PRESCRIBING_TEAM",
    "FORWARD_TO_PHARMACY_TEAM",
    "FILE_WITHOUT_FORWARDING",
    "ADD_TO_YELLOW_SLOT",
    "SEND_STANDARD_LETTER",
    "CODE_AND_FILE",
    "OTHER",
}

APPROVAL_STATUSES = {"DRAFT", "PENDING_REVIEW", "APPROVED", "CHANGES_REQUIRED"}

# Structural edits (nodes, edges, links) are only legal in these states
EDITABLE_STATUSES = frozenset({"DRAFT", "CHANGES_REQUIRED"})

INSTANCE_STATUSES = {"IN_PROGRESS", "COMPLETED", "ABANDONED"}

CHOICE_KINDS = {"edge", "link", "continue"}

DEFAULT_LINK_LABEL = "Open linked workflow"
DEFAULT_SOURCE_HANDLE = "source-bottom"
DEFAULT_TARGET_HANDLE = "target-top"

# Minimum node box dimensions when a style override carries width/height
MIN_NODE_WIDTH = 300
MIN_NODE_HEIGHT = 200

# Default diagram placement for nodes created without coordinates
DEFAULT_NODE_X = 0
DEFAULT_NODE_Y_SPACING = 160


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

APPROVAL_TRANSITIONS = {
    "DRAFT":            ["PENDING_REVIEW"],
    "PENDING_REVIEW":   ["APPROVED", "CHANGES_REQUIRED"],
    "APPROVED":         ["DRAFT", "CHANGES_REQUIRED"],
    "CHANGES_REQUIRED": ["PENDING_REVIEW", "DRAFT"],
}

INSTANCE_TRANSITIONS = {
    "IN_PROGRESS": ["COMPLETED", "ABANDONED"],
    "COMPLETED":   [],
    "ABANDONED":   [],
}


def validate_approval_transition(old_status, new_status):
    """Return True if WorkflowTemplate approval transition is valid."""
    return new_status in APPROVAL_TRANSITIONS.get(old_status, [])


def validate_instance_transition(old_status, new_status):
    """Return True if WorkflowInstance status transition is valid."""
    return new_status in INSTANCE_TRANSITIONS.get(old_status, [])


# ── Entry node resolution ────────────────────────────────────────────────────


def resolve_entry_node(nodes, options):
    """
    Pick the node where a run of the template begins.

    Order of preference:
      1. a node flagged ``is_start`` (lowest sort order if several)
      2. the lowest-sort-order node that no answer option targets
      3. the lowest-sort-order node overall

    Ties on sort order break on id, so the result is stable for an
    unchanged template. Returns None for a template without nodes.
    """
    if not nodes:
        return None

    ordered = sorted(nodes, key=lambda n: (n.sort_order, n.id))

    flagged = [n for n in ordered if n.is_start]
    if flagged:
        return flagged[0]

    targeted = {o.target_node_id for o in options if o.target_node_id is not None}
    for node in ordered:
        if node.id not in targeted:
            return node

    return ordered[0]


# ═════════════════════════════════════════════════════════════════════════════
# 1. WorkflowTemplate
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    """
    One authored workflow script.

    tenant_id NULL means the template belongs to the global default set;
    read it through the ``scope`` property rather than the raw column.
    ``version`` is bumped by every mutation and checked compare-and-swap
    style against the caller's stamp.
    """

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL = global default set",
    )

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon_key = db.Column(db.String(40), nullable=True)
    colour_hex = db.Column(db.String(9), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    workflow_type = db.Column(
        db.String(20), nullable=False, default="SUPPORTING",
        comment="PRIMARY | SUPPORTING | MODULE",
    )

    # Approval
    approval_status = db.Column(
        db.String(30), nullable=False, default="DRAFT",
        comment="DRAFT | PENDING_REVIEW | APPROVED | CHANGES_REQUIRED",
    )
    approved_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_note = db.Column(
        db.Text, nullable=True,
        comment="Reviewer note stored by request_changes",
    )

    # Editing audit (informational; concurrency uses ``version``)
    last_edited_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    last_edited_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Provenance of clones; never re-synced
    source_template_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Set only on the copy made by create_override; one per (tenant, global template)
    override_of_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_workflow_template_scope_name"),
        db.UniqueConstraint("tenant_id", "override_of_id", name="uq_workflow_template_override"),
        db.CheckConstraint(
            "approval_status IN ('DRAFT','PENDING_REVIEW','APPROVED','CHANGES_REQUIRED')",
            name="ck_workflow_template_approval_status",
        ),
    )

    nodes = db.relationship(
        "WorkflowNode", back_populates="template",
        cascade="all, delete-orphan", order_by="WorkflowNode.sort_order",
    )
    style_defaults = db.relationship(
        "WorkflowNodeStyleDefault", back_populates="template",
        cascade="all, delete-orphan", order_by="WorkflowNodeStyleDefault.node_type",
    )

    @property
    def scope(self):
        return scope_from_column(self.tenant_id)

    @property
    def is_editable(self) -> bool:
        return self.approval_status in EDITABLE_STATUSES

    def entry_node(self):
        options = [o for n in self.nodes for o in n.answer_options]
        return resolve_entry_node(list(self.nodes), options)

    def to_dict(self, include_graph=False):
        result = {
            "id": self.id,
            "scope": self.scope.label,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "icon_key": self.icon_key,
            "colour_hex": self.colour_hex,
            "is_active": self.is_active,
            "workflow_type": self.workflow_type,
            "approval_status": self.approval_status,
            "approved_by_id": self.approved_by_id,
            "approved_at": _iso(self.approved_at),
            "review_note": self.review_note,
            "last_edited_by_id": self.last_edited_by_id,
            "last_edited_at": _iso(self.last_edited_at),
            "source_template_id": self.source_template_id,
            "override_of_id": self.override_of_id,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_graph:
            entry = self.entry_node()
            result["entry_node_id"] = entry.id if entry else None
            result["nodes"] = [n.to_dict() for n in self.nodes]
            result["answer_options"] = [o.to_dict() for n in self.nodes for o in n.answer_options]
            result["links"] = [lk.to_dict() for n in self.nodes for lk in n.links]
            result["style_defaults"] = [s.to_dict() for s in self.style_defaults]
        return result

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name} [{self.approval_status}] v{self.version}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. WorkflowNode
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowNode(db.Model):
    """One step of a template. ``body`` is an opaque payload (rich text)."""

    __tablename__ = "workflow_nodes"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )

    node_type = db.Column(
        db.String(20), nullable=False,
        comment="INSTRUCTION | QUESTION | END | PANEL | REFERENCE",
    )
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, nullable=True)
    sort_order = db.Column(db.Integer, nullable=False)
    is_start = db.Column(db.Boolean, nullable=False, default=False)
    action_key = db.Column(db.String(40), nullable=True)

    # Diagram layout
    position_x = db.Column(db.Integer, nullable=True)
    position_y = db.Column(db.Integer, nullable=True)
    style = db.Column(db.JSON, nullable=True, comment="Per-node style override")
    badges = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_workflow_nodes_template_sort", "template_id", "sort_order"),
    )

    template = db.relationship("WorkflowTemplate", back_populates="nodes")
    answer_options = db.relationship(
        "WorkflowAnswerOption", back_populates="source_node",
        foreign_keys="WorkflowAnswerOption.source_node_id",
        cascade="all, delete-orphan", order_by="WorkflowAnswerOption.id",
    )
    links = db.relationship(
        "WorkflowNodeLink", back_populates="source_node",
        cascade="all, delete-orphan", order_by="WorkflowNodeLink.sort_order",
    )

    @property
    def type_spec(self) -> NodeTypeSpec | None:
        return node_type_spec(self.node_type)

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "node_type": self.node_type,
            "title": self.title,
            "body": self.body,
            "sort_order": self.sort_order,
            "is_start": self.is_start,
            "action_key": self.action_key,
            "position_x": self.position_x,
            "position_y": self.position_y,
            "style": self.style,
            "badges": list(self.badges or []),
        }

    def __repr__(self):
        return f"<WorkflowNode {self.id}: {self.node_type} '{self.title}'>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. WorkflowAnswerOption (edge)
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowAnswerOption(db.Model):
    """
    Outgoing choice from a node.

    target_node_id NULL means "not yet wired": either never connected or
    its target was deleted. Such an option is kept so the authored label
    survives; choosing it at runtime is rejected.
    """

    __tablename__ = "workflow_answer_options"

    id = db.Column(db.Integer, primary_key=True)
    source_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    label = db.Column(db.String(300), nullable=False)
    value_key = db.Column(
        db.String(120), nullable=False,
        comment="Slug of label, unique per source node",
    )
    description = db.Column(db.Text, nullable=True)
    target_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    action_key = db.Column(db.String(40), nullable=True)
    source_handle = db.Column(db.String(40), nullable=False, default=DEFAULT_SOURCE_HANDLE)
    target_handle = db.Column(db.String(40), nullable=False, default=DEFAULT_TARGET_HANDLE)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    source_node = db.relationship(
        "WorkflowNode", back_populates="answer_options", foreign_keys=[source_node_id],
    )

    @property
    def is_dangling(self) -> bool:
        return self.target_node_id is None

    def to_dict(self):
        return {
            "id": self.id,
            "source_node_id": self.source_node_id,
            "label": self.label,
            "value_key": self.value_key,
            "description": self.description,
            "target_node_id": self.target_node_id,
            "action_key": self.action_key,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
            "is_dangling": self.is_dangling,
        }

    def __repr__(self):
        return f"<WorkflowAnswerOption {self.id}: '{self.label}' {self.source_node_id}->{self.target_node_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. WorkflowNodeLink (cross-template jump)
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowNodeLink(db.Model):
    """Hand-off from a node to another template's entry node."""

    __tablename__ = "workflow_node_links"

    id = db.Column(db.Integer, primary_key=True)
    source_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    target_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    label = db.Column(db.String(300), nullable=False, default=DEFAULT_LINK_LABEL)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("source_node_id", "target_template_id", name="uq_workflow_node_link_target"),
    )

    source_node = db.relationship("WorkflowNode", back_populates="links")
    target_template = db.relationship("WorkflowTemplate", foreign_keys=[target_template_id])

    def to_dict(self):
        return {
            "id": self.id,
            "source_node_id": self.source_node_id,
            "target_template_id": self.target_template_id,
            "target_template_name": self.target_template.name if self.target_template else None,
            "label": self.label,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<WorkflowNodeLink {self.id}: node {self.source_node_id} -> template {self.target_template_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. WorkflowNodeStyleDefault
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowNodeStyleDefault(db.Model):
    """Colour defaults for one node type within one template."""

    __tablename__ = "workflow_node_style_defaults"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_type = db.Column(db.String(20), nullable=False)
    bg_color = db.Column(db.String(20), nullable=True)
    text_color = db.Column(db.String(20), nullable=True)
    border_color = db.Column(db.String(20), nullable=True)

    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("template_id", "node_type", name="uq_workflow_style_default_type"),
    )

    template = db.relationship("WorkflowTemplate", back_populates="style_defaults")

    def colours(self) -> dict:
        """Non-empty colours in the node ``style`` key format."""
        result = {}
        if self.bg_color:
            result["bgColor"] = self.bg_color
        if self.text_color:
            result["textColor"] = self.text_color
        if self.border_color:
            result["borderColor"] = self.border_color
        return result

    def to_dict(self):
        return {
            "template_id": self.template_id,
            "node_type": self.node_type,
            "bg_color": self.bg_color,
            "text_color": self.text_color,
            "border_color": self.border_color,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 6. WorkflowInstance
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    """
    One run of a template.

    ``template_id`` is the template currently being executed; it changes
    when a node link hands off to another template. ``origin_template_id``
    keeps the template the run was started from.

    ``version`` is the SQLAlchemy version counter: two concurrent writers of
    the same row cannot both commit; the loser gets StaleDataError.
    """

    __tablename__ = "workflow_instances"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    origin_template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    # No FK: the node may be removed by a later authoring edit
    current_node_id = db.Column(db.Integer, nullable=True)

    reference = db.Column(db.String(200), nullable=True)
    category = db.Column(db.String(100), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="IN_PROGRESS",
        comment="IN_PROGRESS | COMPLETED | ABANDONED",
    )
    started_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    abandoned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('IN_PROGRESS','COMPLETED','ABANDONED')",
            name="ck_workflow_instance_status",
        ),
        db.Index("ix_workflow_instances_tenant_status", "tenant_id", "status"),
    )

    history = db.relationship(
        "WorkflowInstanceStep", back_populates="instance",
        cascade="all, delete-orphan", order_by="WorkflowInstanceStep.sequence",
    )

    @property
    def is_terminal(self) -> bool:
        return not INSTANCE_TRANSITIONS.get(self.status)

    def to_dict(self, include_history=False):
        result = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "template_id": self.template_id,
            "origin_template_id": self.origin_template_id,
            "current_node_id": self.current_node_id,
            "reference": self.reference,
            "category": self.category,
            "status": self.status,
            "started_by_id": self.started_by_id,
            "version": self.version,
            "step_count": len(self.history),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "abandoned_at": _iso(self.abandoned_at),
        }
        if include_history:
            result["history"] = [s.to_dict() for s in self.history]
        return result

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: template {self.template_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 7. WorkflowInstanceStep
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstanceStep(db.Model):
    """
    Immutable history entry: one successful transition of an instance.

    Business rules:
    - Rows are appended by the execution engine only; UPDATE is refused
      (see the before_update listener below).
    - Node and template ids are stored without FKs so the trail stays
      readable after the author edits or deletes the nodes involved.
    - (instance_id, sequence) is unique: two racing advances cannot both
      append the same step.
    """

    __tablename__ = "workflow_instance_steps"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)

    from_template_id = db.Column(db.Integer, nullable=False)
    from_node_id = db.Column(db.Integer, nullable=False)
    choice_kind = db.Column(db.String(20), nullable=False, comment="edge | link | continue")
    choice_ref_id = db.Column(db.Integer, nullable=True, comment="Answer option or link id")
    choice_label = db.Column(db.String(300), nullable=True, comment="Label snapshot")
    action_key = db.Column(db.String(40), nullable=True)

    to_template_id = db.Column(db.Integer, nullable=False)
    to_node_id = db.Column(db.Integer, nullable=True, comment="NULL when the run ended with no next node")
    template_switched = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("instance_id", "sequence", name="uq_workflow_step_sequence"),
    )

    instance = db.relationship("WorkflowInstance", back_populates="history")

    @property
    def choice_id(self) -> str:
        if self.choice_kind == "continue":
            return "continue"
        return f"{self.choice_kind}:{self.choice_ref_id}"

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "from_template_id": self.from_template_id,
            "from_node_id": self.from_node_id,
            "choice_id": self.choice_id,
            "choice_kind": self.choice_kind,
            "choice_label": self.choice_label,
            "action_key": self.action_key,
            "to_template_id": self.to_template_id,
            "to_node_id": self.to_node_id,
            "template_switched": self.template_switched,
            "timestamp": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowInstanceStep #{self.sequence} of instance {self.instance_id}>"


@event.listens_for(WorkflowInstanceStep, "before_update")
def _refuse_step_update(mapper, connection, target):
    raise InvalidStateError("Instance history is append-only")
