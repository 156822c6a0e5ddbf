"""
Approval lifecycle, cloning and override tests.

Tests cover:
  - Every valid status transition and its side-effects (approver stamp, note)
  - Invalid transitions → InvalidStateError
  - Submit guard: templates without nodes cannot be reviewed
  - Audit rows for lifecycle actions
  - Deep clone: fresh ids, remapped edges, copied styles, name suffixes,
    links to templates the destination cannot see are dropped
"""

import pytest
from sqlalchemy import select

from signposting.core.exceptions import ForbiddenError, InvalidStateError, ValidationError
from signposting.models import db
from signposting.models.audit import AuditLog
from signposting.models.scope import GLOBAL, TenantScope
from signposting.models.workflow import (
    APPROVAL_TRANSITIONS,
    WorkflowTemplate,
    validate_approval_transition,
)
from signposting.services import approval_lifecycle as lifecycle
from signposting.services import graph_store, template_events
from signposting.services import graph_mutation_service as mutations


_GRAPH = dict(
    nodes=[
        ("q", {"node_type": "QUESTION", "title": "Is it urgent?"}),
        ("yes", {"node_type": "END", "title": "Urgent", "action_key": "ADD_TO_YELLOW_SLOT"}),
        ("no", {"node_type": "END", "title": "Routine"}),
    ],
    edges=[("q", "Yes", "yes"), ("q", "No", "no")],
)


@pytest.fixture()
def draft(tenant_admin, tenant_scope, build_template):
    return build_template(tenant_admin, tenant_scope, "Urgency check", **_GRAPH)


def _actions(template_id):
    return [
        log.action
        for log in db.session.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == "workflow_template", AuditLog.entity_id == str(template_id))
            .order_by(AuditLog.id)
        ).scalars()
    ]


# ═════════════════════════════════════════════════════════════════════════
# TRANSITION TABLE
# ═════════════════════════════════════════════════════════════════════════

_ALL_STATUSES = sorted(APPROVAL_TRANSITIONS)


@pytest.mark.parametrize("old", _ALL_STATUSES)
@pytest.mark.parametrize("new", _ALL_STATUSES)
def test_transition_table(old, new):
    allowed = {
        ("DRAFT", "PENDING_REVIEW"),
        ("PENDING_REVIEW", "APPROVED"),
        ("PENDING_REVIEW", "CHANGES_REQUIRED"),
        ("APPROVED", "DRAFT"),
        ("APPROVED", "CHANGES_REQUIRED"),
        ("CHANGES_REQUIRED", "PENDING_REVIEW"),
        ("CHANGES_REQUIRED", "DRAFT"),
    }
    assert validate_approval_transition(old, new) == ((old, new) in allowed)


# ═════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_full_cycle(self, tenant_admin, tenant_scope, draft):
        v = draft.version
        t = lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=v)
        assert t.approval_status == "PENDING_REVIEW"

        t = lifecycle.request_changes(
            tenant_admin, tenant_scope, draft.id, "  Add a routine outcome  ", expected_version=v + 1,
        )
        assert t.approval_status == "CHANGES_REQUIRED"
        assert t.review_note == "Add a routine outcome"

        # structural edits are allowed again
        mutations.create_node(
            tenant_admin, tenant_scope, draft.id, {"node_type": "END", "title": "Other"}, expected_version=v + 2,
        )

        lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=v + 3)
        t = lifecycle.approve(tenant_admin, tenant_scope, draft.id, expected_version=v + 4)
        assert t.approval_status == "APPROVED"
        assert t.approved_by_id == tenant_admin.user_id
        assert t.approved_at is not None
        assert t.review_note is None

        t = lifecycle.reopen_for_editing(tenant_admin, tenant_scope, draft.id, expected_version=v + 5)
        assert t.approval_status == "DRAFT"
        assert t.approved_by_id is None
        assert t.approved_at is None

        assert _actions(draft.id) == [
            "workflow_template.create",
            "workflow_template.submit_for_review",
            "workflow_template.request_changes",
            "workflow_template.submit_for_review",
            "workflow_template.approve",
            "workflow_template.reopen_for_editing",
        ]

    def test_approve_from_draft_is_invalid(self, tenant_admin, tenant_scope, draft):
        with pytest.raises(InvalidStateError) as exc:
            lifecycle.approve(tenant_admin, tenant_scope, draft.id, expected_version=draft.version)
        assert exc.value.current_status == "DRAFT"
        assert db.session.get(WorkflowTemplate, draft.id).version == draft.version

    def test_submit_twice_is_invalid(self, tenant_admin, tenant_scope, draft):
        lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=draft.version)
        with pytest.raises(InvalidStateError):
            lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=draft.version + 1)

    def test_submit_empty_template(self, tenant_admin, tenant_scope, build_template):
        empty = build_template(tenant_admin, tenant_scope, "Empty")
        with pytest.raises(ValidationError):
            lifecycle.submit_for_review(tenant_admin, tenant_scope, empty.id, expected_version=empty.version)

    def test_request_changes_needs_note(self, tenant_admin, tenant_scope, draft):
        lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=draft.version)
        with pytest.raises(ValidationError):
            lifecycle.request_changes(tenant_admin, tenant_scope, draft.id, "   ", expected_version=draft.version + 1)

    def test_request_changes_on_approved(self, tenant_admin, tenant_scope, build_template):
        t = build_template(tenant_admin, tenant_scope, "Live", approve=True, **_GRAPH)
        updated = lifecycle.request_changes(
            tenant_admin, tenant_scope, t.id, "Wording is out of date", expected_version=t.version,
        )
        assert updated.approval_status == "CHANGES_REQUIRED"
        assert updated.approved_by_id is None

    def test_staff_cannot_approve(self, tenant_admin, tenant_staff, tenant_scope, draft):
        lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=draft.version)
        with pytest.raises(ForbiddenError):
            lifecycle.approve(tenant_staff, tenant_scope, draft.id, expected_version=draft.version + 1)

    def test_approved_event(self, tenant_admin, tenant_scope, draft):
        approved = []

        def _record(event):
            approved.append(event.template_id)

        template_events.subscribe(template_events.TEMPLATE_APPROVED)(_record)
        try:
            lifecycle.submit_for_review(tenant_admin, tenant_scope, draft.id, expected_version=draft.version)
            assert approved == []
            lifecycle.approve(tenant_admin, tenant_scope, draft.id, expected_version=draft.version + 1)
        finally:
            template_events.unsubscribe(template_events.TEMPLATE_APPROVED, _record)
        assert approved == [draft.id]


# ═════════════════════════════════════════════════════════════════════════
# CLONE
# ═════════════════════════════════════════════════════════════════════════

class TestClone:
    def test_clone_remaps_graph(self, tenant_admin, tenant_scope, draft):
        mutations.upsert_style_default(
            tenant_admin, tenant_scope, draft.id, "END", {"border_color": "#aa0000"}, expected_version=draft.version,
        )
        clone = lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, tenant_scope)
        assert clone.id != draft.id
        assert clone.name == "Urgency check (copy)"
        assert clone.approval_status == "DRAFT"
        assert clone.source_template_id == draft.id
        assert clone.version == 1

        source = graph_store.get_template_graph(draft.id, tenant_scope)
        copy = graph_store.get_template_graph(clone.id, tenant_scope)
        source_ids = {n["id"] for n in source["nodes"]}
        copy_ids = {n["id"] for n in copy["nodes"]}
        assert not source_ids & copy_ids
        assert [n["title"] for n in copy["nodes"]] == [n["title"] for n in source["nodes"]]
        # every copied edge stays inside the copy
        assert all(o["target_node_id"] in copy_ids for o in copy["answer_options"])
        assert [o["value_key"] for o in copy["answer_options"]] == [o["value_key"] for o in source["answer_options"]]
        assert copy["style_defaults"][0]["border_color"] == "#aa0000"
        assert copy["entry_node_id"] in copy_ids
        assert "workflow_template.clone" in _actions(clone.id)

    def test_second_clone_name(self, tenant_admin, tenant_scope, draft):
        lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, tenant_scope)
        second = lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, tenant_scope)
        assert second.name == "Urgency check (copy 2)"

    def test_explicit_name(self, tenant_admin, tenant_scope, draft):
        clone = lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, tenant_scope, name="Urgency v2")
        assert clone.name == "Urgency v2"

    def test_clone_keeps_dangling_edges(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Half wired",
            nodes=[("q", {"node_type": "QUESTION"})], edges=[("q", "Maybe", None)],
        )
        clone = lifecycle.clone_template(tenant_admin, t.id, tenant_scope, tenant_scope)
        copy = graph_store.get_template_graph(clone.id, tenant_scope)
        assert copy["answer_options"][0]["target_node_id"] is None

    def test_promote_global_to_tenant(self, superuser, tenant, build_template):
        shared = build_template(superuser, GLOBAL, "Shared triage", approve=True, **_GRAPH)
        clone = lifecycle.clone_template(superuser, shared.id, GLOBAL, TenantScope(tenant.id))
        assert clone.tenant_id == tenant.id
        assert clone.name == "Shared triage"

    def test_clone_drops_links_destination_cannot_see(
        self, superuser, tenant_scope, other_tenant, build_template,
    ):
        target = build_template(superuser, tenant_scope, "Local target")
        shared = build_template(superuser, GLOBAL, "Shared target")
        source = build_template(superuser, tenant_scope, "Source", nodes=[("q", {"node_type": "QUESTION"})])
        mutations.create_node_link(
            superuser, tenant_scope, source.id, source.nodes["q"],
            {"target_template_id": target.id}, expected_version=source.version,
        )
        mutations.create_node_link(
            superuser, tenant_scope, source.id, source.nodes["q"],
            {"target_template_id": shared.id}, expected_version=source.version + 1,
        )

        clone = lifecycle.clone_template(superuser, source.id, tenant_scope, TenantScope(other_tenant.id))
        copy = graph_store.get_template_graph(clone.id, TenantScope(other_tenant.id))
        assert [lk["target_template_id"] for lk in copy["links"]] == [shared.id]

    def test_clone_requires_destination_admin(self, tenant_admin, tenant_scope, other_tenant, draft):
        with pytest.raises(ForbiddenError):
            lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, TenantScope(other_tenant.id))

    def test_clone_requires_source_access(self, other_admin, tenant_scope, other_tenant, draft):
        with pytest.raises(ForbiddenError):
            lifecycle.clone_template(other_admin, draft.id, tenant_scope, TenantScope(other_tenant.id))

    def test_clone_is_independent(self, tenant_admin, tenant_scope, draft):
        clone = lifecycle.clone_template(tenant_admin, draft.id, tenant_scope, tenant_scope)
        mutations.update_node(
            tenant_admin, tenant_scope, draft.id, draft.nodes["q"], {"title": "Changed"},
            expected_version=draft.version,
        )
        copy = graph_store.get_template_graph(clone.id, tenant_scope)
        assert copy["nodes"][0]["title"] == "Is it urgent?"
