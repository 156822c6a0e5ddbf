"""
Graph store tests.

Tests cover:
  - Scoped template reads (other tenant's ids look missing)
  - Entry node resolution: start flag, untargeted node, all-targeted fallback
  - Effective template list: global / override / custom tags, status and
    active filters, ordering, cache invalidation on template events
"""

import pytest

from signposting.core.exceptions import NotFoundError
from signposting.models.scope import GLOBAL, TenantScope
from signposting.models.workflow import resolve_entry_node
from signposting.services import approval_lifecycle, cache_service, graph_store
from signposting.services import graph_mutation_service as mutations


class TestScopedReads:
    def test_get_template_graph(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Triage",
            nodes=[("q", {"node_type": "QUESTION"}), ("end", {"node_type": "END"})],
            edges=[("q", "Yes", "end")],
        )
        graph = graph_store.get_template_graph(t.id, tenant_scope)
        assert graph["entry_node_id"] == t.nodes["q"]
        assert [n["id"] for n in graph["nodes"]] == [t.nodes["q"], t.nodes["end"]]
        assert graph["answer_options"][0]["target_node_id"] == t.nodes["end"]
        assert graph["links"] == []
        assert graph["scope"] == str(tenant_scope.tenant_id)

    def test_other_tenant_template_not_found(self, tenant_admin, tenant_scope, other_tenant, build_template):
        t = build_template(tenant_admin, tenant_scope, "Private")
        with pytest.raises(NotFoundError):
            graph_store.get_template(t.id, TenantScope(other_tenant.id))
        with pytest.raises(NotFoundError):
            graph_store.get_template(t.id, GLOBAL)

    def test_list_templates_active_only(self, tenant_admin, tenant_scope, build_template):
        build_template(tenant_admin, tenant_scope, "B active")
        build_template(tenant_admin, tenant_scope, "A inactive", data={"is_active": False})
        assert [t.name for t in graph_store.list_templates(tenant_scope)] == ["A inactive", "B active"]
        assert [t.name for t in graph_store.list_templates(tenant_scope, active_only=True)] == ["B active"]

    def test_find_visible_template(self, superuser, tenant_admin, tenant_scope, other_admin, other_tenant, build_template):
        shared = build_template(superuser, GLOBAL, "Shared")
        mine = build_template(tenant_admin, tenant_scope, "Mine")
        theirs = build_template(other_admin, TenantScope(other_tenant.id), "Theirs")
        assert graph_store.find_visible_template(shared.id, tenant_scope) is not None
        assert graph_store.find_visible_template(mine.id, tenant_scope) is not None
        assert graph_store.find_visible_template(theirs.id, tenant_scope) is None
        assert graph_store.find_visible_template(mine.id, GLOBAL) is None


class TestEntryNode:
    def test_flagged_start_wins(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Flagged",
            nodes=[
                ("a", {"node_type": "QUESTION"}),
                ("b", {"node_type": "QUESTION", "is_start": True}),
            ],
        )
        template = graph_store.get_template(t.id, tenant_scope)
        assert graph_store.get_entry_node(template).id == t.nodes["b"]

    def test_first_untargeted_node(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Untargeted",
            nodes=[
                ("a", {"node_type": "QUESTION"}),
                ("b", {"node_type": "QUESTION"}),
                ("end", {"node_type": "END"}),
            ],
            edges=[("b", "Back", "a"), ("a", "On", "end")],
        )
        template = graph_store.get_template(t.id, tenant_scope)
        assert graph_store.get_entry_node(template).id == t.nodes["b"]

    def test_everything_targeted_falls_back_to_first(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Loop",
            nodes=[("a", {"node_type": "QUESTION"}), ("b", {"node_type": "QUESTION"})],
            edges=[("a", "Next", "b"), ("b", "Again", "a")],
        )
        template = graph_store.get_template(t.id, tenant_scope)
        assert graph_store.get_entry_node(template).id == t.nodes["a"]

    def test_empty_template(self):
        assert resolve_entry_node([], []) is None


# ═════════════════════════════════════════════════════════════════════════
# EFFECTIVE TEMPLATES
# ═════════════════════════════════════════════════════════════════════════

_ONE_NODE = [("end", {"node_type": "END"})]


class TestEffectiveTemplates:
    @pytest.fixture()
    def catalogue(self, superuser, tenant_admin, tenant, tenant_scope, build_template):
        approved_global = build_template(superuser, GLOBAL, "Blood results", nodes=_ONE_NODE, approve=True)
        overridden = build_template(superuser, GLOBAL, "Discharge summary", nodes=_ONE_NODE, approve=True)
        build_template(superuser, GLOBAL, "Draft global", nodes=_ONE_NODE)
        custom = build_template(tenant_admin, tenant_scope, "Appointments", nodes=_ONE_NODE, approve=True)
        override, created = approval_lifecycle.create_override(tenant_admin, tenant.id, overridden.id)
        assert created
        return {
            "global": approved_global.id,
            "overridden": overridden.id,
            "override": override.id,
            "custom": custom.id,
        }

    def test_drafts_hidden_by_default(self, tenant, catalogue):
        rows = graph_store.list_effective_templates(tenant.id)
        # the override is still DRAFT, so neither it nor the global it shadows is shown
        assert [(r["name"], r["source"]) for r in rows] == [
            ("Appointments", "custom"),
            ("Blood results", "global"),
        ]

    def test_include_drafts_shows_override_in_place_of_global(self, tenant, catalogue):
        rows = graph_store.list_effective_templates(tenant.id, include_drafts=True)
        by_id = {r["id"]: r for r in rows}
        assert catalogue["overridden"] not in by_id
        assert by_id[catalogue["override"]]["source"] == "override"
        assert by_id[catalogue["override"]]["source_template_id"] == catalogue["overridden"]
        assert [r["name"] for r in rows] == sorted((r["name"] for r in rows), key=str.lower)
        assert "Draft global" in {r["name"] for r in rows}

    def test_other_tenant_sees_plain_global(self, other_tenant, catalogue):
        rows = graph_store.list_effective_templates(other_tenant.id)
        assert {(r["name"], r["source"]) for r in rows} == {
            ("Blood results", "global"),
            ("Discharge summary", "global"),
        }

    def test_inactive_hidden_unless_requested(self, superuser, tenant, build_template):
        build_template(superuser, GLOBAL, "Retired", nodes=_ONE_NODE, approve=True, data={"is_active": False})
        assert graph_store.list_effective_templates(tenant.id) == []
        rows = graph_store.list_effective_templates(tenant.id, include_inactive=True)
        assert [r["name"] for r in rows] == ["Retired"]

    def test_cache_dropped_on_change(self, superuser, tenant, build_template):
        t = build_template(superuser, GLOBAL, "Results", nodes=_ONE_NODE, approve=True)
        assert len(graph_store.list_effective_templates(tenant.id)) == 1
        key = cache_service.effective_key(tenant.id, False, False)
        assert cache_service.get_cached(key) is not None

        approval_lifecycle.reopen_for_editing(superuser, GLOBAL, t.id, expected_version=t.version)

        assert cache_service.get_cached(key) is None
        assert graph_store.list_effective_templates(tenant.id) == []

    def test_tenant_change_keeps_other_tenants_cache(self, tenant_admin, tenant_scope, tenant, other_tenant, build_template):
        graph_store.list_effective_templates(other_tenant.id)
        other_key = cache_service.effective_key(other_tenant.id, False, False)
        assert cache_service.get_cached(other_key) is not None
        build_template(tenant_admin, tenant_scope, "Local only")
        assert cache_service.get_cached(other_key) is not None

    def test_create_override_is_idempotent(self, tenant_admin, tenant, catalogue):
        again, created = approval_lifecycle.create_override(tenant_admin, tenant.id, catalogue["overridden"])
        assert created is False
        assert again.id == catalogue["override"]

    def test_custom_clone_keeps_its_source(self, tenant_admin, tenant, tenant_scope, build_template):
        original = build_template(tenant_admin, tenant_scope, "Letters", nodes=_ONE_NODE, approve=True)
        copy = approval_lifecycle.clone_template(tenant_admin, original.id, tenant_scope, tenant_scope)
        rows = graph_store.list_effective_templates(tenant.id, include_drafts=True)
        by_id = {r["id"]: r for r in rows}
        assert by_id[copy.id]["source"] == "custom"
        assert by_id[copy.id]["source_template_id"] == original.id
        assert by_id[original.id]["source_template_id"] is None

    def test_global_row_has_no_source(self, superuser, tenant, build_template):
        build_template(superuser, GLOBAL, "Referrals", nodes=_ONE_NODE, approve=True)
        (row,) = graph_store.list_effective_templates(tenant.id)
        assert row["source"] == "global"
        assert row["source_template_id"] is None


class TestConcurrentOverride:
    def test_second_request_returns_first_copy(self, app, monkeypatch, superuser, tenant_admin, tenant, build_template):
        shared = build_template(superuser, GLOBAL, "Discharge summary", nodes=_ONE_NODE, approve=True)
        real_find = graph_store.find_override
        winner = {}

        def _find_after_rival(tenant_id, global_template_id):
            if not winner:
                # another request creates the override between our check and our insert
                with app.app_context():
                    rival, created = approval_lifecycle.create_override(tenant_admin, tenant_id, global_template_id)
                    assert created
                    winner["id"] = rival.id
                return None
            return real_find(tenant_id, global_template_id)

        monkeypatch.setattr(graph_store, "find_override", _find_after_rival)
        override, created = approval_lifecycle.create_override(tenant_admin, tenant.id, shared.id)

        assert created is False
        assert override.id == winner["id"]
        monkeypatch.undo()
        copies = [
            t for t in graph_store.list_templates(TenantScope(tenant.id))
            if t.override_of_id == shared.id
        ]
        assert [t.id for t in copies] == [winner["id"]]

    def test_override_records_its_global(self, tenant_admin, tenant, superuser, build_template):
        shared = build_template(superuser, GLOBAL, "Blood results", nodes=_ONE_NODE, approve=True)
        override, _ = approval_lifecycle.create_override(tenant_admin, tenant.id, shared.id)
        assert override.override_of_id == shared.id
        assert override.source_template_id == shared.id
        assert override.to_dict()["override_of_id"] == shared.id


class TestCounts:
    def test_counts(self, tenant_admin, tenant_scope, build_template):
        t = build_template(
            tenant_admin, tenant_scope, "Counted",
            nodes=[("q", {"node_type": "QUESTION"}), ("end", {"node_type": "END"})],
            edges=[("q", "Yes", "end"), ("q", "No", "end")],
        )
        assert graph_store.count_nodes(t.id) == 2
        assert graph_store.count_answer_options(t.id) == 2
        assert graph_store.next_sort_order(t.id) == 3
        mutations.delete_node(tenant_admin, tenant_scope, t.id, t.nodes["q"], expected_version=t.version)
        assert graph_store.count_answer_options(t.id) == 0
