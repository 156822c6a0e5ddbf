"""
HTTP API tests for the workflow blueprint.

Tests cover:
  - Caller resolution from X-User-ID (missing / unknown → 403)
  - Error envelope: 404, 409 version / state conflicts, 422 validation
  - Authoring round trip: template, nodes, edges, approval over HTTP
  - Runtime: effective list, overrides, instance start / choices / advance / abandon
  - Health endpoints
"""

import pytest

from signposting.models.scope import GLOBAL

BASE = "/api/v1/workflow"


def _headers(caller):
    return {"X-User-ID": str(caller.user_id)}


@pytest.fixture()
def api(client):
    """Small wrapper: api.post(caller, path, json) → (status, json)."""

    class _Api:
        def _call(self, method, caller, path, json=None):
            headers = _headers(caller) if caller is not None else {}
            res = getattr(client, method)(BASE + path, json=json, headers=headers)
            return res.status_code, res.get_json(silent=True)

        def get(self, caller, path):
            return self._call("get", caller, path)

        def post(self, caller, path, json=None):
            return self._call("post", caller, path, json if json is not None else {})

        def put(self, caller, path, json=None):
            return self._call("put", caller, path, json if json is not None else {})

        def delete(self, caller, path):
            return self._call("delete", caller, path)

    return _Api()


# ═════════════════════════════════════════════════════════════════════════
# CALLER & ERROR ENVELOPE
# ═════════════════════════════════════════════════════════════════════════

class TestCallerAndErrors:
    def test_missing_caller_is_forbidden(self, api, tenant):
        status, body = api.get(None, f"/scopes/{tenant.id}/templates")
        assert status == 403
        assert body["code"] == "ERR_FORBIDDEN"

    def test_unknown_caller_is_forbidden(self, client, tenant):
        res = client.get(f"{BASE}/scopes/{tenant.id}/templates", headers={"X-User-ID": "99999"})
        assert res.status_code == 403

    def test_invalid_scope(self, api, superuser):
        status, body = api.get(superuser, "/scopes/not-a-scope/templates")
        assert status == 422
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"] == {"scope": "not-a-scope"}

    def test_unknown_template(self, api, tenant_admin, tenant):
        status, body = api.get(tenant_admin, f"/scopes/{tenant.id}/templates/424242")
        assert status == 404
        assert body["code"] == "ERR_NOT_FOUND"

    def test_validation_error(self, api, tenant_admin, tenant):
        status, body = api.post(tenant_admin, f"/scopes/{tenant.id}/templates", {"name": "   "})
        assert status == 422
        assert body["code"] == "ERR_VALIDATION_INVALID"

    def test_stale_version(self, api, tenant_admin, tenant):
        _, created = api.post(tenant_admin, f"/scopes/{tenant.id}/templates", {"name": "Letters"})
        path = f"/scopes/{tenant.id}/templates/{created['id']}"
        status, _ = api.put(tenant_admin, path, {"description": "First", "version": 1})
        assert status == 200
        status, body = api.put(tenant_admin, path, {"description": "Second", "version": 1})
        assert status == 409
        assert body["code"] == "ERR_CONFLICT_VERSION"
        assert body["details"]["current_version"] == 2

    def test_duplicate_name(self, api, tenant_admin, tenant):
        api.post(tenant_admin, f"/scopes/{tenant.id}/templates", {"name": "Letters"})
        status, body = api.post(tenant_admin, f"/scopes/{tenant.id}/templates", {"name": "Letters"})
        assert status == 409
        assert body["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_staff_cannot_author(self, api, tenant_staff, tenant):
        status, _ = api.post(tenant_staff, f"/scopes/{tenant.id}/templates", {"name": "Letters"})
        assert status == 403

    def test_non_json_body(self, client, tenant_admin, tenant):
        res = client.post(
            f"{BASE}/scopes/{tenant.id}/templates",
            data="name=Letters", content_type="text/plain", headers=_headers(tenant_admin),
        )
        assert res.status_code == 415

    @pytest.mark.parametrize("raw", ["abc", [1], {"id": 1}, True])
    def test_non_integer_template_id(self, api, tenant_staff, tenant, raw):
        status, body = api.post(tenant_staff, f"/tenants/{tenant.id}/instances", {"template_id": raw})
        assert status == 422
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"] == {"template_id": "invalid"}

    def test_missing_template_id(self, api, tenant_staff, tenant):
        status, body = api.post(tenant_staff, f"/tenants/{tenant.id}/instances", {})
        assert status == 422
        assert body["details"] == {"template_id": "required"}

    @pytest.mark.parametrize("raw", ["discharge", [3]])
    def test_non_integer_global_template_id(self, api, tenant_admin, tenant, raw):
        status, body = api.post(tenant_admin, f"/tenants/{tenant.id}/overrides", {"global_template_id": raw})
        assert status == 422
        assert body["details"] == {"global_template_id": "invalid"}


# ═════════════════════════════════════════════════════════════════════════
# AUTHORING
# ═════════════════════════════════════════════════════════════════════════

class TestAuthoring:
    def test_author_and_approve(self, api, tenant_admin, tenant):
        root = f"/scopes/{tenant.id}/templates"
        status, t = api.post(tenant_admin, root, {"name": "Blood test results", "workflow_type": "PRIMARY"})
        assert status == 201
        assert t["version"] == 1
        assert t["approval_status"] == "DRAFT"
        tid = t["id"]

        status, body = api.post(
            tenant_admin, f"{root}/{tid}/nodes", {"node_type": "QUESTION", "title": "Normal?", "version": 1},
        )
        assert status == 201
        assert body["template_version"] == 2
        question = body["node"]["id"]

        _, body = api.post(tenant_admin, f"{root}/{tid}/nodes", {"node_type": "END", "version": 2})
        end = body["node"]["id"]

        status, body = api.post(
            tenant_admin, f"{root}/{tid}/nodes/{question}/answer-options",
            {"label": "Yes", "target_node_id": end, "version": 3},
        )
        assert status == 201
        assert body["answer_option"]["value_key"] == "yes"
        assert body["template_version"] == 4

        status, graph = api.get(tenant_admin, f"{root}/{tid}")
        assert status == 200
        assert graph["entry_node_id"] == question
        assert len(graph["nodes"]) == 2

        status, body = api.post(tenant_admin, f"{root}/{tid}/approve", {"version": 4})
        assert status == 409
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"] == {"current_status": "DRAFT"}

        status, body = api.post(tenant_admin, f"{root}/{tid}/submit", {"version": 4})
        assert status == 200
        assert body["approval_status"] == "PENDING_REVIEW"
        status, body = api.post(tenant_admin, f"{root}/{tid}/approve", {"version": 5})
        assert status == 200
        assert body["approval_status"] == "APPROVED"

        status, body = api.post(tenant_admin, f"{root}/{tid}/nodes", {"node_type": "END", "version": 6})
        assert status == 409
        assert body["code"] == "ERR_CONFLICT_STATE"

    def test_reposition(self, api, tenant_admin, tenant, tenant_scope, build_template):
        t = build_template(tenant_admin, tenant_scope, "Layout", nodes=[("a", {"node_type": "QUESTION"})])
        status, body = api.put(
            tenant_admin, f"/scopes/{tenant.id}/templates/{t.id}/positions",
            {"positions": [{"node_id": t.nodes["a"], "x": 40, "y": 80}], "version": t.version},
        )
        assert status == 200
        assert body == {"template_version": t.version + 1, "updated": 1}

    def test_delete_with_query_version(self, api, tenant_admin, tenant, tenant_scope, build_template):
        t = build_template(tenant_admin, tenant_scope, "Obsolete")
        status, _ = api.delete(tenant_admin, f"/scopes/{tenant.id}/templates/{t.id}?version={t.version}")
        assert status == 204
        status, _ = api.get(tenant_admin, f"/scopes/{tenant.id}/templates/{t.id}")
        assert status == 404

    def test_clone_to_tenant(self, api, superuser, tenant, build_template):
        shared = build_template(superuser, GLOBAL, "Shared", nodes=[("end", {"node_type": "END"})])
        status, body = api.post(
            superuser, f"/scopes/global/templates/{shared.id}/clone", {"destination_scope": tenant.id},
        )
        assert status == 201
        assert body["tenant_id"] == tenant.id
        assert body["source_template_id"] == shared.id

    def test_clone_requires_destination(self, api, superuser, build_template):
        shared = build_template(superuser, GLOBAL, "Shared")
        status, body = api.post(superuser, f"/scopes/global/templates/{shared.id}/clone", {})
        assert status == 422
        assert body["details"] == {"destination_scope": "required"}


# ═════════════════════════════════════════════════════════════════════════
# RUNTIME
# ═════════════════════════════════════════════════════════════════════════

class TestRuntime:
    @pytest.fixture()
    def triage(self, tenant_admin, tenant_scope, build_template):
        return build_template(
            tenant_admin, tenant_scope, "Letter triage",
            nodes=[
                ("q", {"node_type": "QUESTION", "title": "Action needed?"}),
                ("gp", {"node_type": "END", "title": "Send to GP", "action_key": "FORWARD_TO_GP"}),
            ],
            edges=[("q", "Yes", "gp")],
            approve=True,
        )

    def test_run_to_completion(self, api, tenant_staff, tenant, triage):
        root = f"/tenants/{tenant.id}/instances"
        status, inst = api.post(tenant_staff, root, {"template_id": triage.id, "reference": "LTR-9"})
        assert status == 201
        assert inst["status"] == "IN_PROGRESS"
        assert inst["history"] == []
        assert inst["version"] == 1

        status, body = api.get(tenant_staff, f"{root}/{inst['id']}/choices")
        assert status == 200
        assert [c["label"] for c in body["items"]] == ["Yes"]
        choice = body["items"][0]["choice_id"]

        status, inst = api.post(tenant_staff, f"{root}/{inst['id']}/advance", {"choice_id": choice, "version": 1})
        assert status == 200
        assert inst["status"] == "COMPLETED"
        assert inst["history"][0]["choice_id"] == choice
        assert inst["history"][0]["action_key"] is None

        status, body = api.post(tenant_staff, f"{root}/{inst['id']}/advance", {"choice_id": choice})
        assert status == 409
        assert body["details"] == {"current_status": "COMPLETED"}

    def test_stale_advance(self, api, tenant_staff, tenant, triage):
        root = f"/tenants/{tenant.id}/instances"
        _, inst = api.post(tenant_staff, root, {"template_id": triage.id})
        status, body = api.post(tenant_staff, f"{root}/{inst['id']}/abandon", {"version": 7})
        assert status == 409
        assert body["code"] == "ERR_CONFLICT_VERSION"
        assert body["details"] == {"expected": 7, "current_version": 1}

    def test_advance_requires_choice(self, api, tenant_staff, tenant, triage):
        root = f"/tenants/{tenant.id}/instances"
        _, inst = api.post(tenant_staff, root, {"template_id": triage.id})
        status, body = api.post(tenant_staff, f"{root}/{inst['id']}/advance", {})
        assert status == 422
        assert body["details"] == {"choice_id": "required"}

    def test_abandon_and_list(self, api, tenant_staff, tenant, triage):
        root = f"/tenants/{tenant.id}/instances"
        _, first = api.post(tenant_staff, root, {"template_id": triage.id})
        api.post(tenant_staff, root, {"template_id": triage.id})
        status, body = api.post(tenant_staff, f"{root}/{first['id']}/abandon", {"version": 1})
        assert status == 200
        assert body["status"] == "ABANDONED"

        _, body = api.get(tenant_staff, f"{root}?status=ABANDONED")
        assert [i["id"] for i in body["items"]] == [first["id"]]
        _, body = api.get(tenant_staff, f"{root}?template_id={triage.id}")
        assert body["total"] == 2

    def test_other_tenant_cannot_read_instance(self, api, tenant_staff, tenant, other_admin, triage):
        _, inst = api.post(tenant_staff, f"/tenants/{tenant.id}/instances", {"template_id": triage.id})
        status, _ = api.get(other_admin, f"/tenants/{tenant.id}/instances/{inst['id']}")
        assert status == 403

    def test_effective_templates_and_override(self, api, superuser, tenant_admin, tenant, build_template):
        shared = build_template(superuser, GLOBAL, "Discharge summary", nodes=[("end", {"node_type": "END"})], approve=True)
        status, body = api.get(tenant_admin, f"/tenants/{tenant.id}/effective-templates")
        assert status == 200
        assert [(i["id"], i["source"]) for i in body["items"]] == [(shared.id, "global")]

        status, body = api.post(tenant_admin, f"/tenants/{tenant.id}/overrides", {"global_template_id": shared.id})
        assert status == 201
        assert body["created"] is True
        override_id = body["template"]["id"]
        status, body = api.post(tenant_admin, f"/tenants/{tenant.id}/overrides", {"global_template_id": shared.id})
        assert status == 200
        assert body["template"]["id"] == override_id

        _, body = api.get(tenant_admin, f"/tenants/{tenant.id}/effective-templates?include_drafts=true")
        assert [(i["id"], i["source"]) for i in body["items"]] == [(override_id, "override")]


# ═════════════════════════════════════════════════════════════════════════
# HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        assert res.get_json()["checks"]["database"]["status"] == "ok"
