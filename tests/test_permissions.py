"""
Permission and scoped-lookup tests.

Tests cover:
  - can_author / can_access matrix for global and tenant scopes
  - inactive users and missing callers fail closed
  - load_caller resolution
  - get_scoped / get_in_scope: other-scope rows look exactly like missing rows
"""

import pytest

from signposting.core.exceptions import ForbiddenError, NotFoundError
from signposting.models import db
from signposting.models.scope import GLOBAL, TenantScope, parse_scope
from signposting.models.workflow import WorkflowNode, WorkflowTemplate
from signposting.services.helpers.scoped_queries import get_in_scope, get_scoped, get_scoped_or_none
from signposting.services.permission_service import (
    Caller,
    can_access,
    can_author,
    load_caller,
    require_scope_access,
    require_scope_admin,
)


# ═════════════════════════════════════════════════════════════════════════
# Scope parsing
# ═════════════════════════════════════════════════════════════════════════

class TestParseScope:
    def test_global_label(self):
        assert parse_scope("global") is GLOBAL
        assert parse_scope(" GLOBAL ") is GLOBAL

    def test_tenant_id(self):
        assert parse_scope(7) == TenantScope(7)
        assert parse_scope("12") == TenantScope(12)

    @pytest.mark.parametrize("raw", ["", "abc", 0, -3, True, None, "1.5"])
    def test_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_scope(raw)


# ═════════════════════════════════════════════════════════════════════════
# Author / access matrix
# ═════════════════════════════════════════════════════════════════════════

class TestAuthorMatrix:
    def test_superuser_authors_everywhere(self, superuser, tenant):
        assert can_author(superuser, GLOBAL)
        assert can_author(superuser, TenantScope(tenant.id))

    def test_tenant_admin_authors_own_tenant_only(self, tenant_admin, tenant, other_tenant):
        assert can_author(tenant_admin, TenantScope(tenant.id))
        assert not can_author(tenant_admin, TenantScope(other_tenant.id))
        assert not can_author(tenant_admin, GLOBAL)

    def test_staff_cannot_author(self, tenant_staff, tenant):
        assert not can_author(tenant_staff, TenantScope(tenant.id))

    def test_missing_caller_denied(self, tenant):
        assert not can_author(None, TenantScope(tenant.id))
        assert not can_access(None, GLOBAL)

    def test_inactive_admin_denied(self, tenant):
        caller = Caller(user_id=1, tenant_id=tenant.id, role="admin", is_active=False)
        assert not can_author(caller, TenantScope(tenant.id))
        assert not can_access(caller, TenantScope(tenant.id))

    def test_require_scope_admin_raises(self, tenant_staff, tenant):
        with pytest.raises(ForbiddenError):
            require_scope_admin(tenant_staff, TenantScope(tenant.id))


class TestAccessMatrix:
    def test_member_accesses_own_tenant_and_global(self, tenant_staff, tenant):
        assert can_access(tenant_staff, TenantScope(tenant.id))
        assert can_access(tenant_staff, GLOBAL)

    def test_member_cannot_access_other_tenant(self, tenant_staff, other_tenant):
        assert not can_access(tenant_staff, TenantScope(other_tenant.id))
        with pytest.raises(ForbiddenError):
            require_scope_access(tenant_staff, TenantScope(other_tenant.id))

    def test_superuser_accesses_any_tenant(self, superuser, other_tenant):
        assert can_access(superuser, TenantScope(other_tenant.id))


class TestLoadCaller:
    def test_resolves_user(self, tenant_admin, tenant):
        caller = load_caller(str(tenant_admin.user_id))
        assert caller == tenant_admin
        assert caller.is_tenant_admin(tenant.id)

    @pytest.mark.parametrize("raw", [None, "", "x", "99999"])
    def test_unknown_ids(self, raw):
        assert load_caller(raw) is None


# ═════════════════════════════════════════════════════════════════════════
# Scoped lookups
# ═════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def two_templates(tenant, other_tenant):
    mine = WorkflowTemplate(tenant_id=tenant.id, name="Mine", version=1)
    theirs = WorkflowTemplate(tenant_id=other_tenant.id, name="Theirs", version=1)
    shared = WorkflowTemplate(tenant_id=None, name="Shared", version=1)
    db.session.add_all([mine, theirs, shared])
    db.session.flush()
    node = WorkflowNode(template_id=mine.id, node_type="END", title="Done", sort_order=1, badges=[])
    db.session.add(node)
    db.session.commit()
    return mine, theirs, shared, node


class TestScopedQueries:
    def test_get_scoped_requires_a_scope(self, two_templates):
        _, _, _, node = two_templates
        with pytest.raises(ValueError):
            get_scoped(WorkflowNode, node.id)

    def test_get_scoped_rejects_unknown_column(self, two_templates):
        _, _, _, node = two_templates
        with pytest.raises(ValueError):
            get_scoped(WorkflowNode, node.id, instance_id=1)

    def test_get_scoped_other_parent_is_not_found(self, two_templates):
        mine, theirs, _, node = two_templates
        assert get_scoped(WorkflowNode, node.id, template_id=mine.id).id == node.id
        with pytest.raises(NotFoundError):
            get_scoped(WorkflowNode, node.id, template_id=theirs.id)
        assert get_scoped_or_none(WorkflowNode, node.id, template_id=theirs.id) is None

    def test_get_in_scope_is_exact(self, two_templates, tenant):
        mine, theirs, shared, _ = two_templates
        scope = TenantScope(tenant.id)
        assert get_in_scope(WorkflowTemplate, mine.id, scope).id == mine.id
        with pytest.raises(NotFoundError):
            get_in_scope(WorkflowTemplate, theirs.id, scope)
        # global rows are not part of a tenant's own scope
        with pytest.raises(NotFoundError):
            get_in_scope(WorkflowTemplate, shared.id, scope)
        assert get_in_scope(WorkflowTemplate, shared.id, GLOBAL).id == shared.id
