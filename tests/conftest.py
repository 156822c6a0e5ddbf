"""
Shared pytest fixtures for the workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB + cache cleanup (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created Tenant rows
    - superuser / tenant_admin / tenant_staff / other_admin: Callers backed by real users
    - build_template: Factory that authors a template graph through the services
"""

from types import SimpleNamespace

import pytest

from signposting import create_app
from signposting.models import db as _db
from signposting.models.auth import Tenant, User
from signposting.models.scope import TenantScope
from signposting.services import approval_lifecycle, cache_service
from signposting.services import graph_mutation_service as mutations
from signposting.services.permission_service import Caller


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused once tables are recreated; cached effective lists
        # from a previous test would otherwise leak in
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Tenants & callers ────────────────────────────────────────────────────


def _tenant(name, slug) -> Tenant:
    t = Tenant(name=name, slug=slug)
    _db.session.add(t)
    _db.session.commit()
    return t


def _user(email, *, tenant_id=None, role="staff", is_superuser=False, status="active") -> User:
    u = User(
        tenant_id=tenant_id, email=email, full_name=email.split("@")[0],
        role=role, is_superuser=is_superuser, status=status,
    )
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def tenant():
    return _tenant("Riverside Surgery", "riverside")


@pytest.fixture()
def other_tenant():
    return _tenant("Hillview Practice", "hillview")


@pytest.fixture()
def superuser():
    return Caller.from_user(_user("platform@example.org", is_superuser=True))


@pytest.fixture()
def tenant_admin(tenant):
    return Caller.from_user(_user("manager@riverside.example", tenant_id=tenant.id, role="admin"))


@pytest.fixture()
def tenant_staff(tenant):
    return Caller.from_user(_user("reception@riverside.example", tenant_id=tenant.id))


@pytest.fixture()
def other_admin(other_tenant):
    return Caller.from_user(_user("manager@hillview.example", tenant_id=other_tenant.id, role="admin"))


@pytest.fixture()
def tenant_scope(tenant):
    return TenantScope(tenant.id)


# ── Graph factory ────────────────────────────────────────────────────────


@pytest.fixture()
def build_template():
    """Author a template through the mutation services.

    Usage:
        t = build_template(caller, scope, "Letters",
                           nodes=[("q", {"node_type": "QUESTION"}), ("end", {"node_type": "END"})],
                           edges=[("q", "Yes", "end")],
                           approve=True)
        t.id, t.nodes["q"], t.edges[("q", "Yes")], t.version
    """

    def _build(caller, scope, name, *, nodes=(), edges=(), approve=False, data=None):
        template = mutations.create_template(caller, scope, {"name": name, **(data or {})})
        version = template.version
        node_ids = {}
        for key, node_data in nodes:
            node = mutations.create_node(caller, scope, template.id, node_data, expected_version=version)
            node_ids[key] = node.id
            version += 1
        edge_ids = {}
        for source, label, target in edges:
            option = mutations.create_answer_option(
                caller, scope, template.id, node_ids[source],
                {"label": label, "target_node_id": node_ids[target] if target else None},
                expected_version=version,
            )
            edge_ids[(source, label)] = option.id
            version += 1
        if approve:
            approval_lifecycle.submit_for_review(caller, scope, template.id, expected_version=version)
            approval_lifecycle.approve(caller, scope, template.id, expected_version=version + 1)
            version += 2
        return SimpleNamespace(id=template.id, scope=scope, nodes=node_ids, edges=edge_ids, version=version)

    return _build
