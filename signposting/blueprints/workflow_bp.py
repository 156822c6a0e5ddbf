"""
Workflow Blueprint — authoring and runtime endpoints.

Authoring routes are scoped under /api/v1/workflow/scopes/<scope>/...
where <scope> is "global" or a tenant id. Runtime routes are scoped under
/api/v1/workflow/tenants/<tenant_id>/...

Endpoints (authoring):
    GET    /scopes/<scope>/templates                          list
    POST   /scopes/<scope>/templates                          create
    GET    /scopes/<scope>/templates/<tid>                    template + graph
    PUT    /scopes/<scope>/templates/<tid>                    metadata
    DELETE /scopes/<scope>/templates/<tid>?version=N          delete
    POST   /scopes/<scope>/templates/<tid>/nodes              create node
    PUT    /scopes/<scope>/templates/<tid>/nodes/<nid>        update node
    DELETE /scopes/<scope>/templates/<tid>/nodes/<nid>        delete node
    POST   /scopes/<scope>/templates/<tid>/nodes/<nid>/answer-options
    PUT    /scopes/<scope>/templates/<tid>/answer-options/<oid>
    DELETE /scopes/<scope>/templates/<tid>/answer-options/<oid>
    POST   /scopes/<scope>/templates/<tid>/nodes/<nid>/links
    DELETE /scopes/<scope>/templates/<tid>/links/<lid>
    PUT    /scopes/<scope>/templates/<tid>/positions          bulk reposition
    PUT    /scopes/<scope>/templates/<tid>/style-defaults/<node_type>
    DELETE /scopes/<scope>/templates/<tid>/style-defaults     reset (?node_type=)
    POST   /scopes/<scope>/templates/<tid>/style-defaults/copy
    POST   /scopes/<scope>/templates/<tid>/submit | approve | request-changes | reopen
    POST   /scopes/<scope>/templates/<tid>/clone

Endpoints (runtime):
    GET    /tenants/<tenant_id>/effective-templates
    POST   /tenants/<tenant_id>/overrides
    POST   /tenants/<tenant_id>/instances
    GET    /tenants/<tenant_id>/instances
    GET    /tenants/<tenant_id>/instances/<iid>
    GET    /tenants/<tenant_id>/instances/<iid>/choices
    POST   /tenants/<tenant_id>/instances/<iid>/advance
    POST   /tenants/<tenant_id>/instances/<iid>/abandon

Every authoring mutation takes the template ``version`` the client last saw.

Layer contract:
    - Blueprint: parse input, resolve scope and caller, call service, return JSON.
    - NO db.session calls here; all writes owned by the services.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from signposting.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from signposting.models.scope import GLOBAL, TenantScope, parse_scope
from signposting.services import (
    approval_lifecycle,
    graph_mutation_service as mutations,
    graph_store,
    instance_engine,
)
from signposting.services.permission_service import require_scope_access
from signposting.utils.errors import E, api_error

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")


# ── Error handlers ─────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    logger.debug("Not found: %s", error)
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@workflow_bp.errorhandler(ForbiddenError)
def _handle_forbidden(error: ForbiddenError):
    return api_error(E.FORBIDDEN, str(error))


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@workflow_bp.errorhandler(InvalidStateError)
def _handle_invalid_state(error: InvalidStateError):
    return api_error(
        E.CONFLICT_STATE, str(error),
        details={"current_status": error.current_status} if error.current_status else None,
    )


@workflow_bp.errorhandler(VersionConflictError)
def _handle_version_conflict(error: VersionConflictError):
    return api_error(
        E.CONFLICT_VERSION, str(error),
        details={"expected": error.expected, "current_version": error.actual},
    )


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error), details={"field": error.field})


# ── Helpers ────────────────────────────────────────────────────────────────────


def _scope(raw):
    if raw == current_app.config.get("WORKFLOW_GLOBAL_SCOPE_LABEL", "global"):
        return GLOBAL
    try:
        return parse_scope(raw)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"scope": raw})


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _id_field(data: dict, key: str) -> int:
    raw = data.get(key)
    if raw is None:
        raise ValidationError(f"{key} is required", details={key: "required"})
    if isinstance(raw, bool):
        raise ValidationError(f"{key} must be an integer", details={key: "invalid"})
    try:
        return int(raw)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError(f"{key} must be an integer", details={key: "invalid"})


def _version(data: dict | None = None):
    data = data if data is not None else _body()
    version = data.get("version")
    if version is None:
        version = request.args.get("version")
    return version


def _flag(name: str) -> bool:
    return request.args.get(name, "false").lower() in ("1", "true", "yes")


def _with_version(key, entity, template_version):
    return {key: entity, "template_version": template_version}


# ═════════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/scopes/<scope>/templates", methods=["GET"])
def list_templates(scope):
    scope = _scope(scope)
    require_scope_access(g.caller, scope)
    templates = graph_store.list_templates(scope, active_only=_flag("active_only"))
    return jsonify({"items": [t.to_dict() for t in templates], "total": len(templates)}), 200


@workflow_bp.route("/scopes/<scope>/templates", methods=["POST"])
def create_template(scope):
    template = mutations.create_template(g.caller, _scope(scope), _body())
    return jsonify(template.to_dict()), 201


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>", methods=["GET"])
def get_template(scope, template_id):
    scope = _scope(scope)
    require_scope_access(g.caller, scope)
    return jsonify(graph_store.get_template_graph(template_id, scope)), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>", methods=["PUT"])
def update_template(scope, template_id):
    data = _body()
    template = mutations.update_template(
        g.caller, _scope(scope), template_id, data, expected_version=_version(data),
    )
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>", methods=["DELETE"])
def delete_template(scope, template_id):
    mutations.delete_template(g.caller, _scope(scope), template_id, expected_version=_version())
    return "", 204


# ── Nodes ──────────────────────────────────────────────────────────────────────


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/nodes", methods=["POST"])
def create_node(scope, template_id):
    data = _body()
    node = mutations.create_node(g.caller, _scope(scope), template_id, data, expected_version=_version(data))
    return jsonify(_with_version("node", node.to_dict(), node.template.version)), 201


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/nodes/<int:node_id>", methods=["PUT"])
def update_node(scope, template_id, node_id):
    data = _body()
    node = mutations.update_node(
        g.caller, _scope(scope), template_id, node_id, data, expected_version=_version(data),
    )
    return jsonify(_with_version("node", node.to_dict(), node.template.version)), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/nodes/<int:node_id>", methods=["DELETE"])
def delete_node(scope, template_id, node_id):
    template = mutations.delete_node(
        g.caller, _scope(scope), template_id, node_id, expected_version=_version(),
    )
    return jsonify({"template_version": template.version}), 200


# ── Answer options ─────────────────────────────────────────────────────────────


@workflow_bp.route(
    "/scopes/<scope>/templates/<int:template_id>/nodes/<int:node_id>/answer-options",
    methods=["POST"],
)
def create_answer_option(scope, template_id, node_id):
    data = _body()
    option = mutations.create_answer_option(
        g.caller, _scope(scope), template_id, node_id, data, expected_version=_version(data),
    )
    return jsonify(_with_version("answer_option", option.to_dict(), option.source_node.template.version)), 201


@workflow_bp.route(
    "/scopes/<scope>/templates/<int:template_id>/answer-options/<int:option_id>",
    methods=["PUT"],
)
def update_answer_option(scope, template_id, option_id):
    data = _body()
    option = mutations.update_answer_option(
        g.caller, _scope(scope), template_id, option_id, data, expected_version=_version(data),
    )
    return jsonify(_with_version("answer_option", option.to_dict(), option.source_node.template.version)), 200


@workflow_bp.route(
    "/scopes/<scope>/templates/<int:template_id>/answer-options/<int:option_id>",
    methods=["DELETE"],
)
def delete_answer_option(scope, template_id, option_id):
    template = mutations.delete_answer_option(
        g.caller, _scope(scope), template_id, option_id, expected_version=_version(),
    )
    return jsonify({"template_version": template.version}), 200


# ── Links ──────────────────────────────────────────────────────────────────────


@workflow_bp.route(
    "/scopes/<scope>/templates/<int:template_id>/nodes/<int:node_id>/links",
    methods=["POST"],
)
def create_node_link(scope, template_id, node_id):
    data = _body()
    link = mutations.create_node_link(
        g.caller, _scope(scope), template_id, node_id, data, expected_version=_version(data),
    )
    return jsonify(_with_version("link", link.to_dict(), link.source_node.template.version)), 201


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/links/<int:link_id>", methods=["DELETE"])
def delete_node_link(scope, template_id, link_id):
    template = mutations.delete_node_link(
        g.caller, _scope(scope), template_id, link_id, expected_version=_version(),
    )
    return jsonify({"template_version": template.version}), 200


# ── Layout & style defaults ────────────────────────────────────────────────────


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/positions", methods=["PUT"])
def bulk_reposition(scope, template_id):
    data = _body()
    template = mutations.bulk_reposition(
        g.caller, _scope(scope), template_id, data.get("positions"), expected_version=_version(data),
    )
    return jsonify({"template_version": template.version, "updated": len(data["positions"])}), 200


@workflow_bp.route(
    "/scopes/<scope>/templates/<int:template_id>/style-defaults/<node_type>",
    methods=["PUT"],
)
def upsert_style_default(scope, template_id, node_type):
    data = _body()
    scope = _scope(scope)
    row = mutations.upsert_style_default(
        g.caller, scope, template_id, node_type.upper(), data, expected_version=_version(data),
    )
    template = graph_store.get_template(template_id, scope, with_graph=False)
    return jsonify(_with_version("style_default", row.to_dict() if row else None, template.version)), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/style-defaults", methods=["DELETE"])
def reset_style_defaults(scope, template_id):
    node_type = request.args.get("node_type")
    template = mutations.reset_style_defaults(
        g.caller, _scope(scope), template_id, node_type.upper() if node_type else None,
        expected_version=_version(),
    )
    return jsonify({"template_version": template.version}), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/style-defaults/copy", methods=["POST"])
def copy_style_defaults(scope, template_id):
    data = _body()
    scope = _scope(scope)
    if data.get("source_template_id") is None:
        raise ValidationError("source_template_id is required", details={"source_template_id": "required"})
    rows = mutations.copy_style_defaults(
        g.caller, scope, template_id, data["source_template_id"],
        overwrite=bool(data.get("overwrite", False)), expected_version=_version(data),
    )
    template = graph_store.get_template(template_id, scope, with_graph=False)
    return jsonify(_with_version("style_defaults", [r.to_dict() for r in rows], template.version)), 200


# ═════════════════════════════════════════════════════════════════════════════
# Approval lifecycle & cloning
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/submit", methods=["POST"])
def submit_for_review(scope, template_id):
    template = approval_lifecycle.submit_for_review(
        g.caller, _scope(scope), template_id, expected_version=_version(),
    )
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/approve", methods=["POST"])
def approve(scope, template_id):
    template = approval_lifecycle.approve(g.caller, _scope(scope), template_id, expected_version=_version())
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/request-changes", methods=["POST"])
def request_changes(scope, template_id):
    data = _body()
    template = approval_lifecycle.request_changes(
        g.caller, _scope(scope), template_id, data.get("note"), expected_version=_version(data),
    )
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/reopen", methods=["POST"])
def reopen_for_editing(scope, template_id):
    template = approval_lifecycle.reopen_for_editing(
        g.caller, _scope(scope), template_id, expected_version=_version(),
    )
    return jsonify(template.to_dict()), 200


@workflow_bp.route("/scopes/<scope>/templates/<int:template_id>/clone", methods=["POST"])
def clone_template(scope, template_id):
    data = _body()
    if data.get("destination_scope") is None:
        raise ValidationError("destination_scope is required", details={"destination_scope": "required"})
    clone = approval_lifecycle.clone_template(
        g.caller, template_id, _scope(scope), _scope(str(data["destination_scope"])),
        name=data.get("name"),
    )
    return jsonify(clone.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════════
# Tenant runtime
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/tenants/<int:tenant_id>/effective-templates", methods=["GET"])
def effective_templates(tenant_id):
    require_scope_access(g.caller, TenantScope(tenant_id))
    items = graph_store.list_effective_templates(
        tenant_id,
        include_drafts=_flag("include_drafts"),
        include_inactive=_flag("include_inactive"),
    )
    return jsonify({"items": items, "total": len(items)}), 200


@workflow_bp.route("/tenants/<int:tenant_id>/overrides", methods=["POST"])
def create_override(tenant_id):
    global_template_id = _id_field(_body(), "global_template_id")
    template, created = approval_lifecycle.create_override(g.caller, tenant_id, global_template_id)
    return jsonify({"template": template.to_dict(), "created": created}), 201 if created else 200


@workflow_bp.route("/tenants/<int:tenant_id>/instances", methods=["POST"])
def start_instance(tenant_id):
    data = _body()
    instance = instance_engine.start(
        g.caller, tenant_id, _id_field(data, "template_id"),
        reference=data.get("reference"), category=data.get("category"),
    )
    return jsonify(instance.to_dict(include_history=True)), 201


@workflow_bp.route("/tenants/<int:tenant_id>/instances", methods=["GET"])
def list_instances(tenant_id):
    instances = instance_engine.list_instances(
        g.caller, tenant_id,
        status=request.args.get("status"),
        template_id=request.args.get("template_id", type=int),
    )
    return jsonify({"items": [i.to_dict() for i in instances], "total": len(instances)}), 200


@workflow_bp.route("/tenants/<int:tenant_id>/instances/<int:instance_id>", methods=["GET"])
def get_instance(tenant_id, instance_id):
    instance = instance_engine.get_instance(g.caller, tenant_id, instance_id)
    return jsonify(instance.to_dict(include_history=True)), 200


@workflow_bp.route("/tenants/<int:tenant_id>/instances/<int:instance_id>/choices", methods=["GET"])
def get_choices(tenant_id, instance_id):
    choices = instance_engine.get_available_choices(g.caller, tenant_id, instance_id)
    return jsonify({"items": choices}), 200


@workflow_bp.route("/tenants/<int:tenant_id>/instances/<int:instance_id>/advance", methods=["POST"])
def advance_instance(tenant_id, instance_id):
    data = _body()
    if data.get("choice_id") is None:
        raise ValidationError("choice_id is required", details={"choice_id": "required"})
    instance = instance_engine.advance(
        g.caller, tenant_id, instance_id, data["choice_id"], expected_version=data.get("version"),
    )
    return jsonify(instance.to_dict(include_history=True)), 200


@workflow_bp.route("/tenants/<int:tenant_id>/instances/<int:instance_id>/abandon", methods=["POST"])
def abandon_instance(tenant_id, instance_id):
    data = _body()
    instance = instance_engine.abandon(g.caller, tenant_id, instance_id, expected_version=data.get("version"))
    return jsonify(instance.to_dict()), 200
