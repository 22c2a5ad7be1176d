from __future__ import annotations

from flask import Blueprint, jsonify, request

from supplier_portal.contexts.tenancy.application.identity_search import validate_tax_id
from supplier_portal.contexts.tenancy.application.services import get_tenancy_services
from supplier_portal.contexts.tenancy.domain.registry import Environment
from supplier_portal.errors import NotMappedError, PartialDiscoveryFailure, ValidationError
from supplier_portal.ui_strings import environment_label, error_message, success_message, sync_status_payload


tenancy_bp = Blueprint("tenancy", __name__)


def _parse_environment(raw: str | None) -> Environment | None:
    value = str(raw or "").strip()
    if not value:
        return None
    try:
        return Environment.parse(value)
    except ValueError as exc:
        raise ValidationError(code="environment_invalid", message_key="environment_invalid", details=str(exc)) from exc


def _required_user_id(raw: object | None) -> str:
    user_id = str(raw or "").strip()
    if not user_id:
        raise ValidationError(code="user_id_required", message_key="user_id_required")
    return user_id


def _tenant_payload(descriptor) -> dict:
    payload = descriptor.to_dict()
    payload["environment_label"] = environment_label(descriptor.environment.value)
    return payload


@tenancy_bp.route("/api/tenants", methods=["GET"])
def list_tenants():
    services = get_tenancy_services()
    environment = _parse_environment(request.args.get("environment"))
    items = [_tenant_payload(item) for item in services.registry.list_all(environment)]
    return jsonify({"items": items, "default_environment": services.registry.default_environment.value})


@tenancy_bp.route("/api/tenants/connections", methods=["GET"])
def tenant_connections():
    return jsonify(get_tenancy_services().pools.snapshot())


@tenancy_bp.route("/api/tenants/search", methods=["GET"])
def search_tenants():
    tax_id = validate_tax_id(request.args.get("tax_id"))
    environment = _parse_environment(request.args.get("environment"))
    outcome = get_tenancy_services().search.search(tax_id, environment=environment)
    payload = outcome.to_dict()
    if not outcome.matches and not outcome.per_tenant_errors:
        payload["message"] = error_message("supplier_not_found")
    return jsonify(payload)


@tenancy_bp.route("/api/tenants/sync", methods=["POST"])
def sync_tenants():
    data = request.get_json(silent=True) or {}
    user_id = _required_user_id(data.get("user_id"))
    tax_id = validate_tax_id(data.get("tax_id"))

    result = get_tenancy_services().sync.sync(user_id, tax_id)
    if result.all_failed:
        raise PartialDiscoveryFailure(result.per_tenant_errors, probed_tenants=result.probed_tenants)

    payload = result.to_dict()
    payload["status_info"] = sync_status_payload(result.status)
    if result.partial_failure:
        payload["message"] = success_message("sync_partial")
    elif result.matches_found == 0:
        payload["message"] = error_message("supplier_not_found")
    else:
        payload["message"] = success_message("sync_completed")
    return jsonify(payload), 200


@tenancy_bp.route("/api/tenants/<string:reference>", methods=["GET"])
def describe_tenant(reference: str):
    registry = get_tenancy_services().registry
    descriptor = registry.resolve_reference(
        reference,
        database_name=(request.args.get("database_name") or "").strip() or None,
        environment=_parse_environment(request.args.get("environment")),
    )
    return jsonify(_tenant_payload(descriptor))


@tenancy_bp.route("/api/users/<string:user_id>/tenants", methods=["GET"])
def user_tenants(user_id: str):
    services = get_tenancy_services()
    items = []
    for descriptor, supplier_code in services.resolver.available_tenants(user_id):
        item = _tenant_payload(descriptor)
        item["internal_supplier_code"] = supplier_code
        items.append(item)
    return jsonify({"portal_user_id": user_id, "items": items})


@tenancy_bp.route("/api/users/<string:user_id>/tenants/<string:tenant_code>", methods=["DELETE"])
def deactivate_user_tenant(user_id: str, tenant_code: str):
    services = get_tenancy_services()
    descriptor = services.registry.describe(tenant_code)
    if not services.mappings.deactivate(user_id, descriptor.code):
        raise NotMappedError(user_id, descriptor.code)
    return jsonify(
        {
            "portal_user_id": user_id,
            "tenant_code": descriptor.code,
            "active": False,
            "message": success_message("mapping_deactivated"),
        }
    )


@tenancy_bp.route("/api/session/context", methods=["GET"])
def session_context():
    user_id = _required_user_id(request.headers.get("X-Portal-User-Id"))
    tenant_code = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_code:
        raise ValidationError(code="tenant_required", message_key="tenant_required")
    context = get_tenancy_services().resolver.resolve(user_id, tenant_code)
    return jsonify(context.to_dict())
