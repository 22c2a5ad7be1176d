import atexit
import os
import weakref

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from supplier_portal.config import Config
from supplier_portal.db_migrations import register_db_cli
from supplier_portal.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)


_LIVE_POOLS = weakref.WeakSet()


@atexit.register
def _close_live_pools() -> None:
    for pools in list(_LIVE_POOLS):
        pools.close_all()


def create_app(config_class=Config, *, tenancy_overrides: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_request_hooks(app)
    _register_error_handlers(app)
    _register_tenancy(app, tenancy_overrides or {})
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _register_tenancy(app: Flask, overrides: dict) -> None:
    from supplier_portal.contexts.tenancy.application.services import build_tenancy_services

    services = build_tenancy_services(app.config, **overrides)
    app.extensions["tenancy"] = services
    # Tenant pools live as long as the app; whatever is still open closes at exit.
    _LIVE_POOLS.add(services.pools)
    app.logger.info(
        "tenancy_ready",
        extra={
            "tenants": len(services.registry),
            "default_environment": services.registry.default_environment.value,
        },
    )


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Testes criam a base do portal sem depender de migration externa.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignorado fora de development.")
        return

    app.extensions["tenancy"].mappings.init_schema()


def _register_blueprints(app: Flask) -> None:
    from supplier_portal.contexts.tenancy.interfaces.cli import register_tenancy_cli
    from supplier_portal.contexts.tenancy.interfaces.http import tenancy_bp

    app.register_blueprint(tenancy_bp)
    register_tenancy_cli(app)


def _register_request_hooks(app: Flask) -> None:
    @app.before_request
    def _start_request() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _finish_request(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)


def _error_response(app: Flask, error, *, event: str = "application_error"):
    request_id = ensure_request_id()
    context = {
        "request_id": request_id,
        "error_code": error.code,
        "http_status": error.http_status,
        "message_key": error.message_key,
        "tenant_code": getattr(error, "tenant_code", None),
        "request_path": request.path,
        "http_method": request.method,
    }
    if error.critical:
        app.logger.error(event, extra={**context, "details": error.details}, exc_info=True)
    else:
        app.logger.warning(event, extra={**context, "details": error.details})
    return jsonify(error.to_response_payload(request_id)), error.http_status


def _register_error_handlers(app: Flask) -> None:
    from supplier_portal.errors import AppError, SystemError

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        return _error_response(app, exc)

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        # Werkzeug errors (404, 405) keep their own responses.
        if isinstance(exc, HTTPException):
            return exc
        wrapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        return _error_response(app, wrapped, event="unexpected_exception")


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        services = app.extensions["tenancy"]
        portal_url = str(app.config.get("PORTAL_DB_PATH") or "")
        backend = "postgres" if portal_url.startswith("postgres") else "sqlite"
        pools = services.pools.snapshot()
        open_circuits = sorted(code for code, state in pools["circuits"].items() if state.get("state") == "open")
        payload = {
            "status": "degraded" if open_circuits else "ok",
            "portal_db": backend,
            "env": os.environ.get("FLASK_ENV", "development"),
            "tenants": {
                "configured": len(services.registry),
                "environment": services.registry.default_environment.value,
                "open_connections": pools["open_connections"],
                "open_circuits": open_circuits,
            },
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        return payload, 200

    @app.route("/metrics")
    def metrics():
        circuits = app.extensions["tenancy"].pools.breakers.snapshot()
        return Response(
            prometheus_metrics_text(circuit_state=circuits),
            mimetype="text/plain; version=0.0.4",
        )
