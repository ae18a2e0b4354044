import logging
import os

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from race_engine.config import Config
from race_engine.db import close_db, init_db
from race_engine.db_migrations import register_db_cli
from race_engine.observability import (
    configure_json_logging,
    ensure_request_id,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
    race_health,
)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_tenant(app)
    _register_services(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _maybe_init_schema(app)

    _register_sweeper(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _log_domain_event(event) -> None:
    logging.getLogger("race_engine.events").info("domain_event", extra=event.to_payload())


def _register_services(app: Flask) -> None:
    from race_engine.application.race_service import RaceService
    from race_engine.core.event_bus import DomainEvent, get_event_bus

    event_bus = get_event_bus()
    event_bus.subscribe(DomainEvent, _log_domain_event)
    app.extensions["event_bus"] = event_bus
    app.extensions["race_service"] = RaceService(clock=app.config.get("RACE_CLOCK"), event_bus=event_bus)


def _register_blueprints(app: Flask) -> None:
    from race_engine.routes.race_routes import race_bp

    app.register_blueprint(race_bp)


def _register_sweeper(app: Flask) -> None:
    from race_engine.sweeper import start_race_sweeper

    start_race_sweeper(app)


def _register_error_handlers(app: Flask) -> None:
    from race_engine.errors import AppError, SystemError

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        return observe_response(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_tenant(app: Flask) -> None:
    from race_engine.tenant import DEFAULT_TENANT_ID, TENANT_HEADER

    @app.before_request
    def load_tenant() -> None:
        header_tenant = (request.headers.get(TENANT_HEADER) or "").strip()
        g.tenant_id = header_tenant or DEFAULT_TENANT_ID


def _register_health(app: Flask) -> None:
    @app.route("/health")
    def health():
        from race_engine.db import get_read_db

        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        sweeper = app.extensions.get("race_sweeper")
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "sweeper": {
                "running": sweeper is not None,
                "interval_seconds": sweeper.interval_seconds if sweeper is not None else None,
            },
            "metrics": metrics_snapshot(),
        }
        try:
            payload["races"] = race_health(get_read_db(), now=_race_now(app))
            payload["status"] = payload["races"]["status"]
        except Exception:  # noqa: BLE001
            app.logger.exception("health_race_state_failed")
            payload["status"] = "degraded"
            payload["races"] = {"status": "unknown", "by_status": {}, "overdue_holds": 0}
        return payload, 200

    @app.route("/metrics")
    def metrics():
        from race_engine.db import get_read_db

        race_state = None
        try:
            race_state = race_health(get_read_db(), now=_race_now(app))
        except Exception:  # noqa: BLE001
            app.logger.exception("metrics_race_state_failed")
        body = prometheus_metrics_text(race_state=race_state)
        return app.response_class(body, mimetype="text/plain; version=0.0.4")


def _race_now(app: Flask):
    service = app.extensions.get("race_service")
    return service.clock.now() if service is not None else None
