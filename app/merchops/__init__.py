import logging
import os

from flask import Flask, g, jsonify
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.merchops.config import load_config
from app.merchops.db import init_db, teardown_db_session
from app.merchops.routes import bp as routes_bp
from app.merchops.security import assign_request_id
from app.merchops.modules.order_tracking.admin import bp as order_tracking_bp

# Register every table on Base.metadata (create_all, alembic autogenerate).
from app.merchops.modules.order_tracking import models as _order_tracking_models  # noqa: F401

REQUIRED_TABLES = (
    "api_tokens",
    "quote_docs",
    "invoice_docs",
    "order_notification_log",
    "order_pipeline_runs",
    "audit_events",
)


def _configure_logging(app: Flask) -> None:
    level_name = (os.environ.get("LOG_LEVEL") or ("DEBUG" if app.debug else "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.merchops").setLevel(level)
    # httpx logs every request line at INFO, including URLs with order ids
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    _configure_logging(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("DASHBOARD_TOKEN"):
            raise RuntimeError("DASHBOARD_TOKEN must be set in production.")

    if not app.config.get("BARRON_CLIENT_ID") or not app.config.get("BARRON_CLIENT_SECRET"):
        app.logger.warning("BARRON_CLIENT_ID/BARRON_CLIENT_SECRET not set; order endpoints will return 500 until configured.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.before_request(assign_request_id)
    app.teardown_appcontext(teardown_db_session)

    app.register_blueprint(routes_bp)
    app.register_blueprint(order_tracking_bp)

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is None:
                raise RuntimeError("sqlalchemy_engine not initialized")
            insp = sa_inspect(engine)
            missing = [t for t in REQUIRED_TABLES if not insp.has_table(t)]
            if insp.has_table("api_tokens"):
                cols = {c["name"] for c in insp.get_columns("api_tokens")}
                missing += [f"api_tokens.{c}" for c in ("lock_owner", "locked_until") if c not in cols]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing and env not in ("test",):
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": e.description or e.name}), e.code or 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "Internal server error", "requestId": rid}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
