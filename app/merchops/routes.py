from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """Liveness probe. No DB access."""
    return "ok", 200


@bp.get("/readyz")
def readyz():
    """
    Readiness probe: the database answers and the schema check at startup found
    every table the order pipeline needs.
    """
    missing = current_app.config.get("_schema_health_missing") or []
    try:
        with current_app.extensions["sqlalchemy_engine"].connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        current_app.logger.warning("Readiness check: database unavailable: %s", e)
        return jsonify({"ok": False, "database": "unavailable", "missing": missing}), 503
    if missing:
        return jsonify({"ok": False, "database": "ok", "missing": missing}), 503
    return jsonify({"ok": True, "database": "ok", "missing": []})
