import hmac
import uuid
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, g, jsonify, request

DASHBOARD_ACTOR = "dashboard"


def assign_request_id() -> None:
    """Per-request id for audit/log correlation."""
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex


def _api_error(status_code: int, message: str):
    return jsonify({"error": message}), status_code


def check_dashboard_token() -> Any:
    """None when the request carries the configured bearer token, else an error response."""
    expected = (current_app.config.get("DASHBOARD_TOKEN") or "").strip()
    if not expected:
        current_app.logger.error("DASHBOARD_TOKEN is not configured; refusing dashboard request")
        return _api_error(500, "DASHBOARD_TOKEN is not configured")

    authorization = (request.headers.get("Authorization") or "").strip()
    if not authorization.lower().startswith("bearer "):
        return _api_error(401, "Unauthorized")

    token = authorization[7:].strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        current_app.logger.warning("Rejected dashboard token (request_id=%s)", getattr(g, "request_id", None))
        return _api_error(401, "Unauthorized")
    return None


def require_dashboard_token(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        denied = check_dashboard_token()
        if denied is not None:
            return denied
        g.actor_label = DASHBOARD_ACTOR
        return fn(*args, **kwargs)

    return wrapped
