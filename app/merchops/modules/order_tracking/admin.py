from __future__ import annotations

import io
import secrets
from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.merchops.db import db_session
from app.merchops.modules.order_tracking.exceptions import (
    AuthError,
    ConfigurationError,
    OrderTrackingError,
    UpstreamError,
)
from app.merchops.modules.order_tracking.export import orders_csv, orders_pdf
from app.merchops.modules.order_tracking.models import OrderNotification, OrderPipelineRun
from app.merchops.modules.order_tracking.service import get_pipeline
from app.merchops.security import require_dashboard_token

bp = Blueprint("order_tracking", __name__, url_prefix="/admin/orders")

NO_INDEX_HEADERS = {"X-Robots-Tag": "noindex, nofollow", "Cache-Control": "no-store"}


def _actor() -> str:
    return getattr(g, "actor_label", None) or "dashboard"


def _error_status(e: OrderTrackingError) -> int:
    if isinstance(e, (AuthError, UpstreamError)):
        return 502
    return 500


def _json(payload, status: int = 200):
    return jsonify(payload), status, NO_INDEX_HEADERS


def _int_arg(name: str, default: int, *, lo: int = 1, hi: int = 500) -> int:
    try:
        v = int(request.args.get(name, default))
    except (TypeError, ValueError):
        v = default
    return max(lo, min(hi, v))


@bp.errorhandler(OrderTrackingError)
def _order_tracking_error(e: OrderTrackingError):
    status = _error_status(e)
    if isinstance(e, ConfigurationError):
        current_app.logger.error("Order tracking misconfigured: %s", e)
    else:
        current_app.logger.warning("Order tracking request failed (%s): %s", e.__class__.__name__, e)
    return _json({"error": str(e)}, status)


@bp.get("")
@require_dashboard_token
def list_orders():
    enriched = get_pipeline().list_enriched_orders(actor=_actor())
    body = {"orders": [e.to_dict() for e in enriched], "total": len(enriched)}
    if not enriched:
        body["warning"] = "No orders returned from the upstream API. Check server logs for details."
    return _json(body)


@bp.get("/status-counts")
@require_dashboard_token
def status_counts():
    notify = (request.args.get("notify") or "1").strip().lower() not in ("0", "false", "no")
    try:
        report = get_pipeline().status_counts(actor=_actor(), notify=notify)
    except OrderTrackingError as e:
        current_app.logger.warning("Status counts failed (%s): %s", e.__class__.__name__, e)
        return _json({"error": str(e), "statusCounts": [], "ordersByStatus": {}}, _error_status(e))
    return _json(report.to_dict())


@bp.get("/delivery-status/<order_id>")
@require_dashboard_token
def delivery_status(order_id: str):
    order_id = (order_id or "").strip()
    if not order_id:
        return _json({"error": "Order ID is required"}, 400)
    return _json(get_pipeline().delivery_detail(order_id))


@bp.get("/export.csv")
@require_dashboard_token
def export_csv():
    enriched = get_pipeline().list_enriched_orders(actor=_actor(), kind="export")
    filename = f"orders_export_{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(orders_csv(enriched)),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/export.pdf")
@require_dashboard_token
def export_pdf():
    enriched = get_pipeline().list_enriched_orders(actor=_actor(), kind="export")
    now = datetime.utcnow()
    data = orders_pdf(enriched, generated_at=now, reference=getattr(g, "request_id", "") or "")
    return send_file(
        io.BytesIO(data),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"Orders-Report_{now.strftime('%Y-%m-%d')}.pdf",
        max_age=0,
    )


@bp.get("/oauth/authorize-url")
@require_dashboard_token
def oauth_authorize_url():
    state = (request.args.get("state") or "").strip() or secrets.token_urlsafe(16)
    url = get_pipeline().authorize_url(state)
    return _json({"authorizeUrl": url, "state": state})


@bp.post("/oauth/exchange-code")
@require_dashboard_token
def oauth_exchange_code():
    payload = request.get_json(silent=True) or {}
    code = (payload.get("code") or request.form.get("code") or "").strip()
    if not code:
        return _json({"error": "Authorization code is required"}, 400)
    return _json(get_pipeline().exchange_code(code))


@bp.get("/notifications")
@require_dashboard_token
def notifications():
    s = db_session()
    q = s.query(OrderNotification)
    day = (request.args.get("date") or "").strip()
    if day:
        q = q.filter(OrderNotification.notified_date == day)
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(OrderNotification.status == status)
    rows = q.order_by(OrderNotification.created_at.desc(), OrderNotification.id.desc()).limit(_int_arg("limit", 100)).all()
    return _json(
        {
            "notifications": [
                {
                    "orderId": r.order_id,
                    "notifiedDate": r.notified_date,
                    "stage": r.stage,
                    "statusDate": r.status_date,
                    "status": r.status,
                    "attempts": r.attempts,
                    "lastError": r.last_error,
                    "createdAt": r.created_at.isoformat() if r.created_at else None,
                    "sentAt": r.sent_at.isoformat() if r.sent_at else None,
                }
                for r in rows
            ]
        }
    )


@bp.get("/runs")
@require_dashboard_token
def runs():
    s = db_session()
    rows = (
        s.query(OrderPipelineRun)
        .order_by(OrderPipelineRun.ran_at.desc(), OrderPipelineRun.id.desc())
        .limit(_int_arg("limit", 50))
        .all()
    )
    return _json(
        {
            "runs": [
                {
                    "ranAt": r.ran_at.isoformat() if r.ran_at else None,
                    "kind": r.kind,
                    "ordersSeen": r.orders_seen,
                    "stuckCount": r.stuck_count,
                    "alertsSent": r.alerts_sent,
                    "alertsFailed": r.alerts_failed,
                    "durationSeconds": r.duration_seconds,
                    "message": r.message,
                }
                for r in rows
            ]
        }
    )
