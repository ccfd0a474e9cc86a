"""
Per-order delivery tracking.

resolve_delivery_status() is used in bulk by the status-counts view and never raises:
tracking is optional data and its absence must not fail a run. get_delivery_detail()
backs the single-order detail endpoint and does surface upstream failures.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from app.merchops.modules.order_tracking.exceptions import PartialFetchError, UpstreamError
from app.merchops.modules.order_tracking.parsers import format_order_id, parse_event_datetime, safe_text
from app.merchops.modules.order_tracking.stages import DeliveryStage, map_event_to_stage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResolution:
    stage: DeliveryStage | None
    is_delivered: bool
    status_date: str  # DD/MM/YYYY HH:mm:ss of the latest event, '' when unknown


EMPTY_RESOLUTION = DeliveryResolution(stage=None, is_delivered=False, status_date="")
DELIVERED_RESOLUTION = DeliveryResolution(stage=DeliveryStage.DELIVERED, is_delivered=True, status_date="")


def _no_tracking_detail() -> dict[str, Any]:
    return {"deliveryStatus": None, "deliveryStage": None, "statusDate": "", "podDetails": [], "waybills": []}


def normalize_waybills(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [w for w in data if isinstance(w, dict)]
    if isinstance(data, dict):
        return [data]
    return []


def _events(waybill: dict[str, Any]) -> list[dict[str, Any]]:
    events = waybill.get("events")
    return [e for e in events if isinstance(e, dict)] if isinstance(events, list) else []


def _pods(waybill: dict[str, Any]) -> list[Any]:
    pods = waybill.get("podDetails")
    return pods if isinstance(pods, list) else []


def has_delivered_signal(waybills: list[dict[str, Any]]) -> bool:
    """A 'delivered' event OR any proof-of-delivery record; the carrier fills them independently."""
    for w in waybills:
        if _pods(w):
            return True
        for e in _events(w):
            if "delivered" in safe_text(e.get("description")).lower():
                return True
    return False


def latest_event(waybills: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Most recent event across all waybills. Events with unparseable timestamps sort last."""
    events = [e for w in waybills for e in _events(w)]
    if not events:
        return None

    def sort_key(e: dict[str, Any]) -> tuple[int, datetime]:
        dt = parse_event_datetime(e.get("datetime"))
        return (1, dt) if dt is not None else (0, datetime.min)

    return max(events, key=sort_key)


def resolution_from_waybills(waybills: list[dict[str, Any]]) -> DeliveryResolution:
    if not waybills:
        return EMPTY_RESOLUTION
    if has_delivered_signal(waybills):
        return DELIVERED_RESOLUTION
    event = latest_event(waybills)
    if event is None:
        return EMPTY_RESOLUTION
    stage = map_event_to_stage(safe_text(event.get("description")))
    return DeliveryResolution(stage=stage, is_delivered=False, status_date=safe_text(event.get("datetime")))


async def _get_tracking(http: httpx.AsyncClient, order_id: str, token: str, base_url: str) -> httpx.Response:
    url = f"{base_url.rstrip('/')}/{format_order_id(order_id)}"
    return await http.get(url, headers={"Authorization": f"Bearer {token}", "Accept": "application/json"})


async def resolve_delivery_status(
    http: httpx.AsyncClient, order_id: str, token: str, *, base_url: str
) -> DeliveryResolution:
    try:
        resp = await _get_tracking(http, order_id, token, base_url)
        if resp.status_code == 404:
            return EMPTY_RESOLUTION
        if not resp.is_success:
            raise PartialFetchError(f"tracking returned HTTP {resp.status_code}", order_id=order_id)
        try:
            data = resp.json()
        except ValueError as e:
            raise PartialFetchError("tracking returned invalid JSON", order_id=order_id) from e
    except (httpx.HTTPError, PartialFetchError) as e:
        logger.warning("DELIVERY: order %s tracking unavailable: %s", order_id, e)
        return EMPTY_RESOLUTION
    return resolution_from_waybills(normalize_waybills(data))


async def get_delivery_detail(http: httpx.AsyncClient, order_id: str, token: str, *, base_url: str) -> dict[str, Any]:
    """Raw tracking detail for one order: latest status text, proof-of-delivery records and waybills."""
    try:
        resp = await _get_tracking(http, order_id, token, base_url)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to fetch delivery status: {e}") from e
    if resp.status_code == 404:
        return _no_tracking_detail()
    if not resp.is_success:
        raise UpstreamError(
            f"Failed to fetch delivery status: HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=resp.text[:1000],
        )
    try:
        waybills = normalize_waybills(resp.json())
    except ValueError as e:
        raise UpstreamError("Delivery status endpoint returned invalid JSON", status_code=resp.status_code) from e

    if not waybills:
        return _no_tracking_detail()

    pods = [p for w in waybills for p in _pods(w)]
    event = latest_event(waybills)
    if pods:
        status = DeliveryStage.DELIVERED.value
    else:
        status = safe_text(event.get("description")) if event else ""
        status = status or "N/A"
    resolution = resolution_from_waybills(waybills)
    return {
        "deliveryStatus": status,
        "deliveryStage": resolution.stage.value if resolution.stage else None,
        "statusDate": resolution.status_date,
        "podDetails": pods,
        "waybills": waybills,
    }
