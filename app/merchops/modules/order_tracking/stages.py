"""
Canonical delivery stages and the text rules that map carrier events onto them.

Carrier event text (tracking endpoint)     | Stage
-------------------------------------------|---------------------------
"scan at in-house"                         | Accepted into network
"created waybill"                          | Tracking created
"scan into branch"                         | Received at origin branch
"in-house-veh scan"                        | Loaded onto vehicle
"out on line haul"                         | Line haul in transit
"received in branch"                       | Arrived at branch (hub)
"out on delivery"                          | Out for delivery
"delivered"                                | Delivered

Rules are checked in order and the first match wins. Orders with no tracking
events use the coarser ORDER_STATUS_RULES against the upstream order status.
"""
from __future__ import annotations

from enum import Enum


class DeliveryStage(str, Enum):
    ACCEPTED = "Accepted into network"
    TRACKING_CREATED = "Tracking created"
    AT_ORIGIN_BRANCH = "Received at origin branch"
    LOADED = "Loaded onto vehicle"
    LINE_HAUL = "Line haul in transit"
    AT_HUB = "Arrived at branch (hub)"
    OUT_FOR_DELIVERY = "Out for delivery"
    DELIVERED = "Delivered"

    @property
    def is_terminal(self) -> bool:
        return self is DeliveryStage.DELIVERED


# Display order for the status-counts view
STAGE_ORDER: tuple[DeliveryStage, ...] = tuple(DeliveryStage)

EVENT_STAGE_RULES: tuple[tuple[str, DeliveryStage], ...] = (
    ("scan at in-house", DeliveryStage.ACCEPTED),
    ("created waybill", DeliveryStage.TRACKING_CREATED),
    ("scan into branch", DeliveryStage.AT_ORIGIN_BRANCH),
    ("in-house-veh scan", DeliveryStage.LOADED),
    ("out on line haul", DeliveryStage.LINE_HAUL),
    ("received in branch", DeliveryStage.AT_HUB),
    ("out on delivery", DeliveryStage.OUT_FOR_DELIVERY),
    ("delivered", DeliveryStage.DELIVERED),
)

# (substrings, exact values, stage)
ORDER_STATUS_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...], DeliveryStage], ...] = (
    (("order received",), ("pending", "placing"), DeliveryStage.ACCEPTED),
    (("confirmed",), (), DeliveryStage.TRACKING_CREATED),
    (("production", "picking", "packing"), (), DeliveryStage.LOADED),
    (("ready for collection", "ready for delivery"), (), DeliveryStage.OUT_FOR_DELIVERY),
    (("transit",), (), DeliveryStage.LINE_HAUL),
    (("delivered", "collected"), (), DeliveryStage.DELIVERED),
)


def map_event_to_stage(description: str | None) -> DeliveryStage | None:
    text = (description or "").lower()
    if not text:
        return None
    for needle, stage in EVENT_STAGE_RULES:
        if needle in text:
            return stage
    return None


def map_order_status_to_stage(status: str | None) -> DeliveryStage | None:
    text = (status or "").strip().lower()
    if not text:
        return None
    for needles, exact, stage in ORDER_STATUS_RULES:
        if text in exact or any(n in text for n in needles):
            return stage
    return None
