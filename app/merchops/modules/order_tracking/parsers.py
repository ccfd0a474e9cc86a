from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

# Q20251028-E66816 style (quote builder) and ML-AB123 style (manual/legacy) references
QUOTE_Q_RX = re.compile(r"^(Q\d+-\w+)")
QUOTE_ML_RX = re.compile(r"^(ML-[A-Z0-9]+)")
REF_TRIM_CHARS = " \t\r\n*:"

EVENT_DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"
EVENT_DATE_FORMAT = "%d/%m/%Y"
# fromisoformat() on 3.10 only accepts 3 or 6 fractional digits
ISO_FRACTION_RX = re.compile(r"(:\d{2})\.(\d+)")

ORDER_ID_PREFIX = "BAR-SO"


def safe_text(v: Any) -> str:
    if v is None:
        return ""
    try:
        return str(v).strip()
    except Exception:
        return ""


def extract_quote_number(customer_reference: str | None) -> str | None:
    """
    Pull an internal quote number out of the free-text customer reference on an upstream order.
    Only references that start with one of the known prefixes are considered.
    """
    cleaned = (customer_reference or "").strip(REF_TRIM_CHARS)
    if not cleaned:
        return None
    if cleaned.startswith("Q"):
        m = QUOTE_Q_RX.match(cleaned)
        if m:
            return m.group(1)
    if cleaned.startswith("ML-"):
        m = QUOTE_ML_RX.match(cleaned)
        if m:
            return m.group(1)
    return None


def format_order_id(order_id: str) -> str:
    """Normalize an order id to the carrier's BAR-SO... form."""
    oid = safe_text(order_id)
    if oid.startswith(ORDER_ID_PREFIX):
        return oid
    if oid.startswith("SO"):
        return f"BAR-{oid}"
    return f"{ORDER_ID_PREFIX}{oid}"


def parse_event_datetime(value: str | None) -> datetime | None:
    """Parse a carrier timestamp (DD/MM/YYYY HH:mm:ss, time optional). Naive result."""
    raw = safe_text(value)
    if not raw:
        return None
    for fmt in (EVENT_DATETIME_FORMAT, EVENT_DATE_FORMAT):
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    return None


def _normalize_iso(raw: str) -> str:
    raw = ISO_FRACTION_RX.sub(lambda m: f"{m.group(1)}.{(m.group(2) + '000000')[:6]}", raw, count=1)
    return raw.replace("Z", "+00:00")


def parse_status_date(value: str | None) -> datetime | None:
    """
    Parse a status date coming either from a tracking event (DD/MM/YYYY[ HH:mm:ss])
    or from the order itself (ISO-8601). Returns an aware UTC datetime or None.
    """
    raw = safe_text(value)
    if not raw:
        return None
    if "/" in raw:
        dt = parse_event_datetime(raw)
    else:
        try:
            dt = datetime.fromisoformat(_normalize_iso(raw))
        except ValueError:
            dt = None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def days_in_status(status_date: str | None, *, now: datetime | None = None) -> float | None:
    dt = parse_status_date(status_date)
    if dt is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (now - dt).total_seconds() / 86400


def is_order_stuck(status_date: str | None, *, now: datetime | None = None, threshold_days: float = 3) -> bool:
    """True when more than `threshold_days` wall-clock days have passed. Bad dates are never stuck."""
    age = days_in_status(status_date, now=now)
    if age is None:
        return False
    return age > threshold_days


def parse_payload(payload: Any) -> dict[str, Any] | None:
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


def pick_str(obj: Any, keys: tuple[str, ...], fallback: str = "") -> str:
    """First non-blank string among `keys` (historical key-name variants)."""
    if not isinstance(obj, dict):
        return fallback
    for k in keys:
        v = obj.get(k)
        if isinstance(v, str) and v.strip():
            return v
    return fallback


def parse_grand_total(payload: Any) -> float:
    p = parse_payload(payload) or {}
    totals = p.get("totals")
    total = totals.get("grand_total") if isinstance(totals, dict) else None
    if isinstance(total, bool):
        return 0.0
    if isinstance(total, (int, float)):
        return float(total)
    if isinstance(total, str):
        try:
            return float(total.strip())
        except ValueError:
            return 0.0
    return 0.0
