from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from app.merchops.modules.order_tracking.exceptions import PartialFetchError, UpstreamError
from app.merchops.modules.order_tracking.parsers import safe_text
from app.merchops.modules.order_tracking.token_manager import TokenManager

logger = logging.getLogger(__name__)


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "y")
    return bool(v)


def _as_float(v: Any) -> float:
    if isinstance(v, bool) or v is None:
        return 0.0
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class Order:
    """An upstream sales order. Never persisted; re-fetched on every run."""

    order_id: str
    contact_person_id: str = ""
    customer_reference: str = ""
    order_date: str = ""
    total_inc_vat: float = 0.0
    sample: bool = False
    cart_id: str = ""
    branded: bool = False
    status: str = ""
    hex_code: str = ""
    order_taker: str = ""
    is_delivery: bool = False

    @classmethod
    def from_api(cls, row: dict[str, Any]) -> "Order":
        oid = safe_text(row.get("orderId"))
        if not oid:
            raise ValueError("order row has no orderId")
        return cls(
            order_id=oid,
            contact_person_id=safe_text(row.get("contactPersonId")),
            customer_reference=safe_text(row.get("customerReference")),
            order_date=safe_text(row.get("orderDate")),
            total_inc_vat=_as_float(row.get("totalIncVat")),
            sample=_as_bool(row.get("sample")),
            cart_id=safe_text(row.get("cartId")),
            branded=_as_bool(row.get("branded")),
            status=safe_text(row.get("status")),
            hex_code=safe_text(row.get("hexCode")),
            order_taker=safe_text(row.get("orderTaker")),
            is_delivery=_as_bool(row.get("isDelivery")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "contactPersonId": self.contact_person_id,
            "customerReference": self.customer_reference,
            "orderDate": self.order_date,
            "totalIncVat": self.total_inc_vat,
            "sample": self.sample,
            "cartId": self.cart_id,
            "branded": self.branded,
            "status": self.status,
            "hexCode": self.hex_code,
            "orderTaker": self.order_taker,
            "isDelivery": self.is_delivery,
        }


EnvelopeShape = Literal["array", "object", "empty"]


@dataclass(frozen=True)
class OrdersPage:
    """One normalized page of the orders endpoint."""

    shape: EnvelopeShape
    results: list[dict[str, Any]] = field(default_factory=list)
    total_pages: int = 1


def _total_pages(v: Any) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        return 1
    return max(n, 1)


def parse_orders_envelope(data: Any) -> OrdersPage:
    """
    The orders endpoint answers either `[{"results": [...], "total_pages": N}]` or
    `{"results": [...], "total_pages": N}`. Anything else is an empty page.
    """
    if isinstance(data, list) and data and isinstance(data[0], dict) and isinstance(data[0].get("results"), list):
        env = data[0]
        shape: EnvelopeShape = "array"
    elif isinstance(data, dict) and isinstance(data.get("results"), list):
        env = data
        shape = "object"
    else:
        return OrdersPage(shape="empty", results=[], total_pages=1)
    rows = [r for r in env["results"] if isinstance(r, dict)]
    return OrdersPage(shape=shape, results=rows, total_pages=_total_pages(env.get("total_pages")))


def _to_orders(rows: list[dict[str, Any]], *, page: int) -> list[Order]:
    out: list[Order] = []
    for row in rows:
        try:
            out.append(Order.from_api(row))
        except ValueError:
            logger.warning("ORDERS: skipping malformed row on page %s (keys=%s)", page, sorted(row.keys()))
    return out


async def _get_page(http: httpx.AsyncClient, orders_url: str, token: str, page: int) -> httpx.Response:
    return await http.get(
        orders_url,
        params={"page": page},
        headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
    )


async def _fetch_later_page(
    http: httpx.AsyncClient, orders_url: str, token: str, page: int, sem: asyncio.Semaphore
) -> list[Order]:
    async with sem:
        try:
            resp = await _get_page(http, orders_url, token, page)
            if not resp.is_success:
                raise PartialFetchError(f"orders page {page} returned HTTP {resp.status_code}", page=page)
            try:
                data = resp.json()
            except ValueError as e:
                raise PartialFetchError(f"orders page {page} returned invalid JSON", page=page) from e
        except (httpx.HTTPError, PartialFetchError) as e:
            logger.warning("ORDERS: page %s failed, contributing no orders: %s", page, e)
            return []
    return _to_orders(parse_orders_envelope(data).results, page=page)


async def fetch_all_orders(
    http: httpx.AsyncClient,
    tokens: TokenManager,
    *,
    orders_url: str,
    max_concurrency: int = 10,
) -> list[Order]:
    """
    Fetch every page of upstream sales orders.

    Page 1 must succeed (UpstreamError otherwise). Pages 2..N are fetched concurrently,
    at most `max_concurrency` at a time; a failing later page contributes no orders.
    """
    token = await tokens.get_access_token(http)

    try:
        resp = await _get_page(http, orders_url, token, 1)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to fetch orders: {e}") from e
    if not resp.is_success:
        raise UpstreamError(
            f"Failed to fetch orders: HTTP {resp.status_code}",
            status_code=resp.status_code,
            body=resp.text[:1000],
        )
    try:
        first = parse_orders_envelope(resp.json())
    except ValueError as e:
        raise UpstreamError("Orders endpoint returned invalid JSON", status_code=resp.status_code) from e

    if first.shape == "empty":
        logger.warning("ORDERS: no results in response envelope; treating as zero orders")
    orders = _to_orders(first.results, page=1)
    logger.info("ORDERS: page 1/%s shape=%s orders=%s", first.total_pages, first.shape, len(orders))

    if first.total_pages > 1:
        sem = asyncio.Semaphore(max(1, max_concurrency))
        pages = await asyncio.gather(
            *(_fetch_later_page(http, orders_url, token, p, sem) for p in range(2, first.total_pages + 1))
        )
        for chunk in pages:
            orders.extend(chunk)

    logger.info("ORDERS: fetched %s orders across %s page(s)", len(orders), first.total_pages)
    return orders
