from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx
from flask import Flask
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.merchops.audit import record_event
from app.merchops.db import session_factory, session_scope
from app.merchops.modules.order_tracking.delivery import (
    EMPTY_RESOLUTION,
    DeliveryResolution,
    get_delivery_detail,
    resolve_delivery_status,
)
from app.merchops.modules.order_tracking.exceptions import OrderTrackingError, UpstreamError
from app.merchops.modules.order_tracking.models import OrderPipelineRun
from app.merchops.modules.order_tracking.notifications import (
    AlertSender,
    NotificationDispatcher,
    NotificationSummary,
    StuckOrderAlert,
    build_alert_sender,
)
from app.merchops.modules.order_tracking.orders import Order, fetch_all_orders
from app.merchops.modules.order_tracking.parsers import days_in_status, is_order_stuck, parse_status_date
from app.merchops.modules.order_tracking.quotes import QuoteCorrelation, QuoteCorrelator
from app.merchops.modules.order_tracking.stages import STAGE_ORDER, DeliveryStage, map_order_status_to_stage
from app.merchops.modules.order_tracking.token_manager import OAuthSettings, RefreshTokenStore, TokenManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXTENSION_KEY = "order_pipeline"
TRANSPORT_EXTENSION_KEY = "order_tracking_transport"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class EnrichedOrder:
    order: Order
    correlation: QuoteCorrelation
    delivery_stage: DeliveryStage | None = None
    is_stuck: bool = False
    status_date: str = ""

    @property
    def selling_price(self) -> float | None:
        return self.correlation.selling_price

    @property
    def profit(self) -> float | None:
        if self.selling_price is None:
            return None
        return self.selling_price - self.order.total_inc_vat

    @property
    def profit_margin(self) -> float | None:
        """Percent of selling price."""
        if self.selling_price is None or self.selling_price <= 0:
            return None
        return (self.selling_price - self.order.total_inc_vat) / self.selling_price * 100

    def to_dict(self, *, with_delivery: bool = False) -> dict[str, Any]:
        out = self.order.to_dict()
        c = self.correlation
        out.update(
            {
                "quoteNo": c.quote_no,
                "sellingPrice": self.selling_price,
                "customer": c.customer.to_dict() if c.customer else None,
                "invoiceNo": c.invoice_no,
                "profit": self.profit,
                "profitMargin": self.profit_margin,
            }
        )
        if with_delivery:
            out.update(
                {
                    "deliveryStage": self.delivery_stage.value if self.delivery_stage else None,
                    "isStuck": self.is_stuck,
                    "statusDate": self.status_date or self.order.order_date,
                }
            )
        return out


@dataclass
class StageBucket:
    stage: DeliveryStage
    orders: list[EnrichedOrder] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.orders)

    @property
    def has_stuck_orders(self) -> bool:
        return any(o.is_stuck for o in self.orders)


@dataclass
class StatusCountsReport:
    buckets: dict[DeliveryStage, StageBucket]
    notifications: NotificationSummary = field(default_factory=NotificationSummary)
    unassigned: int = 0

    @classmethod
    def empty(cls) -> "StatusCountsReport":
        return cls(buckets={stage: StageBucket(stage) for stage in STAGE_ORDER})

    @property
    def stuck_orders(self) -> list[EnrichedOrder]:
        return [o for b in self.buckets.values() for o in b.orders if o.is_stuck]

    def to_dict(self) -> dict[str, Any]:
        return {
            "statusCounts": [
                {"status": b.stage.value, "count": b.count, "hasStuckOrders": b.has_stuck_orders}
                for b in (self.buckets[s] for s in STAGE_ORDER)
            ],
            "ordersByStatus": {
                s.value: [o.to_dict(with_delivery=True) for o in self.buckets[s].orders] for s in STAGE_ORDER
            },
            "notifications": self.notifications.to_dict(),
            "unassigned": self.unassigned,
        }


@dataclass(frozen=True)
class PipelineSettings:
    orders_url: str
    delivery_status_url: str
    timeout_seconds: float = 15.0
    page_concurrency: int = 10
    delivery_batch_size: int = 10
    stuck_threshold_days: float = 3.0
    invoice_scan_limit: int = 1000

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PipelineSettings":
        return cls(
            orders_url=config["BARRON_ORDERS_URL"],
            delivery_status_url=config["BARRON_DELIVERY_STATUS_URL"],
            timeout_seconds=float(config.get("UPSTREAM_TIMEOUT_SECONDS") or 15.0),
            page_concurrency=int(config.get("ORDER_PAGE_CONCURRENCY") or 10),
            delivery_batch_size=int(config.get("DELIVERY_BATCH_SIZE") or 10),
            stuck_threshold_days=float(config.get("STUCK_THRESHOLD_DAYS") or 3.0),
            invoice_scan_limit=int(config.get("INVOICE_SCAN_LIMIT") or 1000),
        )


def classify_order(
    order: Order,
    resolution: DeliveryResolution,
    *,
    now: datetime,
    threshold_days: float,
) -> tuple[DeliveryStage | None, str, bool]:
    """
    Pick the display stage and its status date for one order.

    Tracking wins; without a tracking stage the order's own status is mapped instead and the
    order date stands in for the status date. Delivered orders are never stuck.
    """
    stage = resolution.stage
    status_date = resolution.status_date
    if stage is None:
        stage = map_order_status_to_stage(order.status)
        if not status_date:
            status_date = order.order_date
    if stage is None:
        return None, status_date, False
    stuck = (
        not stage.is_terminal
        and bool(status_date.strip())
        and is_order_stuck(status_date, now=now, threshold_days=threshold_days)
    )
    return stage, status_date, stuck


def _order_date_key(e: EnrichedOrder) -> datetime:
    return parse_status_date(e.order.order_date) or _OLDEST


class OrderPipeline:
    """
    Orchestrates fetch -> correlate -> resolve -> detect -> notify.

    One instance per app (see get_pipeline). Each public call opens its own event loop and
    httpx client; database work happens outside the loop in short session scopes.
    """

    def __init__(
        self,
        *,
        tokens: TokenManager,
        sm: sessionmaker,
        settings: PipelineSettings,
        sender: AlertSender,
        transport: httpx.AsyncBaseTransport | None = None,
        now: Callable[[], datetime] | None = None,
        today: Callable[[], str] | None = None,
    ):
        self.tokens = tokens
        self.settings = settings
        self._sm = sm
        self._transport = transport
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.dispatcher = NotificationDispatcher(sm, sender, today=today)

    # -- plumbing ---------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(self.settings.timeout_seconds), transport=self._transport)

    def _run(self, fn: Callable[[httpx.AsyncClient], Awaitable[T]]) -> T:
        async def _main() -> T:
            async with self._client() as http:
                return await fn(http)

        return asyncio.run(_main())

    def _enrich(self, orders: list[Order]) -> list[EnrichedOrder]:
        with session_scope(self._sm) as s:
            correlator = QuoteCorrelator(s, invoice_scan_limit=self.settings.invoice_scan_limit)
            return [EnrichedOrder(order=o, correlation=correlator.correlate(o)) for o in orders]

    def _record_run(
        self,
        kind: str,
        *,
        actor: str,
        started: float,
        orders_seen: int,
        stuck_count: int = 0,
        summary: NotificationSummary | None = None,
        message: str | None = None,
    ) -> None:
        duration = int(time.time() - started)
        summary = summary or NotificationSummary()
        try:
            with session_scope(self._sm) as s:
                s.add(
                    OrderPipelineRun(
                        kind=kind,
                        orders_seen=orders_seen,
                        stuck_count=stuck_count,
                        alerts_sent=summary.sent,
                        alerts_failed=summary.failed,
                        duration_seconds=duration,
                        message=message,
                    )
                )
                record_event(
                    s,
                    actor=actor,
                    action=f"orders.{kind}_completed",
                    entity_type="OrderPipelineRun",
                    metadata={
                        "orders_seen": orders_seen,
                        "stuck_count": stuck_count,
                        "notifications": summary.to_dict(),
                        "duration_seconds": duration,
                    },
                )
        except SQLAlchemyError:
            logger.exception("PIPELINE: recording %s run failed", kind)

    def _record_failure(self, kind: str, *, actor: str, error: Exception) -> None:
        try:
            with session_scope(self._sm) as s:
                record_event(
                    s,
                    actor=actor,
                    action=f"orders.{kind}_failed",
                    entity_type="OrderPipelineRun",
                    metadata={"error": str(error)[:500], "error_type": error.__class__.__name__},
                )
        except SQLAlchemyError:
            logger.exception("PIPELINE: recording %s failure failed", kind)

    async def _fetch_orders(self, http: httpx.AsyncClient) -> list[Order]:
        return await fetch_all_orders(
            http,
            self.tokens,
            orders_url=self.settings.orders_url,
            max_concurrency=self.settings.page_concurrency,
        )

    async def _fetch_with_tracking(self, http: httpx.AsyncClient) -> list[tuple[Order, DeliveryResolution]]:
        orders = await self._fetch_orders(http)
        batch_size = max(1, self.settings.delivery_batch_size)
        resolutions: list[DeliveryResolution] = []
        for i in range(0, len(orders), batch_size):
            chunk = orders[i : i + batch_size]
            # token endpoint outage: this batch falls back to order status. AuthError propagates.
            try:
                token = await self.tokens.get_access_token(http)
            except UpstreamError as e:
                logger.warning("PIPELINE: no token for delivery batch at %s (%s orders): %s", i, len(chunk), e)
                resolutions.extend([EMPTY_RESOLUTION] * len(chunk))
                continue
            resolutions.extend(
                await asyncio.gather(
                    *(
                        resolve_delivery_status(http, o.order_id, token, base_url=self.settings.delivery_status_url)
                        for o in chunk
                    )
                )
            )
        return list(zip(orders, resolutions))

    # -- public -----------------------------------------------------------

    def list_enriched_orders(self, *, actor: str = "system", kind: str = "orders") -> list[EnrichedOrder]:
        """All upstream orders joined with quote data, newest order date first."""
        started = time.time()
        try:
            orders = self._run(self._fetch_orders)
        except OrderTrackingError as e:
            self._record_failure(kind, actor=actor, error=e)
            raise
        enriched = sorted(self._enrich(orders), key=_order_date_key, reverse=True)
        matched = sum(1 for e in enriched if e.correlation.quote_no)
        self._record_run(
            kind,
            actor=actor,
            started=started,
            orders_seen=len(enriched),
            message=f"Orders={len(enriched)} with quote reference={matched}.",
        )
        return enriched

    def status_counts(self, *, actor: str = "system", notify: bool = True) -> StatusCountsReport:
        """Group orders by delivery stage, flag stuck ones and send the day's alerts."""
        started = time.time()
        try:
            rows = self._run(self._fetch_with_tracking)
        except OrderTrackingError as e:
            self._record_failure("status_counts", actor=actor, error=e)
            raise

        now = self._now()
        threshold = self.settings.stuck_threshold_days
        report = StatusCountsReport.empty()
        enriched = self._enrich([order for order, _ in rows])
        for item, (order, resolution) in zip(enriched, rows):
            stage, status_date, stuck = classify_order(order, resolution, now=now, threshold_days=threshold)
            if stage is None:
                report.unassigned += 1
                logger.debug("PIPELINE: order %s has no stage (status=%r)", order.order_id, order.status)
                continue
            item.delivery_stage = stage
            item.status_date = status_date
            item.is_stuck = stuck
            report.buckets[stage].orders.append(item)
            if stuck:
                logger.info("PIPELINE: order %s stuck in %r since %s", order.order_id, stage.value, status_date)

        stuck_orders = report.stuck_orders
        if notify and stuck_orders:
            report.notifications = self.dispatcher.notify_stuck_orders(
                StuckOrderAlert(
                    order_id=o.order.order_id,
                    stage=o.delivery_stage.value if o.delivery_stage else "",
                    status_date=o.status_date,
                    customer_reference=o.order.customer_reference,
                    order_date=o.order.order_date,
                    days_in_status=days_in_status(o.status_date, now=now),
                )
                for o in stuck_orders
            )

        self._record_run(
            "status_counts",
            actor=actor,
            started=started,
            orders_seen=len(rows),
            stuck_count=len(stuck_orders),
            summary=report.notifications,
            message=f"Orders={len(rows)} stuck={len(stuck_orders)} unassigned={report.unassigned}.",
        )
        return report

    def delivery_detail(self, order_id: str) -> dict[str, Any]:
        async def _detail(http: httpx.AsyncClient) -> dict[str, Any]:
            token = await self.tokens.get_access_token(http)
            return await get_delivery_detail(http, order_id, token, base_url=self.settings.delivery_status_url)

        return self._run(_detail)

    def authorize_url(self, state: str) -> str:
        return self.tokens.build_authorize_url(state)

    def exchange_code(self, code: str) -> dict[str, Any]:
        return self._run(lambda http: self.tokens.exchange_authorization_code(http, code))


def build_pipeline(app: Flask) -> OrderPipeline:
    sm = session_factory(app)
    tokens = TokenManager(OAuthSettings.from_config(app.config), RefreshTokenStore(sm))
    return OrderPipeline(
        tokens=tokens,
        sm=sm,
        settings=PipelineSettings.from_config(app.config),
        sender=build_alert_sender(app.config),
        transport=app.extensions.get(TRANSPORT_EXTENSION_KEY),
    )


def get_pipeline(app: Flask | None = None) -> OrderPipeline:
    """The app's long-lived pipeline; its TokenManager keeps the access token cached across requests."""
    if app is None:
        from flask import current_app

        app = current_app._get_current_object()  # type: ignore[attr-defined]
    pipeline = app.extensions.get(EXTENSION_KEY)
    if pipeline is None:
        pipeline = build_pipeline(app)
        app.extensions[EXTENSION_KEY] = pipeline
    return pipeline
