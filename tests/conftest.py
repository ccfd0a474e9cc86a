import json
from urllib.parse import parse_qs

import httpx
import pytest

from app.merchops import create_app
from app.merchops.db import session_factory
from app.merchops.models import Base

TOKEN_URL = "https://login.test/oauth2/v2.0/token"
ORDERS_URL = "https://api.test/orders/salesorders"
DELIVERY_URL = "https://api.test/orders/delivery-statuses"
DASHBOARD_TOKEN = "dash-secret"


class FakeUpstream:
    """
    In-memory stand-in for the token, orders and delivery-status endpoints.

    pages: page number -> (status, json body)
    tracking: formatted order id (BAR-SO...) -> (status, json body); missing ids answer 404
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_responses: list[tuple[int, dict]] = []
        self.pages: dict[int, tuple[int, object]] = {}
        self.tracking: dict[str, tuple[int, object]] = {}
        self.token_calls = 0

    def add_token_response(self, status: int = 200, **body) -> None:
        self.token_responses.append((status, body))

    def set_orders(self, orders: list[dict], *, total_pages: int = 1, page: int = 1, shape: str = "array") -> None:
        env = {"results": orders, "total_pages": total_pages}
        self.pages[page] = (200, [env] if shape == "array" else env)

    def requests_to(self, url_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).startswith(url_prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(TOKEN_URL):
            self.token_calls += 1
            if self.token_responses:
                status, body = self.token_responses.pop(0)
            else:
                status, body = 200, {"access_token": f"access-{self.token_calls}", "expires_in": 3600}
            return httpx.Response(status, json=body)
        if url.startswith(ORDERS_URL):
            page = int(request.url.params.get("page", "1"))
            status, body = self.pages.get(page, (200, [{"results": [], "total_pages": 1}]))
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)
        if url.startswith(DELIVERY_URL):
            oid = request.url.path.rsplit("/", 1)[-1]
            status, body = self.tracking.get(oid, (404, {"message": "not found"}))
            return httpx.Response(status, json=body)
        return httpx.Response(500, json={"error": f"unexpected url {url}"})


def form_of(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


def order_row(order_id: str, **overrides) -> dict:
    row = {
        "orderId": order_id,
        "contactPersonId": "CP1",
        "customerReference": "",
        "orderDate": "2026-01-05T09:00:00Z",
        "totalIncVat": 100.0,
        "sample": False,
        "cartId": "cart-1",
        "branded": True,
        "status": "Order Received",
        "hexCode": "#000000",
        "orderTaker": "web",
        "isDelivery": True,
    }
    row.update(overrides)
    return row


def quote_payload(grand_total, **customer) -> str:
    return json.dumps({"totals": {"grand_total": grand_total}, "enquiryCustomer": customer or None})


@pytest.fixture()
def upstream():
    return FakeUpstream()


@pytest.fixture()
def app(tmp_path, monkeypatch, upstream):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DASHBOARD_TOKEN", DASHBOARD_TOKEN)
    monkeypatch.setenv("BARRON_CLIENT_ID", "client-id")
    monkeypatch.setenv("BARRON_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("BARRON_REFRESH_TOKEN", "env-refresh")
    monkeypatch.setenv("BARRON_TOKEN_URL", TOKEN_URL)
    monkeypatch.setenv("BARRON_ORDERS_URL", ORDERS_URL)
    monkeypatch.setenv("BARRON_DELIVERY_STATUS_URL", DELIVERY_URL)
    monkeypatch.setenv("BARRON_REDIRECT_URI", "https://ops.test/oauth/callback")
    monkeypatch.setenv("TOKEN_LOCK_SECONDS", "2")
    for k in ("ALERT_EMAILS", "SMTP_SERVER", "SMTP_USERNAME", "SMTP_PASSWORD", "FROM_EMAIL"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["order_tracking_transport"] = httpx.MockTransport(upstream.handler)
    return app


@pytest.fixture()
def sm(app):
    return session_factory(app)


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth_headers():
    return {"Authorization": f"Bearer {DASHBOARD_TOKEN}"}
