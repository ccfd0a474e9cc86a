import asyncio

import httpx
import pytest

from app.merchops.modules.order_tracking.exceptions import UpstreamError
from app.merchops.modules.order_tracking.orders import fetch_all_orders
from app.merchops.modules.order_tracking.token_manager import OAuthSettings, RefreshTokenStore, TokenCache, TokenManager

from conftest import ORDERS_URL, TOKEN_URL, order_row


@pytest.fixture()
def tokens(sm):
    settings = OAuthSettings(client_id="c", client_secret="s", token_url=TOKEN_URL, scope="orders")
    cache = TokenCache(access_token="cached-token", expires_at=float("inf"))
    return TokenManager(settings, RefreshTokenStore(sm), cache=cache)


def _fetch(upstream, tokens, **kw):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as http:
            return await fetch_all_orders(http, tokens, orders_url=ORDERS_URL, **kw)

    return asyncio.run(main())


def test_single_page(upstream, tokens):
    upstream.set_orders([order_row("SO1"), order_row("SO2")])
    orders = _fetch(upstream, tokens)
    assert [o.order_id for o in orders] == ["SO1", "SO2"]
    assert len(upstream.requests_to(ORDERS_URL)) == 1
    req = upstream.requests_to(ORDERS_URL)[0]
    assert req.headers["Authorization"] == "Bearer cached-token"
    assert req.url.params["page"] == "1"
    assert upstream.token_calls == 0


def test_failed_later_page_contributes_nothing(upstream, tokens):
    upstream.set_orders([order_row("SO1"), order_row("SO2")], total_pages=3, page=1)
    upstream.set_orders([order_row("SO3")], total_pages=3, page=2)
    upstream.pages[3] = (500, {"error": "boom"})

    orders = _fetch(upstream, tokens, max_concurrency=2)

    assert sorted(o.order_id for o in orders) == ["SO1", "SO2", "SO3"]
    pages = sorted(int(r.url.params["page"]) for r in upstream.requests_to(ORDERS_URL))
    assert pages == [1, 2, 3]


def test_object_envelope_on_later_pages(upstream, tokens):
    upstream.set_orders([order_row("SO1")], total_pages=2, page=1, shape="object")
    upstream.set_orders([order_row("SO2")], total_pages=2, page=2, shape="object")
    orders = _fetch(upstream, tokens)
    assert [o.order_id for o in orders] == ["SO1", "SO2"]


def test_first_page_failure_is_fatal(upstream, tokens):
    upstream.pages[1] = (503, {"error": "down"})
    with pytest.raises(UpstreamError) as exc:
        _fetch(upstream, tokens)
    assert exc.value.status_code == 503


def test_first_page_invalid_json_is_fatal(upstream, tokens):
    upstream.pages[1] = (200, "<html>maintenance</html>")
    with pytest.raises(UpstreamError):
        _fetch(upstream, tokens)


def test_unknown_envelope_is_zero_orders(upstream, tokens):
    upstream.pages[1] = (200, {"data": []})
    assert _fetch(upstream, tokens) == []


def test_malformed_rows_are_skipped(upstream, tokens):
    upstream.set_orders([order_row("SO1"), {"status": "Confirmed"}, order_row("")])
    orders = _fetch(upstream, tokens)
    assert [o.order_id for o in orders] == ["SO1"]


def test_token_is_fetched_when_cache_is_cold(sm, upstream):
    settings = OAuthSettings(
        client_id="c", client_secret="s", token_url=TOKEN_URL, scope="orders", env_refresh_token="env-refresh"
    )
    manager = TokenManager(settings, RefreshTokenStore(sm))
    upstream.set_orders([order_row("SO1")])
    _fetch(upstream, manager)
    assert upstream.token_calls == 1
    assert upstream.requests_to(ORDERS_URL)[0].headers["Authorization"] == "Bearer access-1"
