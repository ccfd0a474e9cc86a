"""Tests for the OAuth2 token manager (rotating refresh tokens)."""
import asyncio
import logging

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.merchops.models import AuditEvent
from app.merchops.modules.order_tracking.exceptions import AuthError, ConfigurationError, UpstreamError
from app.merchops.modules.order_tracking.models import ApiToken
from app.merchops.modules.order_tracking.token_manager import (
    TOKEN_KEY,
    OAuthSettings,
    RefreshTokenStore,
    TokenCache,
    TokenManager,
)

from conftest import TOKEN_URL, form_of

NOW = 1_000_000.0


def _settings(**overrides) -> OAuthSettings:
    values = dict(
        client_id="client-id",
        client_secret="client-secret",
        token_url=TOKEN_URL,
        scope="openid offline_access orders",
        authorize_url="https://login.test/oauth2/v2.0/authorize",
        redirect_uri="https://ops.test/oauth/callback",
        env_refresh_token="env-refresh",
        lock_seconds=2,
    )
    values.update(overrides)
    return OAuthSettings(**values)


def _get_token(manager: TokenManager, upstream) -> str:
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as http:
            return await manager.get_access_token(http)

    return asyncio.run(main())


@pytest.fixture()
def store(sm):
    return RefreshTokenStore(sm)


def test_valid_cached_token_makes_no_network_calls(store, upstream):
    cache = TokenCache(access_token="cached", expires_at=NOW + 60, refresh_token="r")
    manager = TokenManager(_settings(), store, cache=cache, clock=lambda: NOW)
    assert _get_token(manager, upstream) == "cached"
    assert upstream.requests == []


def test_refresh_posts_form_and_caches_with_margin(store, upstream):
    upstream.add_token_response(access_token="fresh", expires_in=3600)
    manager = TokenManager(_settings(), store, clock=lambda: NOW)

    assert _get_token(manager, upstream) == "fresh"

    form = form_of(upstream.requests[0])
    assert form["grant_type"] == "refresh_token"
    assert form["refresh_token"] == "env-refresh"
    assert form["client_id"] == "client-id"
    assert form["client_secret"] == "client-secret"
    assert form["scope"] == "openid offline_access orders"
    assert manager.cache.expires_at == NOW + 3600 - 300
    assert manager.cache.refresh_token == "env-refresh"

    # second call served from cache
    assert _get_token(manager, upstream) == "fresh"
    assert upstream.token_calls == 1


def test_default_expires_in(store, upstream):
    upstream.add_token_response(access_token="fresh")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)
    _get_token(manager, upstream)
    assert manager.cache.expires_at == NOW + 3600 - 300


def test_durable_token_preferred_over_env(store, upstream):
    store.save("durable-1")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)
    _get_token(manager, upstream)
    assert form_of(upstream.requests[0])["refresh_token"] == "durable-1"


def test_memory_token_used_before_env(store, upstream):
    cache = TokenCache(access_token="old", expires_at=NOW - 1, refresh_token="memory-1")
    manager = TokenManager(_settings(), store, cache=cache, clock=lambda: NOW)
    _get_token(manager, upstream)
    assert form_of(upstream.requests[0])["refresh_token"] == "memory-1"


def test_rotated_token_persisted_before_access_token_is_cached(sm, upstream):
    class SpyStore(RefreshTokenStore):
        seen_cache: list = []

        def save(self, token, expires_in=None, **kw):
            self.seen_cache.append(manager.cache.access_token)
            super().save(token, expires_in, **kw)

    spy = SpyStore(sm)
    upstream.add_token_response(access_token="fresh", refresh_token="rotated-2", expires_in=3600)
    manager = TokenManager(_settings(), spy, clock=lambda: NOW)

    assert _get_token(manager, upstream) == "fresh"
    assert spy.seen_cache == [None]
    assert spy.load() == "rotated-2"
    assert manager.cache.refresh_token == "rotated-2"

    with sm() as s:
        actions = [e.action for e in s.query(AuditEvent).all()]
    assert "barron.refresh_token_rotated" in actions


def test_same_refresh_token_is_not_rewritten(store, sm, upstream):
    upstream.add_token_response(access_token="fresh", refresh_token="env-refresh")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)
    _get_token(manager, upstream)
    assert store.load() is None


@pytest.mark.parametrize("status", [400, 401])
def test_rejected_refresh_token_raises_auth_error_without_retry(store, upstream, status):
    upstream.add_token_response(status, error="invalid_grant")
    cache = TokenCache(access_token="old", expires_at=NOW - 1, refresh_token="memory-1")
    manager = TokenManager(_settings(), store, cache=cache, clock=lambda: NOW)

    with pytest.raises(AuthError) as exc:
        _get_token(manager, upstream)
    assert "refresh token" in str(exc.value).lower()
    assert upstream.token_calls == 1
    assert manager.cache.access_token is None
    assert manager.cache.refresh_token is None


def test_other_token_errors_are_upstream_errors(store, upstream):
    upstream.add_token_response(503, error="unavailable")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)
    with pytest.raises(UpstreamError) as exc:
        _get_token(manager, upstream)
    assert exc.value.status_code == 503


def test_missing_credentials_is_configuration_error(store, upstream):
    manager = TokenManager(_settings(client_secret=""), store, clock=lambda: NOW)
    with pytest.raises(ConfigurationError):
        _get_token(manager, upstream)
    assert upstream.requests == []


def test_no_refresh_token_anywhere_is_auth_error(store, upstream):
    manager = TokenManager(_settings(env_refresh_token=""), store, clock=lambda: NOW)
    with pytest.raises(AuthError):
        _get_token(manager, upstream)
    assert upstream.requests == []


def test_persist_failure_keeps_pending_token_and_fails_loudly(sm, upstream):
    class FlakyStore(RefreshTokenStore):
        fail_next = True

        def save(self, token, expires_in=None, **kw):
            if self.fail_next:
                self.fail_next = False
                raise SQLAlchemyError("db down")
            super().save(token, expires_in, **kw)

    store = FlakyStore(sm)
    upstream.add_token_response(access_token="fresh", refresh_token="rot-1")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)

    with pytest.raises(AuthError):
        _get_token(manager, upstream)
    assert manager.cache.access_token is None

    # next refresh persists the pending token first, then uses it
    assert _get_token(manager, upstream) == "access-2"
    assert form_of(upstream.requests_to(TOKEN_URL)[-1])["refresh_token"] == "rot-1"
    assert store.load() == "rot-1"


def test_lease_released_after_refresh(store, sm, upstream):
    manager = TokenManager(_settings(), store, clock=lambda: NOW)
    _get_token(manager, upstream)
    with sm() as s:
        row = s.get(ApiToken, TOKEN_KEY)
        assert row is not None
        assert row.lock_owner is None
        assert row.locked_until is None


def test_concurrent_callers_share_one_refresh(store, upstream):
    manager = TokenManager(_settings(), store, clock=lambda: NOW)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as http:
            return await asyncio.gather(*(manager.get_access_token(http) for _ in range(5)))

    tokens = asyncio.run(main())
    assert set(tokens) == {"access-1"}
    assert upstream.token_calls == 1


def test_manager_survives_multiple_event_loops(store, upstream):
    now = [NOW]
    manager = TokenManager(_settings(), store, clock=lambda: now[0])
    assert _get_token(manager, upstream) == "access-1"
    now[0] += 3600
    assert _get_token(manager, upstream) == "access-2"


def test_short_lived_refresh_token_warns(store, caplog):
    store.save("soon", expires_in=3600)
    with caplog.at_level(logging.WARNING):
        assert store.load() == "soon"
    assert "rotate it soon" in caplog.text


def test_authorize_url(store):
    manager = TokenManager(_settings(), store)
    url = manager.build_authorize_url("state-123")
    assert url.startswith("https://login.test/oauth2/v2.0/authorize?")
    assert "client_id=client-id" in url
    assert "state=state-123" in url
    assert "response_type=code" in url


def test_authorize_url_requires_redirect_uri(store):
    manager = TokenManager(_settings(redirect_uri=""), store)
    with pytest.raises(ConfigurationError):
        manager.build_authorize_url("s")


def test_exchange_code_stores_refresh_token(store, upstream):
    upstream.add_token_response(access_token="a1", refresh_token="from-code", expires_in=3600, token_type="Bearer")
    manager = TokenManager(_settings(), store, clock=lambda: NOW)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as http:
            return await manager.exchange_authorization_code(http, "the-code")

    result = asyncio.run(main())
    assert result["refresh_token_stored"] is True
    assert "from-code" not in str(result)
    assert store.load() == "from-code"
    form = form_of(upstream.requests[0])
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "the-code"
    assert form["redirect_uri"] == "https://ops.test/oauth/callback"
    assert _get_token(manager, upstream) == "a1"
