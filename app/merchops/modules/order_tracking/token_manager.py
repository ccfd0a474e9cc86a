"""
OAuth2 access tokens for the upstream order API.

The upstream identity provider rotates refresh tokens: every refresh may hand back a new
refresh token and the old one stops working immediately. The durable copy in `api_tokens`
is therefore the source of truth, and a rotated token is written there before the new
access token is handed to anyone.

Refresh-token priority: rotated-but-unpersisted (pending) > durable row > in-memory cache
> BARRON_REFRESH_TOKEN env var.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.merchops.audit import record_event
from app.merchops.db import session_scope
from app.merchops.modules.order_tracking.exceptions import AuthError, ConfigurationError, OrderTrackingError, UpstreamError
from app.merchops.modules.order_tracking.models import ApiToken
from app.merchops.modules.order_tracking.parsers import safe_text

logger = logging.getLogger(__name__)

TOKEN_KEY = "barron_refresh_token"
ACCESS_TOKEN_SAFETY_MARGIN_SECONDS = 300
DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS = 3600
DEFAULT_REFRESH_TOKEN_LIFETIME_SECONDS = 14 * 24 * 60 * 60
LEASE_POLL_SECONDS = 0.25

ROTATE_INSTRUCTIONS = (
    "Obtain a new refresh token via /admin/orders/oauth/authorize-url and "
    "/admin/orders/oauth/exchange-code, or run `python scripts/init_db.py --refresh-token <token>`."
)


def _coerce_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class OAuthSettings:
    client_id: str
    client_secret: str
    token_url: str
    scope: str
    authorize_url: str = ""
    redirect_uri: str = ""
    env_refresh_token: str = ""
    timeout_seconds: float = 15.0
    lock_seconds: int = 30

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "OAuthSettings":
        return cls(
            client_id=safe_text(config.get("BARRON_CLIENT_ID")),
            client_secret=safe_text(config.get("BARRON_CLIENT_SECRET")),
            token_url=safe_text(config.get("BARRON_TOKEN_URL")),
            scope=safe_text(config.get("BARRON_SCOPE")),
            authorize_url=safe_text(config.get("BARRON_AUTHORIZE_URL")),
            redirect_uri=safe_text(config.get("BARRON_REDIRECT_URI")),
            env_refresh_token=safe_text(config.get("BARRON_REFRESH_TOKEN")),
            timeout_seconds=float(config.get("UPSTREAM_TIMEOUT_SECONDS") or 15.0),
            lock_seconds=int(config.get("TOKEN_LOCK_SECONDS") or 30),
        )

    def require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError("BARRON_CLIENT_ID and BARRON_CLIENT_SECRET environment variables are required.")


@dataclass
class TokenCache:
    access_token: str | None = None
    expires_at: float = 0.0  # epoch seconds, already reduced by the safety margin
    refresh_token: str | None = None

    def is_valid(self, now: float) -> bool:
        return bool(self.access_token) and self.expires_at > now

    def clear(self) -> None:
        self.access_token = None
        self.expires_at = 0.0
        self.refresh_token = None


class RefreshTokenStore:
    """Durable refresh token row plus a short-lived lease used to single-flight refreshes."""

    def __init__(self, sm: sessionmaker, *, token_key: str = TOKEN_KEY):
        self._sm = sm
        self.token_key = token_key

    def load(self) -> str | None:
        try:
            with session_scope(self._sm) as s:
                row = s.get(ApiToken, self.token_key)
                if not row or not row.token_value:
                    return None
                if row.expires_at:
                    days_left = (row.expires_at - datetime.utcnow()).total_seconds() / 86400
                    if days_left < 1:
                        logger.warning("Stored refresh token expires in %.1f days; rotate it soon.", days_left)
                return row.token_value
        except SQLAlchemyError:
            logger.exception("Reading stored refresh token failed; falling back to cache/env.")
            return None

    def save(self, token: str, expires_in: int | None = None, *, actor: str = "token_manager", rotated: bool = False) -> None:
        """Upsert the durable refresh token. Raises on database failure."""
        lifetime = _coerce_int(expires_in, DEFAULT_REFRESH_TOKEN_LIFETIME_SECONDS)
        now = datetime.utcnow()
        expires_at = now + timedelta(seconds=lifetime)
        with session_scope(self._sm) as s:
            row = s.get(ApiToken, self.token_key)
            if row is None:
                row = ApiToken(token_key=self.token_key)
                s.add(row)
            row.token_value = token
            row.expires_at = expires_at
            row.updated_at = now
            record_event(
                s,
                actor=actor,
                action="barron.refresh_token_rotated" if rotated else "barron.refresh_token_saved",
                entity_type="ApiToken",
                entity_id=self.token_key,
                metadata={"expires_at": expires_at.isoformat(timespec="seconds")},
            )
        logger.info("Refresh token saved (rotated=%s, expires_at=%s)", rotated, expires_at.isoformat(timespec="seconds"))

    def _ensure_row(self, now: datetime) -> None:
        with session_scope(self._sm) as s:
            if s.get(ApiToken, self.token_key) is not None:
                return
        try:
            with session_scope(self._sm) as s:
                s.add(ApiToken(token_key=self.token_key, token_value=None, updated_at=now))
        except IntegrityError:
            logger.debug("api_tokens row created concurrently")

    def try_acquire_lease(self, owner: str, seconds: int) -> bool:
        now = datetime.utcnow()
        self._ensure_row(now)
        with session_scope(self._sm) as s:
            updated = (
                s.query(ApiToken)
                .filter(
                    ApiToken.token_key == self.token_key,
                    or_(ApiToken.locked_until.is_(None), ApiToken.locked_until < now, ApiToken.lock_owner == owner),
                )
                .update(
                    {ApiToken.lock_owner: owner, ApiToken.locked_until: now + timedelta(seconds=seconds)},
                    synchronize_session=False,
                )
            )
        return bool(updated)

    def release_lease(self, owner: str) -> None:
        try:
            with session_scope(self._sm) as s:
                (
                    s.query(ApiToken)
                    .filter(ApiToken.token_key == self.token_key, ApiToken.lock_owner == owner)
                    .update({ApiToken.lock_owner: None, ApiToken.locked_until: None}, synchronize_session=False)
                )
        except SQLAlchemyError:
            logger.exception("Releasing refresh lease failed; it expires on its own.")


class TokenManager:
    """
    Long-lived owner of the access-token cache. One instance per app (see OrderPipeline).

    get_access_token() returns a cached token without any I/O while it is valid. Refreshes are
    single-flight: an asyncio lock within the event loop and a lease row across processes.

    The lease and durable-token reads and writes are short synchronous DB calls made on the
    event loop. They only happen on the refresh path, once per expiry, before the delivery
    fan-out starts, so no tracking request is ever in flight while they block.
    """

    def __init__(
        self,
        settings: OAuthSettings,
        store: RefreshTokenStore,
        *,
        cache: TokenCache | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.cache = cache or TokenCache()
        self._clock = clock
        self._owner = uuid.uuid4().hex
        self._pending_refresh_token: str | None = None
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    def _refresh_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to the loop it is first used on; each asyncio.run() gets a fresh loop.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def get_access_token(self, http: httpx.AsyncClient) -> str:
        if self.cache.is_valid(self._clock()):
            return self.cache.access_token  # type: ignore[return-value]
        async with self._refresh_lock():
            if self.cache.is_valid(self._clock()):
                return self.cache.access_token  # type: ignore[return-value]
            return await self._refresh(http)

    async def _refresh(self, http: httpx.AsyncClient) -> str:
        self.settings.require_credentials()
        leased = await self._acquire_lease()
        try:
            refresh_token = self._resolve_refresh_token()
            if not refresh_token:
                raise AuthError(f"No Barron refresh token is available. {ROTATE_INSTRUCTIONS}")
            data = await self._post_token(http, {"grant_type": "refresh_token", "refresh_token": refresh_token})
            return self._accept_token_response(data, used_refresh_token=refresh_token)
        finally:
            if leased:
                self.store.release_lease(self._owner)

    async def _acquire_lease(self) -> bool:
        deadline = time.monotonic() + self.settings.lock_seconds
        while True:
            try:
                if self.store.try_acquire_lease(self._owner, self.settings.lock_seconds):
                    return True
            except SQLAlchemyError:
                logger.exception("Refresh lease unavailable; refreshing without it.")
                return False
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for refresh lease held by another process; refreshing anyway.")
                return False
            await asyncio.sleep(LEASE_POLL_SECONDS)

    def _resolve_refresh_token(self) -> str | None:
        pending = self._pending_refresh_token
        if pending:
            try:
                self.store.save(pending, rotated=True)
                self._pending_refresh_token = None
            except SQLAlchemyError:
                logger.exception("Pending rotated refresh token still cannot be persisted.")
            return pending
        return self.store.load() or self.cache.refresh_token or self.settings.env_refresh_token or None

    async def _post_token(self, http: httpx.AsyncClient, grant: dict[str, str]) -> dict[str, Any]:
        form = {
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "scope": self.settings.scope,
            **grant,
        }
        try:
            resp = await http.post(
                self.settings.token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self.settings.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"Token endpoint request failed: {e}") from e

        if resp.status_code in (400, 401):
            self.cache.clear()
            raise AuthError(
                f"Refresh token is invalid or expired ({resp.status_code}). {ROTATE_INSTRUCTIONS} "
                f"Upstream said: {resp.text[:300]}"
            )
        if not resp.is_success:
            raise UpstreamError(
                f"Failed to get access token: HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text[:1000],
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Token endpoint returned invalid JSON", status_code=resp.status_code) from e
        if not isinstance(data, dict) or not safe_text(data.get("access_token")):
            raise UpstreamError("Token endpoint response has no access_token", status_code=resp.status_code)
        return data

    def _accept_token_response(self, data: dict[str, Any], *, used_refresh_token: str | None) -> str:
        access_token = safe_text(data.get("access_token"))
        expires_in = _coerce_int(data.get("expires_in"), DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS)
        issued = safe_text(data.get("refresh_token"))
        refresh_expires_in = data.get("refresh_token_expires_in")

        if issued and issued != used_refresh_token:
            logger.info("New refresh token issued; persisting before use.")
            try:
                self.store.save(issued, refresh_expires_in, rotated=True)
            except SQLAlchemyError as e:
                self.cache.clear()
                self._pending_refresh_token = issued
                logger.exception("Persisting rotated refresh token failed; kept in memory as pending.")
                raise AuthError("Rotated refresh token could not be persisted; retry shortly.") from e
        elif issued and refresh_expires_in:
            try:
                self.store.save(issued, refresh_expires_in)
            except SQLAlchemyError:
                logger.exception("Updating refresh token expiry failed.")

        self.cache.access_token = access_token
        self.cache.expires_at = self._clock() + expires_in - ACCESS_TOKEN_SAFETY_MARGIN_SECONDS
        self.cache.refresh_token = issued or used_refresh_token
        logger.info("Access token refreshed (len=%d, expires_in=%ss)", len(access_token), expires_in)
        return access_token

    def build_authorize_url(self, state: str) -> str:
        if not self.settings.client_id:
            raise ConfigurationError("BARRON_CLIENT_ID environment variable is required.")
        if not self.settings.authorize_url or not self.settings.redirect_uri:
            raise ConfigurationError("BARRON_AUTHORIZE_URL and BARRON_REDIRECT_URI are required for the code flow.")
        params = {
            "client_id": self.settings.client_id,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "scope": self.settings.scope,
            "state": state,
            "response_mode": "query",
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    async def exchange_authorization_code(self, http: httpx.AsyncClient, code: str) -> dict[str, Any]:
        """One-time authorization-code exchange. The refresh token is stored durably, never returned."""
        self.settings.require_credentials()
        if not self.settings.redirect_uri:
            raise ConfigurationError("BARRON_REDIRECT_URI is required for the code flow.")
        data = await self._post_token(
            http,
            {"grant_type": "authorization_code", "code": code, "redirect_uri": self.settings.redirect_uri},
        )
        refresh_token = safe_text(data.get("refresh_token"))
        if not refresh_token:
            raise AuthError("Code exchange returned no refresh token; check that the offline_access scope is granted.")
        try:
            self.store.save(refresh_token, data.get("refresh_token_expires_in"), actor="oauth_code_exchange")
        except SQLAlchemyError as e:
            raise OrderTrackingError("Refresh token obtained but could not be stored.") from e
        self._pending_refresh_token = None
        self._accept_token_response(data, used_refresh_token=refresh_token)
        return {
            "success": True,
            "expires_in": data.get("expires_in"),
            "token_type": data.get("token_type"),
            "refresh_token_stored": True,
        }
