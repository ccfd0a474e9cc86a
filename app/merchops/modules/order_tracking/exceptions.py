from __future__ import annotations


class OrderTrackingError(RuntimeError):
    pass


class ConfigurationError(OrderTrackingError):
    """Client credentials for the upstream API are missing. Fatal; an operator has to fix the env."""


class AuthError(OrderTrackingError):
    """The refresh token is missing or was rejected upstream. Needs a manual credential rotation."""


class UpstreamError(OrderTrackingError):
    """Non-2xx from an upstream endpoint where no baseline can be established without it."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class PartialFetchError(OrderTrackingError):
    """A later order page or a per-order lookup failed. Logged and degraded, never raised to callers."""

    def __init__(self, message: str, *, page: int | None = None, order_id: str | None = None):
        super().__init__(message)
        self.page = page
        self.order_id = order_id


class NotificationError(OrderTrackingError):
    """An alert could not be sent. Recorded on the outbox row and retried on the next pass."""
