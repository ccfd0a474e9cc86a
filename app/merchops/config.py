import os
from dataclasses import dataclass

BARRON_TOKEN_URL = "https://barronb2c.b2clogin.com/barronb2c.onmicrosoft.com/B2C_1_SignIn_US/oauth2/v2.0/token"
BARRON_AUTHORIZE_URL = "https://barronb2c.b2clogin.com/barronb2c.onmicrosoft.com/B2C_1_SignIn_US/oauth2/v2.0/authorize"
BARRON_SCOPE = "openid offline_access https://barronb2c.onmicrosoft.com/4fbb5489-a64f-4ff6-a9f0-05f5fa2f72e5/Orders"
BARRON_ORDERS_URL = "https://integration.barron.com/orders/salesorders"
BARRON_DELIVERY_STATUS_URL = "https://integration.barron.com/orders/delivery-statuses"


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    dashboard_token: str

    barron_client_id: str
    barron_client_secret: str
    barron_refresh_token: str
    barron_token_url: str
    barron_authorize_url: str
    barron_redirect_uri: str
    barron_scope: str
    barron_orders_url: str
    barron_delivery_status_url: str

    upstream_timeout_seconds: float
    order_page_concurrency: int
    delivery_batch_size: int
    stuck_threshold_days: float
    invoice_scan_limit: int
    token_lock_seconds: int

    alert_emails: tuple[str, ...]
    smtp_server: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    from_email: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///merchops.db"),
        dashboard_token=_getenv("DASHBOARD_TOKEN", ""),
        barron_client_id=_getenv("BARRON_CLIENT_ID", ""),
        barron_client_secret=_getenv("BARRON_CLIENT_SECRET", ""),
        barron_refresh_token=_getenv("BARRON_REFRESH_TOKEN", ""),
        barron_token_url=_getenv("BARRON_TOKEN_URL", BARRON_TOKEN_URL),
        barron_authorize_url=_getenv("BARRON_AUTHORIZE_URL", BARRON_AUTHORIZE_URL),
        barron_redirect_uri=_getenv("BARRON_REDIRECT_URI", ""),
        barron_scope=_getenv("BARRON_SCOPE", BARRON_SCOPE),
        barron_orders_url=_getenv("BARRON_ORDERS_URL", BARRON_ORDERS_URL),
        barron_delivery_status_url=_getenv("BARRON_DELIVERY_STATUS_URL", BARRON_DELIVERY_STATUS_URL),
        upstream_timeout_seconds=_getenv_float("UPSTREAM_TIMEOUT_SECONDS", 15.0),
        order_page_concurrency=max(1, _getenv_int("ORDER_PAGE_CONCURRENCY", 10)),
        delivery_batch_size=max(1, _getenv_int("DELIVERY_BATCH_SIZE", 10)),
        stuck_threshold_days=_getenv_float("STUCK_THRESHOLD_DAYS", 3.0),
        invoice_scan_limit=max(1, _getenv_int("INVOICE_SCAN_LIMIT", 1000)),
        token_lock_seconds=max(1, _getenv_int("TOKEN_LOCK_SECONDS", 30)),
        alert_emails=tuple(e.strip() for e in _getenv("ALERT_EMAILS").split(",") if e.strip()),
        smtp_server=_getenv("SMTP_SERVER", "smtp.office365.com"),
        smtp_port=_getenv_int("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        from_email=_getenv("FROM_EMAIL", ""),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "DASHBOARD_TOKEN": s.dashboard_token,
        # upstream order API (OAuth2, rotating refresh tokens)
        "BARRON_CLIENT_ID": s.barron_client_id,
        "BARRON_CLIENT_SECRET": s.barron_client_secret,
        "BARRON_REFRESH_TOKEN": s.barron_refresh_token,
        "BARRON_TOKEN_URL": s.barron_token_url,
        "BARRON_AUTHORIZE_URL": s.barron_authorize_url,
        "BARRON_REDIRECT_URI": s.barron_redirect_uri,
        "BARRON_SCOPE": s.barron_scope,
        "BARRON_ORDERS_URL": s.barron_orders_url,
        "BARRON_DELIVERY_STATUS_URL": s.barron_delivery_status_url,
        # pipeline tuning
        "UPSTREAM_TIMEOUT_SECONDS": s.upstream_timeout_seconds,
        "ORDER_PAGE_CONCURRENCY": s.order_page_concurrency,
        "DELIVERY_BATCH_SIZE": s.delivery_batch_size,
        "STUCK_THRESHOLD_DAYS": s.stuck_threshold_days,
        "INVOICE_SCAN_LIMIT": s.invoice_scan_limit,
        "TOKEN_LOCK_SECONDS": s.token_lock_seconds,
        # stuck-order alerts
        "ALERT_EMAILS": list(s.alert_emails),
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "FROM_EMAIL": s.from_email,
    }
