"""
Stuck-order alerts, at most one per order per UTC day.

The order_notification_log table doubles as an outbox: an intent row ('pending') is written
before the alert goes out and flipped to 'sent' afterwards. A failed send leaves the row
pending with attempts/last_error filled in, and the next pass on the same day retries it.
The unique (order_id, notified_date) index keeps two concurrent runs from both claiming an order.
"""
from __future__ import annotations

import logging
import smtplib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.merchops.db import session_scope
from app.merchops.modules.order_tracking.exceptions import NotificationError
from app.merchops.modules.order_tracking.models import OrderNotification

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"


@dataclass(frozen=True)
class StuckOrderAlert:
    order_id: str
    stage: str
    status_date: str
    customer_reference: str = ""
    order_date: str = ""
    days_in_status: float | None = None


@dataclass
class NotificationSummary:
    sent: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"sent": self.sent, "skipped": self.skipped, "failed": self.failed}


AlertSender = Callable[[StuckOrderAlert], None]


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def format_alert(alert: StuckOrderAlert) -> tuple[str, str]:
    subject = f"Order {alert.order_id} stuck in '{alert.stage}'"
    days = f"{alert.days_in_status:.1f}" if alert.days_in_status is not None else "?"
    body = "\n".join(
        [
            f"Order {alert.order_id} has not moved out of '{alert.stage}' for {days} days.",
            "",
            f"Stage: {alert.stage}",
            f"In stage since: {alert.status_date or '-'}",
            f"Customer reference: {alert.customer_reference or '-'}",
            f"Order date: {alert.order_date or '-'}",
        ]
    )
    return subject, body


@dataclass(frozen=True)
class EmailAlertSender:
    smtp_server: str
    smtp_port: int
    from_email: str
    recipients: tuple[str, ...]
    username: str = ""
    password: str = ""
    timeout_seconds: float = 15.0

    def __call__(self, alert: StuckOrderAlert) -> None:
        subject, body = format_alert(alert)
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = ", ".join(self.recipients)
        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout_seconds) as server:
                server.starttls()
                if self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.from_email, list(self.recipients), msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"Failed sending alert for {alert.order_id}: {e}") from e
        logger.info("NOTIFY: alert email sent for %s -> %s", alert.order_id, list(self.recipients))


class LoggingAlertSender:
    """Used when no alert recipients are configured."""

    def __call__(self, alert: StuckOrderAlert) -> None:
        logger.warning(
            "NOTIFY: order %s stuck in %r since %s (ref=%r)",
            alert.order_id,
            alert.stage,
            alert.status_date,
            alert.customer_reference,
        )


def build_alert_sender(config: Mapping[str, Any]) -> AlertSender:
    recipients = tuple(config.get("ALERT_EMAILS") or ())
    server = (config.get("SMTP_SERVER") or "").strip()
    if recipients and server:
        return EmailAlertSender(
            smtp_server=server,
            smtp_port=int(config.get("SMTP_PORT") or 587),
            from_email=(config.get("FROM_EMAIL") or config.get("SMTP_USERNAME") or "").strip(),
            recipients=recipients,
            username=(config.get("SMTP_USERNAME") or "").strip(),
            password=config.get("SMTP_PASSWORD") or "",
            timeout_seconds=float(config.get("UPSTREAM_TIMEOUT_SECONDS") or 15.0),
        )
    if recipients:
        logger.warning("NOTIFY: ALERT_EMAILS set but SMTP_SERVER is missing; alerts will only be logged")
    return LoggingAlertSender()


class NotificationDispatcher:
    """notify_stuck_orders() never raises; every outcome is counted in the returned summary."""

    def __init__(self, sm: sessionmaker, sender: AlertSender, *, today: Callable[[], str] | None = None):
        self._sm = sm
        self.sender = sender
        self._today = today or utc_today

    def _load_today(self, today: str) -> dict[str, str]:
        with session_scope(self._sm) as s:
            rows = (
                s.query(OrderNotification.order_id, OrderNotification.status)
                .filter(OrderNotification.notified_date == today)
                .all()
            )
            return {r.order_id: r.status for r in rows}

    def _claim(self, alert: StuckOrderAlert, today: str) -> bool:
        """Write the pending intent row. False when another run already holds it."""
        try:
            with session_scope(self._sm) as s:
                s.add(
                    OrderNotification(
                        order_id=alert.order_id,
                        notified_date=today,
                        stage=alert.stage,
                        status_date=alert.status_date,
                        status=STATUS_PENDING,
                        attempts=0,
                    )
                )
        except IntegrityError:
            logger.info("NOTIFY: %s already claimed for %s by another run", alert.order_id, today)
            return False
        return True

    def _mark(self, order_id: str, today: str, *, error: str | None) -> None:
        with session_scope(self._sm) as s:
            row = (
                s.query(OrderNotification)
                .filter(OrderNotification.order_id == order_id, OrderNotification.notified_date == today)
                .one()
            )
            row.attempts = (row.attempts or 0) + 1
            if error is None:
                row.status = STATUS_SENT
                row.sent_at = datetime.utcnow()
                row.last_error = None
            else:
                row.last_error = error[:1000]

    def _dispatch(self, alert: StuckOrderAlert, today: str, known: dict[str, str]) -> str:
        status = known.get(alert.order_id)
        if status == STATUS_SENT:
            return "skipped"
        if status is None:
            if not self._claim(alert, today):
                known[alert.order_id] = STATUS_SENT
                return "skipped"
            known[alert.order_id] = STATUS_PENDING

        try:
            self.sender(alert)
        except Exception as e:  # any sender failure is retried on the next pass
            logger.warning("NOTIFY: alert for %s failed: %s", alert.order_id, e)
            try:
                self._mark(alert.order_id, today, error=str(e) or e.__class__.__name__)
            except SQLAlchemyError:
                logger.exception("NOTIFY: recording failure for %s failed", alert.order_id)
            return "failed"

        known[alert.order_id] = STATUS_SENT
        try:
            self._mark(alert.order_id, today, error=None)
        except SQLAlchemyError:
            # Alert is out; the pending row means a possible duplicate on the next pass.
            logger.exception("NOTIFY: marking %s as sent failed", alert.order_id)
        return "sent"

    def notify_stuck_orders(self, alerts: Iterable[StuckOrderAlert]) -> NotificationSummary:
        alerts = list(alerts)
        summary = NotificationSummary()
        if not alerts:
            return summary
        today = self._today()
        try:
            known = self._load_today(today)
        except SQLAlchemyError:
            logger.exception("NOTIFY: reading notification log failed; no alerts sent this pass")
            summary.failed = len(alerts)
            return summary

        for alert in alerts:
            try:
                outcome = self._dispatch(alert, today, known)
            except SQLAlchemyError:
                logger.exception("NOTIFY: notification log write failed for %s", alert.order_id)
                outcome = "failed"
            setattr(summary, outcome, getattr(summary, outcome) + 1)

        logger.info(
            "NOTIFY: %s sent=%s skipped=%s failed=%s", today, summary.sent, summary.skipped, summary.failed
        )
        return summary

    def notify_if_new(self, alert: StuckOrderAlert) -> bool:
        return self.notify_stuck_orders([alert]).sent == 1
