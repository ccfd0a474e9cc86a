from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.merchops.models import Base


class ApiToken(Base):
    """Durable copy of an upstream refresh token. The row is the source of truth across processes."""

    __tablename__ = "api_tokens"

    token_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Short-lived refresh lease (single-flight across processes)
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class QuoteDoc(Base):
    """Stored quote. Written by the quote builder; read-only for the order pipeline."""

    __tablename__ = "quote_docs"
    __table_args__ = (
        Index("uq_quote_docs_quote_no", "quote_no", unique=True),
        Index("idx_quote_docs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    quote_no: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class InvoiceDoc(Base):
    """Stored invoice. Linked to quotes only through its payload text (no foreign key)."""

    __tablename__ = "invoice_docs"
    __table_args__ = (
        Index("idx_invoice_docs_invoice_no", "invoice_no"),
        Index("idx_invoice_docs_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    invoice_no: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class OrderNotification(Base):
    """
    Stuck-order alert log and outbox.

    One row per (order_id, notified_date). The row is written as 'pending' before the alert
    is dispatched and flipped to 'sent' afterwards; pending rows are retried on the next pass.
    """

    __tablename__ = "order_notification_log"
    __table_args__ = (
        CheckConstraint("status IN ('pending','sent')", name="ck_order_notification_log_status"),
        Index("uq_order_notification_log_order_date", "order_id", "notified_date", unique=True),
        Index("idx_order_notification_log_notified_date", "notified_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notified_date: Mapped[str] = mapped_column(String(10), nullable=False)  # UTC YYYY-MM-DD

    stage: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_date: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)


class OrderPipelineRun(Base):
    __tablename__ = "order_pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # orders | status_counts | export
    orders_seen: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stuck_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
