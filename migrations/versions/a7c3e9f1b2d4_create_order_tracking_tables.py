"""create order tracking tables

Revision ID: a7c3e9f1b2d4
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a7c3e9f1b2d4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)

    if not insp.has_table("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("actor_label", sa.String(length=128), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
        )
        op.create_index("idx_audit_events_action", "audit_events", ["action"])
        op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])

    # Refresh token row + refresh lease
    if not insp.has_table("api_tokens"):
        op.create_table(
            "api_tokens",
            sa.Column("token_key", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("token_value", sa.Text(), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("lock_owner", sa.String(length=64), nullable=True),
            sa.Column("locked_until", sa.DateTime(timezone=False), nullable=True),
        )
    else:
        cols = {c["name"] for c in insp.get_columns("api_tokens")}
        with op.batch_alter_table("api_tokens") as batch_op:
            if "lock_owner" not in cols:
                batch_op.add_column(sa.Column("lock_owner", sa.String(length=64), nullable=True))
            if "locked_until" not in cols:
                batch_op.add_column(sa.Column("locked_until", sa.DateTime(timezone=False), nullable=True))

    if not insp.has_table("quote_docs"):
        op.create_table(
            "quote_docs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("quote_no", sa.String(length=64), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("uq_quote_docs_quote_no", "quote_docs", ["quote_no"], unique=True)
        op.create_index("idx_quote_docs_created_at", "quote_docs", ["created_at"])

    if not insp.has_table("invoice_docs"):
        op.create_table(
            "invoice_docs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("invoice_no", sa.String(length=64), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
        op.create_index("idx_invoice_docs_invoice_no", "invoice_docs", ["invoice_no"])
        op.create_index("idx_invoice_docs_created_at", "invoice_docs", ["created_at"])

    # Stuck-order alert log / outbox
    if not insp.has_table("order_notification_log"):
        op.create_table(
            "order_notification_log",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("notified_date", sa.String(length=10), nullable=False),
            sa.Column("stage", sa.Text(), nullable=True),
            sa.Column("status_date", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("sent_at", sa.DateTime(timezone=False), nullable=True),
            sa.CheckConstraint("status IN ('pending','sent')", name="ck_order_notification_log_status"),
        )
        op.create_index(
            "uq_order_notification_log_order_date",
            "order_notification_log",
            ["order_id", "notified_date"],
            unique=True,
        )
        op.create_index("idx_order_notification_log_notified_date", "order_notification_log", ["notified_date"])

    if not insp.has_table("order_pipeline_runs"):
        op.create_table(
            "order_pipeline_runs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("ran_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("kind", sa.String(length=32), nullable=False),
            sa.Column("orders_seen", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("stuck_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("alerts_sent", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("alerts_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("message", sa.Text(), nullable=True),
        )


def downgrade() -> None:
    op.drop_table("order_pipeline_runs")
    op.drop_index("idx_order_notification_log_notified_date", table_name="order_notification_log")
    op.drop_index("uq_order_notification_log_order_date", table_name="order_notification_log")
    op.drop_table("order_notification_log")
    op.drop_index("idx_invoice_docs_created_at", table_name="invoice_docs")
    op.drop_index("idx_invoice_docs_invoice_no", table_name="invoice_docs")
    op.drop_table("invoice_docs")
    op.drop_index("idx_quote_docs_created_at", table_name="quote_docs")
    op.drop_index("uq_quote_docs_quote_no", table_name="quote_docs")
    op.drop_table("quote_docs")
    op.drop_table("api_tokens")
    op.drop_index("idx_audit_events_created_at", table_name="audit_events")
    op.drop_index("idx_audit_events_action", table_name="audit_events")
    op.drop_table("audit_events")
