"""Initial schema - webhook event log, pending purchases, scheduled jobs.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Webhook event log (one row per external event_id, never deleted)
    op.create_table(
        "webhook_event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("version", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("signature_valid", sa.Boolean, nullable=False),
        sa.Column("signature_provided", sa.String(255)),
        sa.Column("signature_computed", sa.String(255)),
        sa.Column("source_ip", sa.String(64)),
        sa.Column("raw_payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64)),
        sa.Column("search_text", sa.Text),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processing_started_at", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("error_code", sa.String(50)),
        sa.Column("error_message", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_retried_at", sa.DateTime(timezone=True)),
        sa.Column("duplicate_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_duplicate_at", sa.DateTime(timezone=True)),
        sa.Column("ignored_at", sa.DateTime(timezone=True)),
        sa.Column("ignored_by_user_id", sa.String(255)),
        sa.Column("ignore_note", sa.Text),
        sa.Column("related_entity_type", sa.String(50)),
        sa.Column("related_entity_id", sa.String(255)),
        sa.Column("correlation_id", sa.String(64)),
        sa.CheckConstraint(
            "ignored_at IS NULL OR (ignore_note IS NOT NULL AND length(trim(ignore_note)) > 0)",
            name="ck_webhook_event_logs_ignore_note",
        ),
    )
    op.create_index("ix_webhook_event_logs_event_id", "webhook_event_logs", ["event_id"], unique=True)
    op.create_index("ix_webhook_event_logs_event_type", "webhook_event_logs", ["event_type"])
    op.create_index("ix_webhook_event_logs_status_received_at", "webhook_event_logs", ["status", "received_at"])
    op.create_index("ix_webhook_event_logs_correlation_id", "webhook_event_logs", ["correlation_id"])

    # Pending purchases (created by quote_accepted)
    op.create_table(
        "pending_purchases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("whatsapp_conversation_id", sa.String(255)),
        sa.Column("total_quote_amount", sa.Float),
        sa.Column("bot_quote_accepted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("bot_conversation_data", sa.Text),
        sa.Column("status", sa.String(40), nullable=False, server_default="PENDING_REVIEW"),
        sa.Column("quote_confirmation_token", sa.String(64), unique=True),
        sa.Column("quote_token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("source_event_id", sa.String(255)),
        sa.Column("gear_received_at", sa.DateTime(timezone=True)),
        sa.Column("gear_received_by_user_id", sa.String(255)),
        sa.Column("client_notified_at", sa.DateTime(timezone=True)),
        sa.Column("version_id", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_pending_purchases_source_event_id", "pending_purchases", ["source_event_id"])
    op.create_index(
        "ix_pending_purchases_phone_conversation", "pending_purchases",
        ["customer_phone", "whatsapp_conversation_id"],
    )

    op.create_table(
        "purchase_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "purchase_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("pending_purchases.id"), nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("brand", sa.String(255)),
        sa.Column("model", sa.String(255)),
        sa.Column("category", sa.String(100)),
        sa.Column("condition", sa.String(100)),
        sa.Column("description", sa.Text),
        sa.Column("serial_number", sa.String(255)),
        sa.Column("bot_estimated_price", sa.Float),
        sa.Column("proposed_price", sa.Float),
        sa.Column("suggested_sell_price", sa.Float),
        sa.Column("image_urls", sa.JSON),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
    )
    op.create_index("ix_purchase_items_purchase_id", "purchase_items", ["purchase_id"])

    # Durable delayed jobs
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_scheduled_jobs_due", "scheduled_jobs", ["status", "run_at"])
    op.create_index("ix_scheduled_jobs_entity", "scheduled_jobs", ["kind", "entity_type", "entity_id"])
    # At most one pending job per entity
    op.create_index(
        "uq_scheduled_jobs_pending_entity", "scheduled_jobs",
        ["kind", "entity_type", "entity_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_table("scheduled_jobs")
    op.drop_table("purchase_items")
    op.drop_table("pending_purchases")
    op.drop_table("webhook_event_logs")
