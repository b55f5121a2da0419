"""
Webhook event log - one row per external event_id, never deleted.

The unique index on event_id is the dedup anchor: a second delivery of the
same event cannot insert a second row and is counted in duplicate_count
instead. related_entity_type/related_entity_id point at the business row the
event mutated, without a foreign key (events can target any entity kind).
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from gearhook.database import Base


class WebhookEventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    # Ingestion outcome for a repeat delivery; never stored as a row status
    DUPLICATE = "DUPLICATE"


REPLAYABLE_STATUSES = (WebhookEventStatus.FAILED.value, WebhookEventStatus.PROCESSED.value)


class WebhookEventLog(Base):
    __tablename__ = "webhook_event_logs"
    __table_args__ = (
        Index("ix_webhook_event_logs_status_received_at", "status", "received_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    version: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.PENDING.value,
        server_default=WebhookEventStatus.PENDING.value,
    )

    # Signature audit - signature_valid is written once at ingestion
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    signature_provided: Mapped[Optional[str]] = mapped_column(String(255))
    signature_computed: Mapped[Optional[str]] = mapped_column(String(255))
    source_ip: Mapped[Optional[str]] = mapped_column(String(64))

    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    payload_hash: Mapped[Optional[str]] = mapped_column(String(64))
    search_text: Mapped[Optional[str]] = mapped_column(Text)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Only replay actions touch these
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_retried_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_duplicate_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Ignore is terminal; note is required whenever ignored_at is set
    ignored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    ignored_by_user_id: Mapped[Optional[str]] = mapped_column(String(255))
    ignore_note: Mapped[Optional[str]] = mapped_column(Text)

    related_entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    related_entity_id: Mapped[Optional[str]] = mapped_column(String(255))

    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    @property
    def is_ignored(self) -> bool:
        return self.ignored_at is not None

    def __repr__(self) -> str:
        return f"<WebhookEventLog(event_id={self.event_id}, type={self.event_type}, status={self.status})>"
