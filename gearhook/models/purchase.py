"""
Pending purchase - created when a customer accepts a quote through the bot.
Staff review it in Incoming Gear, then it moves through delivery and inspection.

version_id is bumped on every UPDATE so replays can be checked for
accidental mutation.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, DateTime, ForeignKey, Integer, Index, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from gearhook.database import Base


class PendingPurchase(Base):
    __tablename__ = "pending_purchases"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Customer
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    whatsapp_conversation_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Quote
    total_quote_amount: Mapped[Optional[float]] = mapped_column(Float)
    bot_quote_accepted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    bot_conversation_data: Mapped[Optional[str]] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(40), nullable=False, default="PENDING_REVIEW"
    )  # PENDING_REVIEW, AWAITING_DELIVERY, INSPECTION_IN_PROGRESS, ...

    quote_confirmation_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True)
    quote_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # The webhook event that created this purchase
    source_event_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)

    # Delivery
    gear_received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    gear_received_by_user_id: Mapped[Optional[str]] = mapped_column(String(255))
    client_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items: Mapped[list["PurchaseItem"]] = relationship(
        back_populates="purchase", lazy="selectin", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("ix_pending_purchases_phone_conversation", "customer_phone", "whatsapp_conversation_id"),
    )

    def __repr__(self) -> str:
        return f"<PendingPurchase {self.id} {self.customer_name} status={self.status}>"


class PurchaseItem(Base):
    __tablename__ = "purchase_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    purchase_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pending_purchases.id"), nullable=False, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(255))
    model: Mapped[Optional[str]] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    condition: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[Optional[str]] = mapped_column(Text)
    serial_number: Mapped[Optional[str]] = mapped_column(String(255))

    bot_estimated_price: Mapped[Optional[float]] = mapped_column(Float)
    proposed_price: Mapped[Optional[float]] = mapped_column(Float)
    suggested_sell_price: Mapped[Optional[float]] = mapped_column(Float)

    image_urls: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")

    purchase: Mapped["PendingPurchase"] = relationship(back_populates="items")
