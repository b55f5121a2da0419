"""
Webhook payload schemas - the envelope every bot event arrives in, plus the
versioned payload models handlers validate against.

Field names mirror the bot's JSON (camelCase), as sent.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator


class WebhookEnvelope(BaseModel):
    """
    Every bot webhook must use this envelope.
    event_id is the dedup key; (event_type, version) selects the handler.
    """
    event_id: str = Field(min_length=1, max_length=255)
    event_type: str = Field(min_length=1, max_length=100)
    version: str = Field(max_length=20, pattern=r"^\d+\.\d+$")  # e.g. "1.0"
    timestamp: Optional[datetime] = None
    payload: Any = None

    @field_validator("event_id", "event_type")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class QuoteItemV1(BaseModel):
    """One item in an accepted quote."""
    # OCR text, used for matching only, never shown to users
    ocrText: Optional[str] = None
    ocrBrand: Optional[str] = None
    ocrModel: Optional[str] = None

    # Canonical, user-facing
    name: str = Field(min_length=1)
    brand: Optional[str] = None
    model: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    serialNumber: Optional[str] = None

    botEstimatedPrice: Optional[float] = Field(default=None, ge=0)
    proposedPrice: Optional[float] = Field(default=None, ge=0)
    suggestedSellPrice: Optional[float] = Field(default=None, gt=0)

    imageUrls: list[str] = Field(default_factory=list)


class QuoteAcceptedPayloadV1(BaseModel):
    """quote_accepted, version 1.0."""
    customerName: str = Field(min_length=1)
    customerPhone: str = Field(min_length=7)
    customerEmail: Optional[str] = None
    whatsappConversationId: Optional[str] = None
    totalQuoteAmount: Optional[float] = Field(default=None, gt=0)
    botQuoteAcceptedAt: Optional[datetime] = None
    botConversationData: Optional[dict[str, Any]] = None
    items: list[QuoteItemV1] = Field(min_length=1)

    @field_validator("customerEmail")
    @classmethod
    def _email_shape(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email address")
        return v


def extract_inner_payload(raw_payload: dict) -> Any:
    """The event body inside the envelope, or the raw document for bare payloads."""
    if isinstance(raw_payload, dict) and "payload" in raw_payload:
        return raw_payload["payload"]
    return raw_payload


_SEARCH_KEYS = ("customerName", "customerPhone", "customerEmail", "whatsappConversationId")


def build_search_text(raw_payload: dict) -> Optional[str]:
    """Lower-cased payload fields operators search by (name, phone, email, conversation)."""
    inner = extract_inner_payload(raw_payload)
    if not isinstance(inner, dict):
        return None
    parts = [str(inner[k]) for k in _SEARCH_KEYS if inner.get(k)]
    if not parts:
        return None
    return " ".join(parts).lower()
