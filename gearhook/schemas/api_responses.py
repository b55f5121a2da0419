"""
API request/response schemas for the webhook ingestion and admin endpoints.
"""
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field


class IngestResponse(BaseModel):
    status: Literal["processed", "failed", "duplicate", "ignored", "processing"]
    event_id: str
    error_code: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None


class EventSummaryItem(BaseModel):
    id: str
    event_id: str
    event_type: str
    version: str
    status: str
    received_at: datetime
    processed_at: Optional[datetime] = None
    signature_valid: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retried_at: Optional[datetime] = None
    duplicate_count: int = 0
    ignored_at: Optional[datetime] = None
    ignored_by_user_id: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None


class EventDetail(EventSummaryItem):
    signature_provided: Optional[str] = None
    signature_computed: Optional[str] = None
    source_ip: Optional[str] = None
    raw_payload: dict[str, Any]
    payload_hash: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    last_duplicate_at: Optional[datetime] = None
    ignore_note: Optional[str] = None
    correlation_id: Optional[str] = None


class PaginationInfo(BaseModel):
    page: int
    page_size: int = Field(serialization_alias="pageSize")
    total: int
    total_pages: int = Field(serialization_alias="totalPages")


class EventListResponse(BaseModel):
    events: list[EventSummaryItem]
    pagination: PaginationInfo


class SummaryResponse(BaseModel):
    by_status: dict[str, int]
    by_event_type: dict[str, int]
    failed_not_ignored_count: int
    ignored_count: int = 0
    duplicate_deliveries: int = 0


class ReplayRequest(BaseModel):
    mode: Literal["safe", "force"]
    confirm_token: Optional[str] = None


class ReplayResponse(BaseModel):
    success: bool
    noop: bool
    message: str
    status: str
    error_code: Optional[str] = None
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[str] = None


class IgnoreRequest(BaseModel):
    note: str


class IgnoreResponse(BaseModel):
    success: bool = True
    event_id: str
    ignored_at: datetime
    ignored_by_user_id: str
    ignore_note: str


class PurchaseReceivedResponse(BaseModel):
    success: bool = True
    purchase_id: str
    status: str
    gear_received_at: Optional[datetime] = None
    notify_at: Optional[datetime] = None
    message: str
