"""
Tests for gearhook/services/event_store.py - dedup insert, claims, status helpers.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from gearhook.errors import StoreUnavailable
from gearhook.models.webhook_event import WebhookEventLog, WebhookEventStatus
from gearhook.schemas.related_entity import PurchaseRef
from gearhook.services import event_store
from gearhook.utils.logging import set_correlation_id
from gearhook.utils.webhook_signatures import SignatureCheck

VALID = SignatureCheck(valid=True, provided="sha256=aa", computed="sha256=aa")


async def _insert(db, event_id="evt_001", raw=None, signature=VALID, **kwargs):
    return await event_store.insert_if_absent(
        db,
        event_id=event_id,
        event_type="quote_accepted",
        version="1.0",
        raw_payload=raw or {"event_id": event_id, "payload": {"customerName": "Thabo", "customerPhone": "+27825550123"}},
        signature=signature,
        source_ip="10.0.0.1",
        retry_backoff_seconds=0,
        **kwargs,
    )


class TestInsertIfAbsent:
    async def test_first_insert_is_new_and_pending(self, db):
        result = await _insert(db)
        assert result.is_new is True
        assert result.event.status == WebhookEventStatus.PENDING.value
        assert result.event.retry_count == 0
        assert result.event.signature_valid is True
        assert result.event.source_ip == "10.0.0.1"
        assert result.event.search_text == "thabo +27825550123"

    async def test_second_insert_is_duplicate_with_one_row(self, db):
        await _insert(db)
        result = await _insert(db)

        assert result.is_new is False
        assert result.event.event_id == "evt_001"
        assert result.event.duplicate_count == 1
        assert result.event.last_duplicate_at is not None

        count = (await db.execute(
            select(func.count()).select_from(WebhookEventLog).where(WebhookEventLog.event_id == "evt_001")
        )).scalar()
        assert count == 1

    async def test_duplicate_does_not_change_status_or_signature(self, db):
        first = await _insert(db)
        event_store.mark_processed(first.event, PurchaseRef("p-1"))
        await db.commit()

        invalid = SignatureCheck(valid=False, provided=None, computed="sha256=bb")
        result = await _insert(db, signature=invalid)
        assert result.event.status == WebhookEventStatus.PROCESSED.value
        assert result.event.signature_valid is True
        assert result.event.related_entity_id == "p-1"

    async def test_duplicate_counter_accumulates(self, db):
        for _ in range(3):
            result = await _insert(db)
        assert result.event.duplicate_count == 2

    async def test_transient_error_retried_then_succeeds(self, db):
        real = event_store._try_insert
        calls = {"n": 0}

        async def flaky(session, fields):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("connection reset"))
            return await real(session, fields)

        with patch("gearhook.services.event_store._try_insert", side_effect=flaky):
            result = await _insert(db, retry_attempts=3)
        assert result.is_new is True
        assert calls["n"] == 2

    async def test_store_unavailable_after_retries(self, db):
        failing = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        with patch("gearhook.services.event_store._try_insert", failing):
            with pytest.raises(StoreUnavailable) as exc_info:
                await _insert(db, retry_attempts=3)
        assert failing.await_count == 3
        assert exc_info.value.http_status == 503

    async def test_oversized_header_values_clipped_to_columns(self, db):
        long_sig = SignatureCheck(valid=False, provided="sha256=" + "a" * 1000, computed="sha256=bb")
        set_correlation_id("c" * 500)

        result = await event_store.insert_if_absent(
            db,
            event_id="evt_long",
            event_type="quote_accepted",
            version="1.0",
            raw_payload={},
            signature=long_sig,
            source_ip="1" * 300,
            retry_backoff_seconds=0,
        )

        assert len(result.event.signature_provided) == 255
        assert len(result.event.correlation_id) == 64
        assert len(result.event.source_ip) == 64


class TestClaim:
    async def test_claim_pending_once(self, db):
        await _insert(db)
        assert await event_store.claim(db, "evt_001", [WebhookEventStatus.PENDING]) is True
        assert await event_store.claim(db, "evt_001", [WebhookEventStatus.PENDING]) is False

        event = await event_store.get_event(db, "evt_001")
        assert event.status == WebhookEventStatus.PROCESSING.value
        assert event.processing_started_at is not None

    async def test_claim_refuses_ignored(self, db):
        result = await _insert(db)
        result.event.ignored_at = result.event.received_at
        result.event.ignore_note = "test noise"
        await db.commit()
        assert await event_store.claim(db, "evt_001", ["PENDING"]) is False

    async def test_claim_unknown_event(self, db):
        assert await event_store.claim(db, "missing", ["PENDING"]) is False


class TestStatusHelpers:
    async def test_mark_failed_truncates_and_keeps_retry_count(self, db):
        result = await _insert(db)
        event_store.mark_failed(result.event, "handler_exception", "x" * 5000, max_length=100)
        await db.commit()

        event = await event_store.get_event(db, "evt_001")
        assert event.status == "FAILED"
        assert event.error_code == "handler_exception"
        assert len(event.error_message) == 100
        assert event.error_message.endswith("...")
        assert event.retry_count == 0
        assert event.processed_at is not None

    async def test_mark_processed_keeps_existing_related_when_none_given(self, db):
        result = await _insert(db)
        result.event.related_entity_type = "PendingPurchase"
        result.event.related_entity_id = "p-1"
        event_store.mark_processed(result.event, None)
        assert result.event.related_entity_id == "p-1"
        assert result.event.error_code is None

    async def test_record_retry(self, db):
        result = await _insert(db)
        event_store.record_retry(result.event)
        event_store.record_retry(result.event)
        assert result.event.retry_count == 2
        assert result.event.last_retried_at is not None

    def test_truncate_error_short_message_unchanged(self):
        assert event_store.truncate_error("boom", 1000) == "boom"
