"""
Tests for gearhook/services/replay.py - safe and force replay.
"""
import pytest
from sqlalchemy import func, select

from gearhook.errors import (
    AlreadyIgnored,
    ConcurrencyConflict,
    EventNotFound,
    ForceConfirmationRequired,
    SignatureInvalid,
    ValidationFailed,
)
from gearhook.models.purchase import PendingPurchase
from gearhook.schemas.webhook_payloads import QuoteAcceptedPayloadV1
from gearhook.services import event_store
from gearhook.services.dispatcher import dispatch
from gearhook.services.handlers import (
    AppliedCheck,
    HandlerRegistration,
    HandlerRegistry,
)
from gearhook.services.replay import replay_event
from gearhook.utils.webhook_signatures import SignatureCheck

VALID = SignatureCheck(valid=True, provided="sha256=aa", computed="sha256=aa")
INVALID = SignatureCheck(valid=False, provided="sha256=00", computed="sha256=aa")


async def _store(db, raw, event_id="evt_001", signature=VALID):
    result = await event_store.insert_if_absent(
        db,
        event_id=event_id,
        event_type=raw.get("event_type", "quote_accepted"),
        version=raw.get("version", "1.0"),
        raw_payload=raw,
        signature=signature,
        retry_backoff_seconds=0,
    )
    return result.event


async def _failed_event(db, raw, event_id="evt_001", signature=VALID):
    event = await _store(db, raw, event_id=event_id, signature=signature)
    event_store.mark_failed(event, "handler_exception", "RuntimeError: db timeout")
    await db.commit()
    return event


async def _purchase_count(db):
    return (await db.execute(select(func.count()).select_from(PendingPurchase))).scalar()


class TestSafeReplay:
    async def test_processed_event_is_noop(self, db, mailer, settings, make_envelope):
        await _store(db, make_envelope())
        await dispatch(db, "evt_001", mailer=mailer, settings=settings)
        purchase = (await db.execute(select(PendingPurchase))).scalar_one()
        version_before = purchase.version_id
        emails_before = len(mailer.sent)

        result = await replay_event(
            db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings,
        )

        assert result.ok is True
        assert result.noop is True
        assert result.status == "PROCESSED"
        assert result.related.purchase_id == str(purchase.id)
        assert await _purchase_count(db) == 1
        assert len(mailer.sent) == emails_before

        purchase = (await db.execute(
            select(PendingPurchase).execution_options(populate_existing=True)
        )).scalar_one()
        assert purchase.version_id == version_before

        event = await event_store.get_event(db, "evt_001")
        assert event.status == "PROCESSED"
        assert event.reviewed_at is not None
        assert event.retry_count == 0

    async def test_failed_event_not_applied_runs_handler(self, db, mailer, settings, make_envelope):
        await _failed_event(db, make_envelope())

        result = await replay_event(
            db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings,
        )

        assert result.ok is True
        assert result.noop is False
        assert result.status == "PROCESSED"
        assert await _purchase_count(db) == 1

        event = await event_store.get_event(db, "evt_001")
        assert event.status == "PROCESSED"
        assert event.retry_count == 1
        assert event.last_retried_at is not None
        assert event.error_code is None
        assert event.error_message.startswith("Replay (safe) by admin-1")
        assert event.related_entity_id == result.related.purchase_id
        assert len(mailer.sent) == 1

    async def test_failed_event_already_applied_backfills_related(self, db, mailer, settings, make_envelope):
        """A purchase from an earlier attempt exists but the event never pointed at it."""
        await _store(db, make_envelope())
        await dispatch(db, "evt_001", mailer=mailer, settings=settings)
        event = await event_store.get_event(db, "evt_001")
        purchase_id = event.related_entity_id
        event.status = "FAILED"
        event.error_code = "handler_exception"
        event.related_entity_type = None
        event.related_entity_id = None
        await db.commit()

        result = await replay_event(
            db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings,
        )

        assert result.noop is True
        assert result.status == "FAILED"
        event = await event_store.get_event(db, "evt_001")
        assert event.status == "FAILED"
        assert event.related_entity_type == "PendingPurchase"
        assert event.related_entity_id == purchase_id
        assert await _purchase_count(db) == 1

    async def test_same_customer_conversation_counts_as_applied(self, db, mailer, settings, make_envelope):
        await _store(db, make_envelope(event_id="evt_001"), event_id="evt_001")
        await dispatch(db, "evt_001", mailer=mailer, settings=settings)
        await _failed_event(db, make_envelope(event_id="evt_002"), event_id="evt_002")

        result = await replay_event(
            db, "evt_002", "safe", actor_id="admin-1", mailer=mailer, settings=settings,
        )

        assert result.noop is True
        assert await _purchase_count(db) == 1

    async def test_invalid_signature_refused(self, db, mailer, settings, make_envelope):
        await _failed_event(db, make_envelope(), signature=INVALID)

        with pytest.raises(SignatureInvalid) as exc_info:
            await replay_event(db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings)
        assert exc_info.value.http_status == 409

        event = await event_store.get_event(db, "evt_001")
        assert event.status == "FAILED"
        assert event.retry_count == 0

    async def test_handler_failure_recorded(self, db, mailer, settings, make_envelope):
        async def handle(ctx, payload):
            raise ConnectionError("inventory down")

        async def never_applied(ctx, payload):
            return AppliedCheck(applied=False)

        registry = HandlerRegistry()
        registry.register(HandlerRegistration(
            event_type="quote_accepted", version="1.0",
            payload_model=QuoteAcceptedPayloadV1,
            handle=handle, is_applied=never_applied,
        ))
        await _failed_event(db, make_envelope())

        result = await replay_event(
            db, "evt_001", "safe", actor_id="admin-1", mailer=mailer,
            settings=settings, registry=registry,
        )

        assert result.ok is False
        assert result.status == "FAILED"
        assert result.error_code == "handler_exception"
        event = await event_store.get_event(db, "evt_001")
        assert event.retry_count == 1
        assert "inventory down" in event.error_message

    async def test_unsupported_type_fails_and_counts_retry(self, db, mailer, settings, make_envelope):
        await _failed_event(db, make_envelope(event_type="quote_declined"))

        result = await replay_event(
            db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings,
        )

        assert result.ok is False
        assert result.error_code == "unsupported_event_type"
        event = await event_store.get_event(db, "evt_001")
        assert event.status == "FAILED"
        assert event.retry_count == 1


class TestForceReplay:
    async def test_requires_confirmation_then_creates_second_entity(
        self, db, mailer, settings, fake_redis, make_envelope,
    ):
        await _store(db, make_envelope())
        await dispatch(db, "evt_001", mailer=mailer, settings=settings)
        first_purchase_id = (await event_store.get_event(db, "evt_001")).related_entity_id

        with pytest.raises(ForceConfirmationRequired) as exc_info:
            await replay_event(db, "evt_001", "force", actor_id="admin-1", mailer=mailer, settings=settings)
        token = exc_info.value.details["confirm_token"]
        assert exc_info.value.http_status == 428
        assert exc_info.value.details["expires_in_seconds"] == settings.force_confirm_ttl_seconds
        assert await _purchase_count(db) == 1

        result = await replay_event(
            db, "evt_001", "force", actor_id="admin-1", mailer=mailer,
            confirm_token=token, settings=settings,
        )

        assert result.ok is True
        assert result.noop is False
        assert await _purchase_count(db) == 2
        event = await event_store.get_event(db, "evt_001")
        assert event.status == "PROCESSED"
        assert event.retry_count == 1
        assert event.related_entity_id != first_purchase_id
        assert event.error_message.startswith("Replay (force) by admin-1")

    async def test_token_is_single_use(self, db, mailer, settings, fake_redis, make_envelope):
        await _failed_event(db, make_envelope())

        with pytest.raises(ForceConfirmationRequired) as exc_info:
            await replay_event(db, "evt_001", "force", actor_id="admin-1", mailer=mailer, settings=settings)
        token = exc_info.value.details["confirm_token"]

        await replay_event(
            db, "evt_001", "force", actor_id="admin-1", mailer=mailer,
            confirm_token=token, settings=settings,
        )
        with pytest.raises(ForceConfirmationRequired) as exc_info:
            await replay_event(
                db, "evt_001", "force", actor_id="admin-1", mailer=mailer,
                confirm_token=token, settings=settings,
            )
        assert "invalid or expired" in exc_info.value.message
        assert await _purchase_count(db) == 1

    async def test_token_bound_to_operator(self, db, mailer, settings, fake_redis, make_envelope):
        await _failed_event(db, make_envelope())

        with pytest.raises(ForceConfirmationRequired) as exc_info:
            await replay_event(db, "evt_001", "force", actor_id="admin-1", mailer=mailer, settings=settings)
        token = exc_info.value.details["confirm_token"]

        with pytest.raises(ForceConfirmationRequired):
            await replay_event(
                db, "evt_001", "force", actor_id="admin-2", mailer=mailer,
                confirm_token=token, settings=settings,
            )
        assert await _purchase_count(db) == 0

    async def test_force_runs_invalid_signature_event(self, db, mailer, settings, fake_redis, make_envelope):
        await _failed_event(db, make_envelope(), signature=INVALID)

        with pytest.raises(ForceConfirmationRequired) as exc_info:
            await replay_event(db, "evt_001", "force", actor_id="admin-1", mailer=mailer, settings=settings)
        result = await replay_event(
            db, "evt_001", "force", actor_id="admin-1", mailer=mailer,
            confirm_token=exc_info.value.details["confirm_token"], settings=settings,
        )

        assert result.ok is True
        event = await event_store.get_event(db, "evt_001")
        assert event.signature_valid is False
        assert event.status == "PROCESSED"


class TestReplayRefusals:
    async def test_unknown_event(self, db, mailer, settings):
        with pytest.raises(EventNotFound):
            await replay_event(db, "missing", "safe", actor_id="admin-1", mailer=mailer, settings=settings)

    async def test_invalid_mode(self, db, mailer, settings, make_envelope):
        await _failed_event(db, make_envelope())
        with pytest.raises(ValidationFailed):
            await replay_event(db, "evt_001", "hard", actor_id="admin-1", mailer=mailer, settings=settings)

    async def test_ignored_event(self, db, mailer, settings, make_envelope):
        event = await _failed_event(db, make_envelope())
        event.ignored_at = event.processed_at
        event.ignored_by_user_id = "admin-1"
        event.ignore_note = "test traffic"
        await db.commit()

        with pytest.raises(AlreadyIgnored):
            await replay_event(db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings)
        assert await _purchase_count(db) == 0

    async def test_processing_event_conflicts(self, db, mailer, settings, make_envelope):
        await _store(db, make_envelope())
        assert await event_store.claim(db, "evt_001", ["PENDING"]) is True

        with pytest.raises(ConcurrencyConflict):
            await replay_event(db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings)

    async def test_pending_event_conflicts(self, db, mailer, settings, make_envelope):
        await _store(db, make_envelope())
        with pytest.raises(ConcurrencyConflict):
            await replay_event(db, "evt_001", "safe", actor_id="admin-1", mailer=mailer, settings=settings)
