"""
Tests for gearhook/api/admin_webhooks.py - admin list, summary, detail, replay, ignore.
"""
from sqlalchemy import func, select

from gearhook.models.purchase import PendingPurchase
from gearhook.services import event_store
from gearhook.utils.webhook_signatures import SignatureCheck

BASE = "/api/v1/admin/webhooks"


async def _deliver(client, sign_envelope, envelope):
    body, sig = sign_envelope(envelope)
    return await client.post(
        "/api/v1/webhooks/kapso",
        content=body,
        headers={"Content-Type": "application/json", "X-Webhook-Signature": sig},
    )


async def _purchase_count(db):
    return (await db.execute(select(func.count()).select_from(PendingPurchase))).scalar()


class TestAuth:
    async def test_missing_token(self, client):
        response = await client.get(f"{BASE}/events")
        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client):
        response = await client.get(f"{BASE}/events", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_staff_role_forbidden(self, client, auth_headers):
        response = await client.get(f"{BASE}/events", headers=auth_headers("staff-1", "staff"))
        assert response.status_code == 403


class TestListAndDetail:
    async def test_list_defaults_to_failed(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_id="evt_ok"))
        await _deliver(client, sign_envelope, make_envelope(event_id="evt_bad", event_type="quote_declined"))

        response = await client.get(f"{BASE}/events", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert [e["event_id"] for e in data["events"]] == ["evt_bad"]
        assert data["pagination"]["total"] == 1
        assert data["pagination"]["pageSize"] == 50
        assert data["pagination"]["totalPages"] == 1

    async def test_list_all_with_filters(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_id="evt_ok"))
        await _deliver(client, sign_envelope, make_envelope(event_id="evt_bad", event_type="quote_declined"))

        response = await client.get(
            f"{BASE}/events",
            params={"status": "ALL", "eventType": "quote_accepted", "pageSize": 10},
            headers=auth_headers(),
        )

        assert [e["event_id"] for e in response.json()["events"]] == ["evt_ok"]

    async def test_page_size_capped(self, client, auth_headers):
        response = await client.get(f"{BASE}/events", params={"pageSize": 500}, headers=auth_headers())
        assert response.status_code == 422

    async def test_summary(self, client, auth_headers, make_envelope, sign_envelope):
        envelope = make_envelope()
        await _deliver(client, sign_envelope, envelope)
        await _deliver(client, sign_envelope, envelope)

        response = await client.get(f"{BASE}/events/summary", headers=auth_headers())

        data = response.json()
        assert data["by_status"]["PROCESSED"] == 1
        assert data["by_event_type"] == {"quote_accepted": 1}
        assert data["duplicate_deliveries"] == 1

    async def test_detail_includes_audit_fields(self, client, auth_headers, make_envelope, sign_envelope):
        body, sig = sign_envelope(make_envelope())
        await client.post(
            "/api/v1/webhooks/kapso",
            content=body,
            headers={"X-Webhook-Signature": sig, "X-Correlation-ID": "cid-123"},
        )

        response = await client.get(f"{BASE}/events/evt_001", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["raw_payload"]["event_id"] == "evt_001"
        assert data["signature_provided"] == sig
        assert data["signature_computed"] == sig
        assert data["correlation_id"] == "cid-123"

    async def test_detail_not_found(self, client, auth_headers):
        response = await client.get(f"{BASE}/events/missing", headers=auth_headers())
        assert response.status_code == 404
        assert response.json()["error_code"] == "event_not_found"


class TestReplayEndpoint:
    async def test_safe_replay_of_processed_event_is_noop(
        self, client, db, auth_headers, make_envelope, sign_envelope,
    ):
        await _deliver(client, sign_envelope, make_envelope())

        response = await client.post(
            f"{BASE}/events/evt_001/replay", json={"mode": "safe"}, headers=auth_headers(),
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["noop"] is True
        assert data["status"] == "PROCESSED"
        assert await _purchase_count(db) == 1

    async def test_force_replay_two_step(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope())

        first = await client.post(
            f"{BASE}/events/evt_001/replay", json={"mode": "force"}, headers=auth_headers(),
        )
        assert first.status_code == 428
        token = first.json()["details"]["confirm_token"]
        assert await _purchase_count(db) == 1

        second = await client.post(
            f"{BASE}/events/evt_001/replay",
            json={"mode": "force", "confirm_token": token},
            headers=auth_headers(),
        )
        assert second.status_code == 200
        assert second.json()["noop"] is False
        assert await _purchase_count(db) == 2

        event = await event_store.get_event(db, "evt_001")
        assert event.retry_count == 1

    async def test_mode_required(self, client, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope())

        response = await client.post(f"{BASE}/events/evt_001/replay", json={}, headers=auth_headers())

        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"
        assert "mode" in response.json()["message"]

    async def test_unknown_mode_rejected(self, client, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope())
        response = await client.post(
            f"{BASE}/events/evt_001/replay", json={"mode": "hard"}, headers=auth_headers(),
        )
        assert response.status_code == 422

    async def test_replay_pending_event_conflicts(self, client, db, auth_headers):
        await event_store.insert_if_absent(
            db, event_id="evt_pending", event_type="quote_accepted", version="1.0",
            raw_payload={}, signature=SignatureCheck(valid=True, provided="sha256=aa", computed="sha256=aa"),
            retry_backoff_seconds=0,
        )

        response = await client.post(
            f"{BASE}/events/evt_pending/replay", json={"mode": "safe"}, headers=auth_headers(),
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == "concurrency_conflict"

    async def test_safe_replay_of_bad_signature_refused(self, client, auth_headers, make_envelope, sign_envelope):
        body, _ = sign_envelope(make_envelope())
        await client.post("/api/v1/webhooks/kapso", content=body, headers={"X-Webhook-Signature": "bad"})

        response = await client.post(
            f"{BASE}/events/evt_001/replay", json={"mode": "safe"}, headers=auth_headers(),
        )
        assert response.status_code == 409
        assert response.json()["error_code"] == "signature_invalid"


class TestIgnoreEndpoint:
    async def test_ignore_then_replay_refused(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_type="quote_declined"))

        response = await client.post(
            f"{BASE}/events/evt_001/ignore",
            json={"note": "Bot test traffic"},
            headers=auth_headers("admin-7"),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["ignored_by_user_id"] == "admin-7"
        assert data["ignore_note"] == "Bot test traffic"

        listed = await client.get(f"{BASE}/events", headers=auth_headers())
        assert listed.json()["events"] == []

        replay = await client.post(
            f"{BASE}/events/evt_001/replay", json={"mode": "safe"}, headers=auth_headers(),
        )
        assert replay.status_code == 409
        assert replay.json()["error_code"] == "already_ignored"

    async def test_empty_note_rejected(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_type="quote_declined"))

        response = await client.post(
            f"{BASE}/events/evt_001/ignore", json={"note": "   "}, headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "validation_error"
        event = await event_store.get_event(db, "evt_001")
        assert event.ignored_at is None

    async def test_missing_note_rejected(self, client, db, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_type="quote_declined"))
        response = await client.post(f"{BASE}/events/evt_001/ignore", json={}, headers=auth_headers())
        assert response.status_code == 422

    async def test_second_ignore_conflicts(self, client, auth_headers, make_envelope, sign_envelope):
        await _deliver(client, sign_envelope, make_envelope(event_type="quote_declined"))
        url = f"{BASE}/events/evt_001/ignore"
        await client.post(url, json={"note": "noise"}, headers=auth_headers())

        response = await client.post(url, json={"note": "again"}, headers=auth_headers())

        assert response.status_code == 409
        assert response.json()["error_code"] == "already_ignored"
