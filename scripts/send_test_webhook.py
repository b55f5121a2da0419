"""
Send a signed quote_accepted event to a running gearhook instance.

Usage:
    python scripts/send_test_webhook.py --secret "$WEBHOOK_SECRET"
    python scripts/send_test_webhook.py --secret "$WEBHOOK_SECRET" --event-id evt_001 --repeat 2
    python scripts/send_test_webhook.py --secret "$WEBHOOK_SECRET" --tamper
"""
import argparse
import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_event(event_id: str, phone: str, name: str, email: str) -> dict:
    now = datetime.now(timezone.utc).isoformat()
    return {
        "event_id": event_id,
        "event_type": "quote_accepted",
        "version": "1.0",
        "timestamp": now,
        "payload": {
            "customerName": name,
            "customerPhone": phone,
            "customerEmail": email,
            "whatsappConversationId": f"conv_{event_id}",
            "totalQuoteAmount": 4500.0,
            "botQuoteAcceptedAt": now,
            "items": [
                {
                    "name": "Canon EOS R5",
                    "brand": "Canon",
                    "model": "EOS R5",
                    "category": "Camera Body",
                    "condition": "Excellent",
                    "botEstimatedPrice": 4500.0,
                    "imageUrls": [],
                }
            ],
        },
    }


def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def tamper(body: bytes) -> bytes:
    """Change one payload byte after signing."""
    idx = body.index(b"4500")
    return body[:idx] + b"5" + body[idx + 1:]


async def send(base_url: str, body: bytes, signature: str) -> httpx.Response:
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{base_url}/api/v1/webhooks/kapso",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )
        logger.info("Webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Send a signed test webhook")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--phone", default="+27825550123")
    parser.add_argument("--name", default="Thabo Nkosi")
    parser.add_argument("--email", default="thabo@example.com")
    parser.add_argument("--tamper", action="store_true", help="Modify the body after signing")
    parser.add_argument("--repeat", type=int, default=1, help="Send the same event N times")
    args = parser.parse_args()

    event_id = args.event_id or f"evt_{uuid.uuid4().hex[:12]}"
    body = json.dumps(build_event(event_id, args.phone, args.name, args.email)).encode()
    signature = sign(body, args.secret)
    if args.tamper:
        body = tamper(body)

    for attempt in range(max(1, args.repeat)):
        logger.info("Sending %s (delivery %d)", event_id, attempt + 1)
        await send(args.base_url, body, signature)


if __name__ == "__main__":
    asyncio.run(main())
