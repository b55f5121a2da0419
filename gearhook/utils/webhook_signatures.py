"""
Webhook signature verification for the Kapso bot.

The bot signs the raw request body with HMAC-SHA256 and sends
"sha256=<hex>" in X-Webhook-Signature. We always hash the exact bytes
received, never a re-serialized payload.

Rotation: one active secret, plus the previous secret accepted until its
configured expiry. The computed value kept for audit is always the one for
the active secret.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class SignatureCheck:
    """Outcome of a signature check, with both raw values retained for audit."""

    valid: bool
    provided: Optional[str]
    computed: str


def compute_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 over the raw body, formatted as the header value."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def compute_payload_hash(body: bytes) -> str:
    """SHA-256 of the raw payload for audit."""
    return hashlib.sha256(body).hexdigest()


def _matches(provided_hex: str, expected: str) -> bool:
    expected_hex = expected[len(SIGNATURE_PREFIX):]
    if len(provided_hex) != len(expected_hex):
        return False
    try:
        return hmac.compare_digest(
            provided_hex.lower().encode("ascii"),
            expected_hex.encode("ascii"),
        )
    except (UnicodeEncodeError, ValueError):
        return False


def verify_signature(
    body: bytes,
    signature_header: Optional[str],
    secrets: Sequence[str],
) -> SignatureCheck:
    """
    Check a signature header against one or more accepted secrets.
    The first secret is the active one. Never raises.
    """
    active = secrets[0] if secrets else ""
    computed = compute_signature(body, active)

    if not active:
        logger.error("No webhook secret configured - rejecting signature")
        return SignatureCheck(valid=False, provided=signature_header, computed=computed)

    if not signature_header:
        return SignatureCheck(valid=False, provided=None, computed=computed)

    provided_hex = signature_header.strip()
    if provided_hex.startswith(SIGNATURE_PREFIX):
        provided_hex = provided_hex[len(SIGNATURE_PREFIX):]

    for secret in secrets:
        if not secret:
            continue
        expected = computed if secret == active else compute_signature(body, secret)
        if _matches(provided_hex, expected):
            if secret != active:
                logger.info("Webhook signed with previous secret (rotation grace window)")
            return SignatureCheck(valid=True, provided=signature_header, computed=computed)

    return SignatureCheck(valid=False, provided=signature_header, computed=computed)


def accepted_secrets(settings, now: Optional[datetime] = None) -> list[str]:
    """Active secret first, then the previous one while its grace window is open."""
    secrets = [settings.webhook_secret]
    previous = settings.webhook_secret_previous
    expires_at = settings.webhook_secret_previous_expires_at
    if previous and expires_at is not None:
        now = now or datetime.now(timezone.utc)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if now < expires_at:
            secrets.append(previous)
    return secrets
