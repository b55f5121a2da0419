"""
Single-use confirmation tokens for force replay.

The first force request gets a token back instead of executing; only a
second request presenting that token (same event, same operator, within the
TTL) runs the handler. Tokens are consumed with GETDEL so each works once.
Unlike dedup, this fails closed: no Redis, no force replay.
"""
import hmac
import logging
import secrets

from gearhook.errors import ConfirmationUnavailable
from gearhook.utils.redis_client import get_redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "gearhook:force_confirm"


def _key(event_id: str, actor_id: str) -> str:
    return f"{_KEY_PREFIX}:{event_id}:{actor_id}"


async def issue_force_token(event_id: str, actor_id: str, ttl_seconds: int) -> str:
    """Issue (or replace) the pending confirmation token for this event and operator."""
    token = secrets.token_urlsafe(24)
    try:
        redis = await get_redis()
        await redis.set(_key(event_id, actor_id), token, ex=ttl_seconds)
    except Exception as e:
        logger.error("Could not store force-replay token for %s: %s", event_id, str(e))
        raise ConfirmationUnavailable(
            "Force replay confirmation is temporarily unavailable",
        ) from e
    return token


async def consume_force_token(event_id: str, actor_id: str, token: str) -> bool:
    """True only if token matches the one issued for this event and operator. Single use."""
    if not token:
        return False
    try:
        redis = await get_redis()
        stored = await redis.getdel(_key(event_id, actor_id))
    except Exception as e:
        logger.error("Could not read force-replay token for %s: %s", event_id, str(e))
        raise ConfirmationUnavailable(
            "Force replay confirmation is temporarily unavailable",
        ) from e
    if not stored:
        return False
    return hmac.compare_digest(str(stored).encode(), token.encode())
