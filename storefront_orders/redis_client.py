import redis.asyncio as redis
from storefront_orders.config import settings

_redis: redis.Redis | None = None

SENT_KEY_PREFIX = "notification:sent:"
SENT_KEY_TTL_SECONDS = 7 * 86400


async def get_redis(url: str | None = None) -> redis.Redis:
    """Shared client, created on first call from url (default: settings.redis_url)."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(url or settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_notification(r: redis.Redis, notification_id: str) -> bool:
    """
    True if this worker is the first to send notification_id, False if it was
    already sent (a replayed or re-queued duplicate). SET NX with a TTL.
    """
    was_set = await r.set(f"{SENT_KEY_PREFIX}{notification_id}", "1", nx=True, ex=SENT_KEY_TTL_SECONDS)
    return bool(was_set)


async def release_notification(r: redis.Redis, notification_id: str) -> None:
    """Undo a claim after a failed send so the retry can claim it again."""
    await r.delete(f"{SENT_KEY_PREFIX}{notification_id}")
