"""
Notification queue on Redis: API side pushes (LPUSH), worker pops (BRPOP).
Messages that exhaust their retries land on the DLQ list.
Each helper takes the client to use; without one it falls back to the shared client.
"""
import json

import redis.asyncio as redis

from storefront_orders.notifications import NotificationIntent
from storefront_orders.redis_client import get_redis

NOTIFICATION_QUEUE_KEY = "queue:notifications"
NOTIFICATION_DLQ_KEY = "queue:notifications:dlq"


def make_body(intent: NotificationIntent, attempts: int = 0) -> dict:
    return {
        "intent": intent.model_dump(mode="json"),
        "attempts": attempts,
    }


async def push_notification(intent: NotificationIntent, attempts: int = 0, r: redis.Redis | None = None) -> None:
    if r is None:
        r = await get_redis()
    await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(make_body(intent, attempts)))


def redis_publisher(r: redis.Redis):
    """Publisher for NotificationDispatcher bound to one Redis client."""
    async def publish(intent: NotificationIntent) -> None:
        await push_notification(intent, r=r)
    return publish


async def queue_depth(r: redis.Redis | None = None) -> tuple[int, int]:
    """(waiting, dead-lettered) message counts."""
    if r is None:
        r = await get_redis()
    return await r.llen(NOTIFICATION_QUEUE_KEY), await r.llen(NOTIFICATION_DLQ_KEY)


async def replay_dlq_to_main(limit: int = 100, r: redis.Redis | None = None) -> int:
    """
    Move messages from the DLQ back onto the main queue with attempts reset.
    Unparseable messages are dropped. Returns number of messages moved.
    """
    if r is None:
        r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(NOTIFICATION_DLQ_KEY)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
            intent = NotificationIntent.model_validate(data["intent"])
        except (json.JSONDecodeError, KeyError, ValueError):
            continue
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(make_body(intent)))
    return replayed
