import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from conftest import make_order
from storefront_orders import queue, worker
from storefront_orders.config import Settings
from storefront_orders.notifications import NotificationIntent, NotificationTemplate, Recipient
from storefront_orders.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY, make_body
from storefront_orders.worker import process_one, run_worker


@pytest.fixture
def intent() -> NotificationIntent:
    order = make_order(is_paid=True)
    return NotificationIntent(
        template=NotificationTemplate.ORDER_PAID,
        order_id=order.id,
        recipient=Recipient(name="Asha Rao", email="asha@example.com"),
        order=order.to_document(),
    )


@pytest.fixture
def sem() -> asyncio.Semaphore:
    return asyncio.Semaphore(2)


def raw(intent, attempts=0) -> str:
    return json.dumps(make_body(intent, attempts))


async def test_sends_once(fake_redis, sem, intent):
    sender = AsyncMock(return_value="msg-1")
    assert await process_one(fake_redis, raw(intent), sem, sender=sender, max_retries=5) == "sent"
    sender.assert_awaited_once()
    assert sender.await_args.args[0].id == intent.id

    # Replayed duplicate is claimed already
    assert await process_one(fake_redis, raw(intent), sem, sender=sender, max_retries=5) == "duplicate"
    assert sender.await_count == 1


async def test_failed_send_is_requeued_with_backoff(fake_redis, sem, intent):
    sender = AsyncMock(side_effect=RuntimeError("SES throttled"))
    sleep = AsyncMock()
    result = await process_one(fake_redis, raw(intent, attempts=2), sem, sender=sender, max_retries=5, sleep=sleep)

    assert result == "retry"
    sleep.assert_awaited_once_with(4)
    requeued = json.loads(await fake_redis.rpop(NOTIFICATION_QUEUE_KEY))
    assert requeued["attempts"] == 3
    assert requeued["intent"]["id"] == intent.id

    # Claim released so the retry can send
    sender.side_effect = None
    sender.return_value = "msg-2"
    assert await process_one(fake_redis, json.dumps(requeued), sem, sender=sender, max_retries=5, sleep=sleep) == "sent"


async def test_exhausted_retries_go_to_dlq(fake_redis, sem, intent):
    sender = AsyncMock(side_effect=RuntimeError("bad address"))
    sleep = AsyncMock()
    result = await process_one(fake_redis, raw(intent, attempts=4), sem, sender=sender, max_retries=5, sleep=sleep)

    assert result == "dlq"
    sleep.assert_not_awaited()
    assert await fake_redis.llen(NOTIFICATION_QUEUE_KEY) == 0
    dead = json.loads(await fake_redis.rpop(NOTIFICATION_DLQ_KEY))
    assert dead["attempts"] == 5
    assert dead["last_error"] == "bad address"


async def test_invalid_message(fake_redis, sem):
    sender = AsyncMock()
    assert await process_one(fake_redis, "not json", sem, sender=sender, max_retries=5) == "invalid"
    assert await process_one(fake_redis, json.dumps({"attempts": 0}), sem, sender=sender, max_retries=5) == "invalid"
    sender.assert_not_awaited()


async def test_push_and_replay(monkeypatch, fake_redis, intent):
    monkeypatch.setattr(queue, "get_redis", AsyncMock(return_value=fake_redis))

    await queue.push_notification(intent)
    assert await queue.queue_depth() == (1, 0)

    await fake_redis.lpush(NOTIFICATION_DLQ_KEY, raw(intent, attempts=5))
    await fake_redis.lpush(NOTIFICATION_DLQ_KEY, "garbage")
    assert await queue.replay_dlq_to_main(limit=10) == 2
    assert await queue.queue_depth() == (2, 0)

    replayed = json.loads(await fake_redis.lpop(NOTIFICATION_QUEUE_KEY))
    assert replayed["attempts"] == 0
    assert replayed["intent"]["id"] == intent.id


async def test_run_worker_uses_given_settings(monkeypatch, fake_redis, intent):
    shutdown = asyncio.Event()
    messages = [(NOTIFICATION_QUEUE_KEY, raw(intent))]

    async def brpop(key, timeout):
        if messages:
            return messages.pop()
        shutdown.set()
        return None

    monkeypatch.setattr(fake_redis, "brpop", brpop)
    get_redis = AsyncMock(return_value=fake_redis)
    monkeypatch.setattr(worker, "get_redis", get_redis)
    monkeypatch.setattr(worker, "close_redis", AsyncMock())
    sender = AsyncMock(side_effect=RuntimeError("SES down"))
    s = Settings(redis_url="redis://queue.internal:6379/3", notification_max_retries=1, worker_concurrency=1)

    await run_worker(shutdown, s, sender=sender)

    get_redis.assert_awaited_once_with("redis://queue.internal:6379/3")
    sender.assert_awaited_once()
    # One allowed attempt, so the failure is dead-lettered instead of retried
    assert await fake_redis.llen(NOTIFICATION_QUEUE_KEY) == 0
    assert json.loads(await fake_redis.rpop(NOTIFICATION_DLQ_KEY))["attempts"] == 1
