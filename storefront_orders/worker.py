"""
Notification worker: pull intents from the Redis queue, send the email via SES.
- Exponential backoff re-queue on failure, DLQ after NOTIFICATION_MAX_RETRIES attempts.
- Sent notifications are claimed in Redis so a replayed duplicate is not re-sent.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m storefront_orders.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time
from typing import Awaitable, Callable

import redis.asyncio as redis

from storefront_orders.config import Settings, settings
from storefront_orders.mailer import Mailer
from storefront_orders.metrics import (
    notification_queue_depth,
    notifications_dlq_total,
    notifications_failed_total,
    notifications_sent_total,
)
from storefront_orders.notifications import NotificationIntent
from storefront_orders.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY, make_body
from storefront_orders.redis_client import claim_notification, close_redis, get_redis, release_notification

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090

Sender = Callable[[NotificationIntent], Awaitable[str]]


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def process_one(
    r: redis.Redis,
    raw: str,
    sem: asyncio.Semaphore,
    sender: Sender,
    max_retries: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> str:
    """
    Handle one queue message. Returns "sent" | "duplicate" | "retry" | "dlq" | "invalid".
    """
    try:
        data = json.loads(raw)
        intent = NotificationIntent.model_validate(data["intent"])
    except (json.JSONDecodeError, KeyError, ValueError) as e:
        logger.warning("Invalid notification message from queue: %s", e)
        return "invalid"
    attempts = int(data.get("attempts", 0))

    async with sem:
        if not await claim_notification(r, intent.id):
            logger.info("Duplicate notification_id=%s for order_id=%s, skipped", intent.id, intent.order_id)
            return "duplicate"
        try:
            message_id = await sender(intent)
        except Exception as e:
            await release_notification(r, intent.id)
            notifications_failed_total.labels(stage="send").inc()
            logger.exception(
                "Failed to send %s for order_id=%s (attempt %d): %s",
                intent.template.value, intent.order_id, attempts + 1, e,
            )
            next_attempts = attempts + 1
            if next_attempts >= max_retries:
                dlq_message = make_body(intent, next_attempts)
                dlq_message.update(last_error=str(e), failed_at=time.time())
                await r.lpush(NOTIFICATION_DLQ_KEY, json.dumps(dlq_message))
                notifications_dlq_total.inc()
                logger.warning("Moved notification_id=%s to DLQ after %d attempts", intent.id, max_retries)
                return "dlq"
            backoff_sec = 2 ** attempts
            logger.info(
                "Re-queuing notification_id=%s in %ds (attempt %d/%d)",
                intent.id, backoff_sec, next_attempts, max_retries,
            )
            await sleep(backoff_sec)
            await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(make_body(intent, next_attempts)))
            return "retry"

    notifications_sent_total.inc()
    logger.info(
        "Sent %s for order_id=%s to %s (message_id=%s)",
        intent.template.value, intent.order_id, intent.recipient.email, message_id,
    )
    return "sent"


async def run_worker(shutdown_event: asyncio.Event, s: Settings, sender: Sender | None = None) -> None:
    """BRPOP loop. sender defaults to an SES Mailer built from s."""
    if sender is None:
        sender = Mailer.from_settings(s).send_notification
    sem = asyncio.Semaphore(s.worker_concurrency)
    logger.info(
        "Listening on %s (concurrency=%d, max_retries=%d) ...",
        NOTIFICATION_QUEUE_KEY,
        s.worker_concurrency,
        s.notification_max_retries,
    )
    r = await get_redis(s.redis_url)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(NOTIFICATION_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            notification_queue_depth.set(await r.llen(NOTIFICATION_QUEUE_KEY))
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one(r, raw, sem, sender, s.notification_max_retries))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        if tasks:
            logger.info("Shutting down: %d send(s) in flight, waiting up to %ds", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
            _, pending = await asyncio.wait(set(tasks), timeout=GRACEFUL_SHUTDOWN_WAIT_SEC)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await close_redis()
        logger.info("Notification worker stopped.")


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event, settings))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
