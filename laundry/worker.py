"""
Notification worker: pull notifications from Redis or AWS SQS, persist them into Postgres.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Duplicate deliveries are dropped by the notifications primary key.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m laundry.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time
from datetime import datetime

import redis.asyncio as redis

from laundry.config import settings
from laundry.db import close_pool, get_pool, init_schema, insert_notification
from laundry.metrics import messages_dlq_total, messages_failed_total, messages_processed_total
from laundry.queue import NOTIFICATION_DLQ_KEY, NOTIFICATION_QUEUE_KEY
from laundry.sqs_client import change_message_visibility, delete_message, receive_messages

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_message(raw: str) -> dict | None:
    """Decode a queued notification; None if it is unusable and should be dropped."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return None
    if not isinstance(data, dict) or not data.get("notification_id") or not data.get("order_id"):
        logger.warning("Message missing notification_id/order_id, skipping")
        return None
    if data.get("user_id") is None or not data.get("type"):
        logger.warning("Message notification_id=%s missing user_id/type, skipping", data["notification_id"])
        return None
    return data


async def persist(pool, data: dict) -> None:
    created_at = data.get("created_at")
    inserted = await insert_notification(
        pool,
        data["notification_id"],
        int(data["user_id"]),
        data["type"],
        data["order_id"],
        data.get("payload") or {},
        datetime.fromisoformat(created_at) if created_at else datetime.now().astimezone(),
    )
    if inserted:
        logger.info("Stored notification_id=%s order_id=%s", data["notification_id"], data["order_id"])
    else:
        logger.info("Duplicate notification_id=%s, skipped", data["notification_id"])
    messages_processed_total.inc()


async def process_one_redis(
    r: redis.Redis,
    pool,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    data = parse_message(raw)
    if data is None:
        return
    attempts = data.get("attempts", 0)

    async with sem:
        try:
            await persist(pool, data)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception(
                "Failed to store notification_id=%s (attempt %d): %s", data["notification_id"], attempts + 1, e
            )
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dead = {**data, "attempts": next_attempts, "last_error": str(e), "failed_at": time.time()}
                await r.lpush(NOTIFICATION_DLQ_KEY, json.dumps(dead))
                messages_dlq_total.inc()
                logger.warning(
                    "Moved notification_id=%s to DLQ after %d attempts",
                    data["notification_id"], settings.worker_max_retries,
                )
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing notification_id=%s in %ds (attempt %d/%d)",
                    data["notification_id"], backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps({**data, "attempts": next_attempts}))


async def process_one_sqs(
    pool,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    data = parse_message(body)
    if data is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return

    async with sem:
        try:
            await persist(pool, data)
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception(
                "Failed to store notification_id=%s (receive #%d): %s", data["notification_id"], receive_count, e
            )
            # Don't delete: message will reappear after visibility timeout; after max receives SQS moves to DLQ
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def _wait_for_tasks(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        NOTIFICATION_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(NOTIFICATION_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, pool, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _wait_for_tasks(tasks)
        await r.aclose()
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(pool, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _wait_for_tasks(tasks)
        await close_pool()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    if settings.sqs_queue_url:
        await run_worker_sqs(shutdown_event)
    else:
        await run_worker_redis(shutdown_event)


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
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
