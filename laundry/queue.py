"""
Push notifications to the delivery queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
The worker (laundry.worker) drains the queue and persists each notification.
"""
import asyncio
import json
import logging
import uuid

from laundry.config import settings
from laundry.metrics import notifications_failed_total
from laundry.models import utcnow
from laundry.redis_client import get_redis
from laundry.sqs_client import replay_dlq_to_main, send_message

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE_KEY = "queue:notifications"
NOTIFICATION_DLQ_KEY = "queue:notifications:dlq"


def _make_body(
    notification_id: str,
    user_id: int,
    type: str,
    order_id: str,
    payload: dict,
    created_at: str,
    attempts: int = 0,
) -> dict:
    return {
        "notification_id": notification_id,
        "user_id": user_id,
        "type": type,
        "order_id": order_id,
        "payload": payload,
        "created_at": created_at,
        "attempts": attempts,
    }


async def push_to_queue(body: dict) -> None:
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))


async def replay_dlq(limit: int = 100) -> int:
    """Move up to `limit` dead notifications back onto the main queue. Returns how many moved."""
    if settings.sqs_queue_url:
        return await replay_dlq_to_main(limit=limit)
    r = await get_redis()
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(NOTIFICATION_DLQ_KEY)
        if raw is None:
            break
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping unparseable DLQ message")
            replayed += 1
            continue
        data["attempts"] = 0
        data.pop("last_error", None)
        data.pop("failed_at", None)
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(data))
        replayed += 1
    return replayed


class QueueNotificationSink:
    """
    Fire-and-forget sink: enqueue() returns immediately and the push runs as a background task.
    Push failures are logged and counted, never raised to the caller.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def enqueue(self, user_id: int, type: str, order_id: str, payload: dict) -> None:
        body = _make_body(str(uuid.uuid4()), user_id, type, order_id, payload, utcnow().isoformat())
        t = asyncio.get_running_loop().create_task(self._push(body))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _push(self, body: dict) -> None:
        try:
            await push_to_queue(body)
            logger.info("Queued notification_id=%s type=%s order_id=%s", body["notification_id"], body["type"], body["order_id"])
        except Exception:
            notifications_failed_total.inc()
            logger.exception("Failed to queue notification for order_id=%s", body["order_id"])

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight pushes (used on shutdown)."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
