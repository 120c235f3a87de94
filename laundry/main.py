import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from laundry.config import settings
from laundry.db import PostgresOrderStore, PostgresServiceCatalog, close_pool, get_pool, init_schema, seed_services
from laundry.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    LifecycleError,
    NotFoundError,
    OrderValidationError,
)
from laundry.lifecycle import OrderLifecycle
from laundry.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from laundry.queue import QueueNotificationSink
from laundry.redis_client import close_redis
from laundry.routes import admin, orders
from laundry.sqs_client import get_queue_depth
from laundry.store import DEFAULT_SERVICES, InMemoryNotificationSink, InMemoryOrderStore, InMemoryServiceCatalog

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[LifecycleError], int] = {
    OrderValidationError: 422,
    NotFoundError: 404,
    ForbiddenError: 403,
    InvalidTransitionError: 409,
    InvalidStateError: 409,
    ConflictError: 409,
}


async def build_lifecycle() -> OrderLifecycle:
    if settings.store_backend == "postgres":
        pool = await get_pool()
        await init_schema(pool)
        seeded = await seed_services(pool, DEFAULT_SERVICES)
        if seeded:
            logger.info("Seeded %d services", seeded)
        store, catalog = PostgresOrderStore(pool), PostgresServiceCatalog(pool)
    else:
        store, catalog = InMemoryOrderStore(), InMemoryServiceCatalog(DEFAULT_SERVICES)
    if settings.notification_backend == "queue":
        sink = QueueNotificationSink()
    else:
        sink = InMemoryNotificationSink()
    logger.info("Lifecycle ready (store=%s, notifications=%s)", settings.store_backend, settings.notification_backend)
    return OrderLifecycle(store, sink, catalog)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own lifecycle before startup.
    if getattr(app.state, "lifecycle", None) is None:
        app.state.lifecycle = await build_lifecycle()
    yield
    if isinstance(app.state.lifecycle.sink, QueueNotificationSink):
        await app.state.lifecycle.sink.drain()
    await close_redis()
    await close_pool()


app = FastAPI(title="Laundry Order Lifecycle", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(admin.router)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    content = {"ok": False, "error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, InvalidTransitionError):
        content["current_status"] = exc.current_status
        content["attempted_status"] = exc.attempted_status
    return JSONResponse(status_code=status_code, content=content)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: lifecycle transitions, notification hand-off, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception:
            logger.warning("Could not read SQS queue depth", exc_info=True)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("laundry.main:app", host="0.0.0.0", port=8000)
