"""
Collaborator contracts for the lifecycle core, plus in-memory implementations for local runs and tests.
PostgreSQL implementations live in laundry.db.
"""
import asyncio
import logging
from typing import Protocol

from laundry.errors import NotFoundError, VersionConflictError
from laundry.models import NotificationIntent, Order, Service

logger = logging.getLogger(__name__)

DEFAULT_SERVICES = [
    Service(id=1, name="Regular Wash", unit_price=15000),
    Service(id=2, name="Dry Clean", unit_price=25000),
    Service(id=3, name="Express Wash", unit_price=20000),
    Service(id=4, name="Ironing Only", unit_price=5000),
]


class OrderStore(Protocol):
    async def load(self, order_id: str) -> Order: ...

    async def save(self, order: Order, expected_version: int) -> Order:
        """Write `order` if the stored version still equals `expected_version` (0 = new order).
        Returns the stored order with its bumped version; raises VersionConflictError otherwise."""
        ...


class NotificationSink(Protocol):
    def enqueue(self, user_id: int, type: str, order_id: str, payload: dict) -> None: ...


class ServiceCatalog(Protocol):
    async def get_service(self, service_id: int) -> Service: ...


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def load(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order.model_copy(deep=True)

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            current = self._orders.get(order.id)
            current_version = current.version if current is not None else 0
            if current_version != expected_version:
                raise VersionConflictError(order.id, expected_version)
            stored = order.model_copy(update={"version": expected_version + 1}, deep=True)
            self._orders[order.id] = stored
            return stored.model_copy(deep=True)


class InMemoryServiceCatalog:
    def __init__(self, services: list[Service] | None = None) -> None:
        self._services = {s.id: s for s in services or []}

    async def get_service(self, service_id: int) -> Service:
        service = self._services.get(service_id)
        if service is None:
            raise NotFoundError("service", service_id)
        return service


class InMemoryNotificationSink:
    """Keeps every intent in a list; the sink used by tests and by store_backend=memory runs."""

    def __init__(self) -> None:
        self.sent: list[NotificationIntent] = []

    def enqueue(self, user_id: int, type: str, order_id: str, payload: dict) -> None:
        self.sent.append(NotificationIntent(user_id=user_id, type=type, order_id=order_id, payload=payload))
        logger.info("Notification type=%s order_id=%s user_id=%s", type, order_id, user_id)
