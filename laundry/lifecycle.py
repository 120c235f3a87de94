"""
Order lifecycle facade: the only entry point callers use.

Each mutation is one read-validate-write against the order store, guarded by a compare-and-swap
on the order version. A lost race re-reads and re-validates, so two concurrent requests can never
both move an order past the same gate. Notifications are handed to the sink only after the write
has committed.
"""
import logging
from datetime import datetime
from typing import Callable

from pydantic import ValidationError

from laundry import fulfillment
from laundry.config import settings
from laundry.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
    VersionConflictError,
)
from laundry.metrics import (
    notifications_enqueued_total,
    notifications_failed_total,
    transitions_applied_total,
    transitions_rejected_total,
    version_conflicts_total,
)
from laundry.models import (
    FulfillmentMethod,
    NotificationIntent,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PickupMethod,
    Role,
    compute_price_total,
    utcnow,
)
from laundry.order_state import TransitionResult, apply_transition
from laundry.store import NotificationSink, OrderStore, ServiceCatalog

logger = logging.getLogger(__name__)


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        sink: NotificationSink,
        catalog: ServiceCatalog,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._catalog = catalog
        self._clock = clock
        self._max_attempts = max_attempts or settings.conflict_max_attempts

    @property
    def sink(self) -> NotificationSink:
        return self._sink

    async def create_order(
        self,
        customer_id: int,
        items: list[dict],
        pickup_method: PickupMethod,
        notes: str | None = None,
    ) -> str:
        """
        items: [{"service_id": ..., "quantity": ...}]. Unit prices always come from the catalog.
        Returns the new order id.
        """
        try:
            pickup_method = PickupMethod(pickup_method)
        except ValueError:
            raise OrderValidationError(f"unknown pickup method {pickup_method!r}")
        if not items:
            raise OrderValidationError("order must contain at least one item")

        order_items = []
        for item in items:
            if not isinstance(item, dict):
                raise OrderValidationError(f"item must be an object, got {item!r}")
            quantity = item.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                raise OrderValidationError(f"quantity must be an integer >= 1, got {quantity!r}")
            try:
                service = await self._catalog.get_service(item.get("service_id"))
            except NotFoundError:
                raise OrderValidationError(f"unknown service {item.get('service_id')!r}")
            order_items.append(OrderItem(service_id=service.id, quantity=quantity, unit_price=service.unit_price))

        now = self._clock()
        try:
            order = Order(
                customer_id=customer_id,
                pickup_method=pickup_method,
                items=order_items,
                price_total=compute_price_total(order_items, FulfillmentMethod.UNSET),
                notes=notes,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise OrderValidationError(f"invalid order: {e.errors()[0]['msg']}") from e
        saved = await self._store.save(order, expected_version=0)
        logger.info(
            "Created order_id=%s customer_id=%s items=%d total=%s",
            saved.id, customer_id, len(order_items), saved.price_total,
        )
        return saved.id

    async def get_order(self, order_id: str, actor_id: int, actor_role: Role) -> Order:
        order = await self._store.load(order_id)
        if actor_role == Role.CUSTOMER and order.customer_id != actor_id:
            raise ForbiddenError()
        return order

    async def advance_status(self, order_id: str, requested_status: OrderStatus, actor_role: Role) -> Order:
        def step(order: Order) -> TransitionResult:
            return apply_transition(order, requested_status, actor_role, self._clock())

        return await self._mutate(order_id, step)

    async def choose_fulfillment(self, order_id: str, customer_id: int, choice: FulfillmentMethod) -> Order:
        def step(order: Order) -> TransitionResult:
            self._check_owner(order, customer_id)
            return fulfillment.choose_fulfillment(order, choice, self._clock())

        return await self._mutate(order_id, step)

    async def pay_delivery_fee(self, order_id: str, customer_id: int, method: PaymentMethod) -> Order:
        def step(order: Order) -> TransitionResult:
            self._check_owner(order, customer_id)
            return fulfillment.confirm_delivery_payment(order, method, self._clock())

        return await self._mutate(order_id, step)

    @staticmethod
    def _check_owner(order: Order, customer_id: int) -> None:
        # Runs after load, so an unknown id is NotFound; ids are uuid4 and not enumerable.
        if order.customer_id != customer_id:
            raise ForbiddenError()

    def _notify(self, intent: NotificationIntent) -> None:
        # The order is already committed; a sink failure must not turn that into an error.
        try:
            self._sink.enqueue(intent.user_id, intent.type, intent.order_id, intent.payload)
        except Exception:
            notifications_failed_total.inc()
            logger.exception("Failed to enqueue %s notification for order_id=%s", intent.type, intent.order_id)
        else:
            notifications_enqueued_total.labels(type=intent.type).inc()

    async def _mutate(self, order_id: str, step: Callable[[Order], TransitionResult]) -> Order:
        for attempt in range(1, self._max_attempts + 1):
            order = await self._store.load(order_id)
            try:
                result = step(order)
            except InvalidTransitionError as e:
                transitions_rejected_total.labels(
                    current_status=e.current_status, attempted_status=e.attempted_status
                ).inc()
                raise
            try:
                saved = await self._store.save(result.order, expected_version=order.version)
            except VersionConflictError:
                version_conflicts_total.inc()
                logger.info("Version conflict on order_id=%s (attempt %d/%d), retrying", order_id, attempt, self._max_attempts)
                continue

            transitions_applied_total.labels(status=saved.status.value).inc()
            logger.info("Order %s: %s -> %s (version %d)", order_id, order.status.value, saved.status.value, saved.version)
            for intent in result.notifications:
                self._notify(intent)
            return saved

        logger.warning("Giving up on order_id=%s after %d conflicting attempts", order_id, self._max_attempts)
        raise ConflictError(order_id, self._max_attempts)
