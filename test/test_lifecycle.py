"""
Order lifecycle facade, end to end over in-memory collaborators.
Covers the reference scenarios, ownership, validation, notification ordering and concurrent callers.
"""
import asyncio
from decimal import Decimal

import pytest

from _helper import CUSTOMER_ID, create_default_order, drive_to, make_lifecycle
from laundry.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
    VersionConflictError,
)
from laundry.models import (
    FulfillmentMethod,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PickupMethod,
    Role,
)
from laundry.config import settings
from laundry.lifecycle import OrderLifecycle
from laundry.order_state import STATUS_RANK
from laundry.store import DEFAULT_SERVICES, InMemoryNotificationSink, InMemoryOrderStore, InMemoryServiceCatalog


class InterleavingStore(InMemoryOrderStore):
    """Yields to the event loop after every read so concurrent callers see the same version."""

    async def load(self, order_id):
        order = await super().load(order_id)
        await asyncio.sleep(0)
        return order


class AlwaysConflictingStore(InMemoryOrderStore):
    def __init__(self):
        super().__init__()
        self.conflicting_saves = 0
        self.armed = False

    async def save(self, order, expected_version):
        if self.armed:
            self.conflicting_saves += 1
            raise VersionConflictError(order.id, expected_version)
        return await super().save(order, expected_version)


class CommitCheckingSink:
    """Records, at enqueue time, what the store already holds for the order."""

    def __init__(self, store):
        self.store = store
        self.seen = []

    def enqueue(self, user_id, type, order_id, payload):
        stored = self.store._orders[order_id]
        self.seen.append((payload["status"], stored.status.value))


class BrokenSink:
    def enqueue(self, user_id, type, order_id, payload):
        raise RuntimeError("sink down")


# --- creation -------------------------------------------------------------

async def test_scenario_a_create_order():
    lifecycle, _, sink = make_lifecycle()
    order_id = await lifecycle.create_order(
        customer_id=42,
        items=[{"service_id": 1, "quantity": 2}],
        pickup_method=PickupMethod.SELF,
    )
    order = await lifecycle.get_order(order_id, 42, Role.CUSTOMER)
    assert order.status == OrderStatus.DIPESAN
    assert order.price_total == Decimal("10000")
    assert order.fulfillment_method == FulfillmentMethod.UNSET
    assert order.items[0].unit_price == Decimal("5000")
    assert order.version == 1
    assert sink.sent == []


async def test_create_order_sums_multiple_items_from_catalog():
    lifecycle, _, _ = make_lifecycle()
    order_id = await lifecycle.create_order(
        customer_id=7,
        items=[{"service_id": 1, "quantity": 3}, {"service_id": 2, "quantity": 1}],
        pickup_method=PickupMethod.PICKUP_SERVICE,
        notes="jangan pakai pewangi",
    )
    order = await lifecycle.get_order(order_id, 0, Role.ADMIN)
    assert order.price_total == Decimal("40000")
    assert [i.service_id for i in order.items] == [1, 2]
    assert order.pickup_method == PickupMethod.PICKUP_SERVICE
    assert order.notes == "jangan pakai pewangi"


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"service_id": 1, "quantity": 0}],
        [{"service_id": 1, "quantity": -1}],
        [{"service_id": 1, "quantity": 1.5}],
        [{"service_id": 1}],
        [{"service_id": 99, "quantity": 1}],
        [{"service_id": 1, "quantity": 1}, {"service_id": 404, "quantity": 1}],
        [None],
        ["1 x Regular Wash"],
        [{"service_id": 1, "quantity": 1}, 7],
    ],
)
async def test_create_order_rejects_bad_items(items):
    lifecycle, store, _ = make_lifecycle()
    with pytest.raises(OrderValidationError):
        await lifecycle.create_order(CUSTOMER_ID, items, PickupMethod.SELF)
    assert store._orders == {}


@pytest.mark.parametrize("pickup_method", ["PICKUP", "self", None, 3])
async def test_create_order_rejects_unknown_pickup_method(pickup_method):
    lifecycle, store, _ = make_lifecycle()
    with pytest.raises(OrderValidationError):
        await lifecycle.create_order(CUSTOMER_ID, [{"service_id": 1, "quantity": 1}], pickup_method)
    assert store._orders == {}


async def test_create_order_accepts_plain_string_pickup_method():
    lifecycle, store, _ = make_lifecycle()
    order_id = await lifecycle.create_order(CUSTOMER_ID, [{"service_id": 1, "quantity": 1}], "PICKUP_SERVICE")
    assert store._orders[order_id].pickup_method == PickupMethod.PICKUP_SERVICE


async def test_create_order_rejects_malformed_notes():
    lifecycle, store, _ = make_lifecycle()
    with pytest.raises(OrderValidationError):
        await lifecycle.create_order(CUSTOMER_ID, [{"service_id": 1, "quantity": 1}], PickupMethod.SELF, notes=["x"])
    assert store._orders == {}


async def test_create_order_keeps_empty_notes():
    lifecycle, _, _ = make_lifecycle()
    order_id = await lifecycle.create_order(CUSTOMER_ID, [{"service_id": 1, "quantity": 1}], PickupMethod.SELF, notes="")
    order = await lifecycle.get_order(order_id, CUSTOMER_ID, Role.CUSTOMER)
    assert order.notes == ""


# --- advancing --------------------------------------------------------------

async def test_scenario_b_admin_confirms_delivery_step():
    lifecycle, _, sink = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.DICUCI)
    sink.sent.clear()

    order = await lifecycle.advance_status(order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY, Role.ADMIN)

    assert order.status == OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY
    assert len(sink.sent) == 1
    assert sink.sent[0].user_id == 42
    assert sink.sent[0].type == "status_update"
    assert sink.sent[0].payload["status"] == "MENUNGGU_KONFIRMASI_DELIVERY"


async def test_scenario_e_courier_cannot_skip_to_washing():
    lifecycle, _, sink = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    with pytest.raises(InvalidTransitionError) as exc:
        await lifecycle.advance_status(order_id, OrderStatus.DICUCI, Role.COURIER)
    assert exc.value.current_status == "DIPESAN"
    assert exc.value.attempted_status == "DICUCI"
    order = await lifecycle.get_order(order_id, CUSTOMER_ID, Role.CUSTOMER)
    assert order.status == OrderStatus.DIPESAN
    assert order.version == 1
    assert sink.sent == []


async def test_advance_unknown_order():
    lifecycle, _, _ = make_lifecycle()
    with pytest.raises(NotFoundError):
        await lifecycle.advance_status("missing", OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)


async def test_customer_cannot_use_advance_status_for_branch():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.advance_status(order_id, OrderStatus.MENUNGGU_AMBIL_SENDIRI, Role.CUSTOMER)


async def test_updated_at_bumped_on_each_transition():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    created = await lifecycle.get_order(order_id, CUSTOMER_ID, Role.CUSTOMER)
    moved = await lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)
    assert moved.updated_at > created.updated_at
    assert moved.created_at == created.created_at
    assert moved.version == created.version + 1


# --- branch and payment -----------------------------------------------------

async def test_scenarios_c_and_d_delivery_then_payment():
    lifecycle, _, sink = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY)

    order = await lifecycle.choose_fulfillment(order_id, 42, FulfillmentMethod.DELIVERY)
    assert order.fulfillment_method == FulfillmentMethod.DELIVERY
    assert order.status == OrderStatus.MENUNGGU_PEMBAYARAN_DELIVERY
    assert order.price_total == Decimal("20000")
    assert order.payment.status == PaymentStatus.PENDING

    sink.sent.clear()
    order = await lifecycle.pay_delivery_fee(order_id, 42, PaymentMethod.QRIS)
    assert order.payment.status == PaymentStatus.PAID
    assert order.payment.method == PaymentMethod.QRIS
    assert order.payment.paid_at is not None
    assert order.delivery_fee_paid is True
    assert order.status == OrderStatus.DIKIRIM
    assert [n.payload["status"] for n in sink.sent] == ["DIKIRIM"]

    done = await lifecycle.advance_status(order_id, OrderStatus.SELESAI, Role.ADMIN)
    assert done.status == OrderStatus.SELESAI
    assert done.price_total == Decimal("20000")


async def test_self_pickup_path_to_done():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_AMBIL_SENDIRI)
    with pytest.raises(InvalidStateError):
        await lifecycle.pay_delivery_fee(order_id, CUSTOMER_ID, PaymentMethod.QRIS)
    done = await lifecycle.advance_status(order_id, OrderStatus.SELESAI, Role.COURIER)
    assert done.status == OrderStatus.SELESAI
    assert done.price_total == Decimal("10000")
    assert done.delivery_fee_paid is False


async def test_choose_fulfillment_twice_fails_second_time():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY)
    await lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.SELF_PICKUP)
    with pytest.raises(InvalidStateError):
        await lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.DELIVERY)
    order = await lifecycle.get_order(order_id, CUSTOMER_ID, Role.CUSTOMER)
    assert order.fulfillment_method == FulfillmentMethod.SELF_PICKUP


async def test_choose_fulfillment_before_wash_is_invalid_state():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    with pytest.raises(InvalidStateError):
        await lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.DELIVERY)


async def test_other_customer_is_forbidden():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY)
    with pytest.raises(ForbiddenError):
        await lifecycle.choose_fulfillment(order_id, 7, FulfillmentMethod.DELIVERY)
    with pytest.raises(ForbiddenError):
        await lifecycle.get_order(order_id, 7, Role.CUSTOMER)
    await lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.DELIVERY)
    with pytest.raises(ForbiddenError):
        await lifecycle.pay_delivery_fee(order_id, 7, PaymentMethod.QRIS)


async def test_forbidden_checked_before_state():
    lifecycle, _, _ = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    # wrong owner and wrong state: the caller only learns "forbidden"
    with pytest.raises(ForbiddenError):
        await lifecycle.pay_delivery_fee(order_id, 7, PaymentMethod.QRIS)


# --- invariants over a whole run ---------------------------------------------

async def test_status_path_strictly_increases_and_invariants_hold():
    lifecycle, store, sink = make_lifecycle()
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.SELESAI)

    statuses = ["DIPESAN"] + [n.payload["status"] for n in sink.sent]
    ranks = [STATUS_RANK[OrderStatus(s)] for s in statuses]
    assert ranks == sorted(set(ranks))
    assert statuses == [
        "DIPESAN",
        "PESANAN_DIJEMPUT",
        "DIAMBIL",
        "DICUCI",
        "MENUNGGU_KONFIRMASI_DELIVERY",
        "MENUNGGU_PEMBAYARAN_DELIVERY",
        "DIKIRIM",
        "SELESAI",
    ]
    assert all(n.user_id == CUSTOMER_ID for n in sink.sent)
    final = store._orders[order_id]
    assert final.delivery_fee_paid and final.fulfillment_method == FulfillmentMethod.DELIVERY


async def test_notification_is_enqueued_after_the_write():
    store = InMemoryOrderStore()
    sink = CommitCheckingSink(store)
    lifecycle, _, _ = make_lifecycle(store=store, sink=sink)
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.DIKIRIM)
    assert sink.seen
    assert all(announced == stored for announced, stored in sink.seen)


async def test_sink_failure_does_not_fail_the_transition():
    lifecycle, store, _ = make_lifecycle(sink=BrokenSink())
    order_id = await create_default_order(lifecycle)
    order = await lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)
    assert order.status == OrderStatus.PESANAN_DIJEMPUT
    assert store._orders[order_id].status == OrderStatus.PESANAN_DIJEMPUT


# --- concurrency -------------------------------------------------------------

async def test_concurrent_advance_applies_exactly_once():
    store = InterleavingStore()
    lifecycle, _, sink = make_lifecycle(store=store)
    order_id = await create_default_order(lifecycle)

    results = await asyncio.gather(
        lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN),
        lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN),
        return_exceptions=True,
    )

    applied = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InvalidTransitionError)]
    assert len(applied) == 1 and len(rejected) == 1
    assert rejected[0].current_status == "PESANAN_DIJEMPUT"
    assert store._orders[order_id].version == 2
    assert len(sink.sent) == 1


async def test_admin_and_courier_racing_on_pickup():
    store = InterleavingStore()
    lifecycle, _, sink = make_lifecycle(store=store)
    order_id = await create_default_order(lifecycle)
    await lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)
    sink.sent.clear()

    results = await asyncio.gather(
        lifecycle.advance_status(order_id, OrderStatus.DIAMBIL, Role.ADMIN),
        lifecycle.advance_status(order_id, OrderStatus.DIAMBIL, Role.COURIER),
        return_exceptions=True,
    )
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert len(sink.sent) == 1


async def test_double_click_pay_charges_once():
    store = InterleavingStore()
    lifecycle, _, sink = make_lifecycle(store=store)
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_PEMBAYARAN_DELIVERY)
    sink.sent.clear()

    results = await asyncio.gather(
        lifecycle.pay_delivery_fee(order_id, CUSTOMER_ID, PaymentMethod.QRIS),
        lifecycle.pay_delivery_fee(order_id, CUSTOMER_ID, PaymentMethod.TRANSFER),
        return_exceptions=True,
    )
    assert sum(not isinstance(r, Exception) for r in results) == 1
    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    assert len(sink.sent) == 1
    assert store._orders[order_id].status == OrderStatus.DIKIRIM


async def test_concurrent_fulfillment_choices_resolve_once():
    store = InterleavingStore()
    lifecycle, _, _ = make_lifecycle(store=store)
    order_id = await create_default_order(lifecycle)
    await drive_to(lifecycle, order_id, OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY)

    results = await asyncio.gather(
        lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.DELIVERY),
        lifecycle.choose_fulfillment(order_id, CUSTOMER_ID, FulfillmentMethod.SELF_PICKUP),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert sum(isinstance(r, InvalidStateError) for r in results) == 1
    assert store._orders[order_id].fulfillment_method == winners[0].fulfillment_method


async def test_independent_orders_advance_in_parallel():
    store = InterleavingStore()
    lifecycle, _, _ = make_lifecycle(store=store)
    first = await create_default_order(lifecycle)
    second = await create_default_order(lifecycle, customer_id=7)
    a, b = await asyncio.gather(
        lifecycle.advance_status(first, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN),
        lifecycle.advance_status(second, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN),
    )
    assert a.status == b.status == OrderStatus.PESANAN_DIJEMPUT


async def test_conflict_surfaces_after_bounded_retries():
    store = AlwaysConflictingStore()
    lifecycle, _, sink = make_lifecycle(store=store, max_attempts=3)
    order_id = await create_default_order(lifecycle)
    store.armed = True

    with pytest.raises(ConflictError) as exc:
        await lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)
    assert exc.value.attempts == 3
    assert store.conflicting_saves == 3
    assert store._orders[order_id].status == OrderStatus.DIPESAN
    assert sink.sent == []


async def test_conflict_attempt_bound_defaults_to_settings():
    store = AlwaysConflictingStore()
    lifecycle = OrderLifecycle(store, InMemoryNotificationSink(), InMemoryServiceCatalog(DEFAULT_SERVICES))
    order_id = await lifecycle.create_order(CUSTOMER_ID, [{"service_id": 1, "quantity": 1}], PickupMethod.SELF)
    store.armed = True

    with pytest.raises(ConflictError) as exc:
        await lifecycle.advance_status(order_id, OrderStatus.PESANAN_DIJEMPUT, Role.ADMIN)
    assert exc.value.attempts == settings.conflict_max_attempts
    assert store.conflicting_saves == settings.conflict_max_attempts
