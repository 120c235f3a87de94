"""
Order lifecycle state machine. Valid transitions enforce business rules.

The table maps (current status, actor role) to the statuses that role may move the order to,
and names the trigger that owns each transition. MANUAL transitions are requested directly
(admin/courier "advance status"); the other triggers belong to the fulfillment branch and
its payment gate, so a plain status request for them is rejected.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import NamedTuple

from laundry.errors import InvalidTransitionError
from laundry.models import NotificationIntent, Order, OrderStatus, Role

logger = logging.getLogger(__name__)


class Trigger(str, Enum):
    MANUAL = "MANUAL"
    FULFILLMENT_CHOICE = "FULFILLMENT_CHOICE"
    DELIVERY_PAYMENT = "DELIVERY_PAYMENT"


S = OrderStatus

# (current status, role) -> {allowed next status: trigger}
VALID_TRANSITIONS: dict[tuple[OrderStatus, Role], dict[OrderStatus, Trigger]] = {
    (S.DIPESAN, Role.ADMIN): {S.PESANAN_DIJEMPUT: Trigger.MANUAL},
    (S.PESANAN_DIJEMPUT, Role.ADMIN): {S.DIAMBIL: Trigger.MANUAL},
    (S.PESANAN_DIJEMPUT, Role.COURIER): {S.DIAMBIL: Trigger.MANUAL},
    (S.DIAMBIL, Role.ADMIN): {S.DICUCI: Trigger.MANUAL},
    (S.DICUCI, Role.ADMIN): {S.MENUNGGU_KONFIRMASI_DELIVERY: Trigger.MANUAL},
    (S.MENUNGGU_KONFIRMASI_DELIVERY, Role.CUSTOMER): {
        S.MENUNGGU_PEMBAYARAN_DELIVERY: Trigger.FULFILLMENT_CHOICE,
        S.MENUNGGU_AMBIL_SENDIRI: Trigger.FULFILLMENT_CHOICE,
    },
    (S.MENUNGGU_PEMBAYARAN_DELIVERY, Role.CUSTOMER): {S.DIKIRIM: Trigger.DELIVERY_PAYMENT},
    (S.MENUNGGU_AMBIL_SENDIRI, Role.ADMIN): {S.SELESAI: Trigger.MANUAL},
    (S.MENUNGGU_AMBIL_SENDIRI, Role.COURIER): {S.SELESAI: Trigger.MANUAL},
    (S.DIKIRIM, Role.ADMIN): {S.SELESAI: Trigger.MANUAL},
    (S.DIKIRIM, Role.COURIER): {S.SELESAI: Trigger.MANUAL},
}

TERMINAL_STATUSES = frozenset([S.SELESAI])

# Position along the lifecycle; the two branch statuses share a rank.
STATUS_RANK: dict[OrderStatus, int] = {
    S.DIPESAN: 0,
    S.PESANAN_DIJEMPUT: 1,
    S.DIAMBIL: 2,
    S.DICUCI: 3,
    S.MENUNGGU_KONFIRMASI_DELIVERY: 4,
    S.MENUNGGU_PEMBAYARAN_DELIVERY: 5,
    S.MENUNGGU_AMBIL_SENDIRI: 5,
    S.DIKIRIM: 6,
    S.SELESAI: 7,
}

STATUS_MESSAGES: dict[OrderStatus, str] = {
    S.PESANAN_DIJEMPUT: "Pesanan sedang dijemput.",
    S.DIAMBIL: "Pesanan Anda telah diambil dan sedang dibawa ke lokasi.",
    S.DICUCI: "Pesanan sedang dicuci dan diproses.",
    S.MENUNGGU_KONFIRMASI_DELIVERY: "Pesanan selesai dicuci. Silakan pilih metode pengambilan: ambil sendiri atau dianter.",
    S.MENUNGGU_PEMBAYARAN_DELIVERY: "Silakan lakukan pembayaran ongkos kirim agar pesanan dapat dikirim.",
    S.MENUNGGU_AMBIL_SENDIRI: "Pesanan siap diambil di lokasi. Silakan datang untuk mengambil pesanan Anda.",
    S.DIKIRIM: "Pesanan sedang dikirim ke alamat Anda.",
    S.SELESAI: "Pesanan telah selesai. Terima kasih!",
}


class TransitionResult(NamedTuple):
    order: Order
    notifications: list[NotificationIntent]


def allowed_next(current: OrderStatus, role: Role, trigger: Trigger | None = None) -> set[OrderStatus]:
    """Statuses `role` may move an order to from `current` (restricted to `trigger` when given)."""
    rules = VALID_TRANSITIONS.get((current, role), {})
    return {status for status, owner in rules.items() if trigger is None or owner == trigger}


def is_valid_transition(
    current: OrderStatus,
    requested: OrderStatus,
    role: Role,
    trigger: Trigger = Trigger.MANUAL,
) -> bool:
    """True if `role` may move an order from `current` to `requested` through `trigger`."""
    return VALID_TRANSITIONS.get((current, role), {}).get(requested) == trigger


def apply_transition(
    order: Order,
    requested: OrderStatus,
    role: Role,
    now: datetime,
    trigger: Trigger = Trigger.MANUAL,
    changes: dict | None = None,
    payload: dict | None = None,
) -> TransitionResult:
    """
    Validate and apply one status change; returns the new order and exactly one customer notification.
    `changes` carries branch-specific field updates written in the same step as the status.
    The input order is never mutated.
    """
    current = order.status
    if not is_valid_transition(current, requested, role, trigger):
        logger.info(
            "Rejected transition order_id=%s %s -> %s (role=%s, trigger=%s)",
            order.id, current.value, requested.value, role.value, trigger.value,
        )
        raise InvalidTransitionError(current.value, requested.value, role.value)

    data = order.model_dump()
    data.update(changes or {})
    data.update(status=requested, updated_at=now)
    new_order = Order.model_validate(data)

    intent = NotificationIntent(
        user_id=order.customer_id,
        type="status_update",
        order_id=order.id,
        payload={
            "status": requested.value,
            "previous_status": current.value,
            "isi_pesan": STATUS_MESSAGES.get(requested, f"Status order berubah menjadi {requested.value}"),
            **(payload or {}),
        },
    )
    return TransitionResult(new_order, [intent])
