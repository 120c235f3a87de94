"""
Post-wash branch: self-pickup or paid delivery, and the delivery-fee payment gate.
Both operations go through the transition table with their own trigger.
"""
import logging
from datetime import datetime

from laundry.errors import InvalidStateError
from laundry.models import (
    DELIVERY_FEE,
    FulfillmentMethod,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Role,
    compute_price_total,
)
from laundry.order_state import TransitionResult, Trigger, apply_transition

logger = logging.getLogger(__name__)

BRANCH_STATUS: dict[FulfillmentMethod, OrderStatus] = {
    FulfillmentMethod.SELF_PICKUP: OrderStatus.MENUNGGU_AMBIL_SENDIRI,
    FulfillmentMethod.DELIVERY: OrderStatus.MENUNGGU_PEMBAYARAN_DELIVERY,
}


def choose_fulfillment(order: Order, choice: FulfillmentMethod, now: datetime) -> TransitionResult:
    """One-shot: a second call on the same order fails because fulfillment_method is already set."""
    if order.status != OrderStatus.MENUNGGU_KONFIRMASI_DELIVERY:
        raise InvalidStateError(f"order {order.id} is not waiting for delivery confirmation (status={order.status.value})")
    if order.fulfillment_method != FulfillmentMethod.UNSET:
        raise InvalidStateError(f"order {order.id} already chose {order.fulfillment_method.value}")
    if choice not in BRANCH_STATUS:
        raise InvalidStateError(f"{choice.value} is not a fulfillment choice")

    changes: dict = {
        "fulfillment_method": choice,
        "price_total": compute_price_total(order.items, choice),
    }
    payload: dict = {"fulfillment_method": choice.value}
    if choice == FulfillmentMethod.DELIVERY:
        changes["payment"] = Payment(amount=DELIVERY_FEE, created_at=now)
        payload["delivery_fee"] = str(DELIVERY_FEE)
        payload["isi_pesan"] = (
            f"Silakan lakukan pembayaran ongkos kirim (Rp {DELIVERY_FEE:,.0f}) agar pesanan dapat dikirim."
        )

    result = apply_transition(
        order,
        BRANCH_STATUS[choice],
        Role.CUSTOMER,
        now,
        trigger=Trigger.FULFILLMENT_CHOICE,
        changes=changes,
        payload=payload,
    )
    logger.info("Order %s fulfillment=%s status=%s", order.id, choice.value, result.order.status.value)
    return result


def confirm_delivery_payment(order: Order, method: PaymentMethod, now: datetime) -> TransitionResult:
    """Mocked payment confirmation: marks the pending delivery-fee payment PAID and ships the order."""
    if order.status != OrderStatus.MENUNGGU_PEMBAYARAN_DELIVERY:
        raise InvalidStateError(f"order {order.id} is not waiting for delivery payment (status={order.status.value})")
    if order.payment is None or order.payment.status != PaymentStatus.PENDING:
        raise InvalidStateError(f"order {order.id} has no pending payment")

    paid = order.payment.model_copy(update={"status": PaymentStatus.PAID, "method": method, "paid_at": now})
    result = apply_transition(
        order,
        OrderStatus.DIKIRIM,
        Role.CUSTOMER,
        now,
        trigger=Trigger.DELIVERY_PAYMENT,
        changes={"payment": paid, "delivery_fee_paid": True},
        payload={"payment_method": method.value, "amount": str(paid.amount)},
    )
    logger.info("Order %s delivery fee paid via %s", order.id, method.value)
    return result
