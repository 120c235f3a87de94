"""
Order aggregate: order, line items, delivery-fee payment, and the notification intents a transition produces.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

DELIVERY_FEE = Decimal("10000")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    DIPESAN = "DIPESAN"
    PESANAN_DIJEMPUT = "PESANAN_DIJEMPUT"
    DIAMBIL = "DIAMBIL"
    DICUCI = "DICUCI"
    MENUNGGU_KONFIRMASI_DELIVERY = "MENUNGGU_KONFIRMASI_DELIVERY"
    MENUNGGU_PEMBAYARAN_DELIVERY = "MENUNGGU_PEMBAYARAN_DELIVERY"
    MENUNGGU_AMBIL_SENDIRI = "MENUNGGU_AMBIL_SENDIRI"
    DIKIRIM = "DIKIRIM"
    SELESAI = "SELESAI"


class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    COURIER = "COURIER"


class PickupMethod(str, Enum):
    SELF = "SELF"
    PICKUP_SERVICE = "PICKUP_SERVICE"


class FulfillmentMethod(str, Enum):
    UNSET = "UNSET"
    SELF_PICKUP = "SELF_PICKUP"
    DELIVERY = "DELIVERY"


class PaymentMethod(str, Enum):
    QRIS = "QRIS"
    TRANSFER = "TRANSFER"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class Service(BaseModel):
    id: int
    name: str = ""
    unit_price: Decimal = Field(ge=0)


class OrderItem(BaseModel):
    service_id: int
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class Payment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    method: PaymentMethod | None = None  # chosen when the customer pays
    status: PaymentStatus = PaymentStatus.PENDING
    amount: Decimal
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: datetime | None = None


class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: int
    status: OrderStatus = OrderStatus.DIPESAN
    pickup_method: PickupMethod
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.UNSET
    items: list[OrderItem] = Field(min_length=1)
    price_total: Decimal
    delivery_fee_paid: bool = False
    payment: Payment | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0  # 0 until first saved

    @model_validator(mode="after")
    def check_invariants(self) -> "Order":
        if self.delivery_fee_paid and self.fulfillment_method != FulfillmentMethod.DELIVERY:
            raise ValueError("delivery_fee_paid requires fulfillment_method DELIVERY")
        expected = compute_price_total(self.items, self.fulfillment_method)
        if self.price_total != expected:
            raise ValueError(f"price_total {self.price_total} does not match items/fee total {expected}")
        return self


class NotificationIntent(BaseModel):
    """What the core asks the sink to deliver once the order write has committed."""
    user_id: int
    type: str
    order_id: str
    payload: dict = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


def compute_price_total(items: list[OrderItem], fulfillment_method: FulfillmentMethod) -> Decimal:
    total = sum((item.subtotal for item in items), Decimal("0"))
    if fulfillment_method == FulfillmentMethod.DELIVERY:
        total += DELIVERY_FEE
    return total
