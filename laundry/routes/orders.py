from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from laundry.labels import LEGACY_STATUS, STATUS_LABELS
from laundry.lifecycle import OrderLifecycle
from laundry.models import FulfillmentMethod, Order, OrderStatus, PaymentMethod, PickupMethod, Role
from laundry.redis_client import release_idempotency_key, remember_idempotency_key, update_idempotency_key

router = APIRouter(prefix="/orders", tags=["orders"])

IDEMPOTENCY_PENDING = "pending"


class OrderItemBody(BaseModel):
    service_id: int
    quantity: int


class CreateOrderBody(BaseModel):
    customer_id: int = Field(..., description="Customer placing the order")
    items: list[OrderItemBody] = Field(..., description="Service line items; prices come from the catalog")
    pickup_method: PickupMethod = PickupMethod.SELF
    notes: str | None = None


class AdvanceStatusBody(BaseModel):
    status: OrderStatus = Field(..., description="Requested next status")
    role: Role = Field(..., description="Role of the actor requesting the change")


class FulfillmentBody(BaseModel):
    customer_id: int
    choice: FulfillmentMethod


class DeliveryPaymentBody(BaseModel):
    customer_id: int
    method: PaymentMethod = PaymentMethod.QRIS


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def render_order(order: Order) -> dict:
    data = order.model_dump(mode="json")
    data["status_label"] = STATUS_LABELS[order.status]
    data["legacy_status"] = LEGACY_STATUS[order.status]
    return data


@router.post("")
async def create_order(
    body: CreateOrderBody,
    request: Request,
    idempotency_key: str | None = Header(default=None),
) -> JSONResponse:
    """
    Place an order. With an Idempotency-Key header, a repeated request returns the first order id (200)
    instead of creating a second order.
    """
    key = None
    if idempotency_key:
        key = f"idempotency:order:{body.customer_id}:{idempotency_key}"
        existing = await remember_idempotency_key(key, IDEMPOTENCY_PENDING)
        if existing == IDEMPOTENCY_PENDING:
            return JSONResponse(status_code=409, content={"status": "in_progress"})
        if existing is not None:
            return JSONResponse(status_code=200, content={"status": "already_processed", "order_id": existing})

    try:
        order_id = await get_lifecycle(request).create_order(
            customer_id=body.customer_id,
            items=[item.model_dump() for item in body.items],
            pickup_method=body.pickup_method,
            notes=body.notes,
        )
    except Exception:
        if key:
            await release_idempotency_key(key)
        raise
    if key:
        await update_idempotency_key(key, order_id)
    return JSONResponse(status_code=201, content={"status": "created", "order_id": order_id})


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    actor_id: int = Query(...),
    role: Role = Query(...),
) -> dict:
    order = await get_lifecycle(request).get_order(order_id, actor_id, role)
    return render_order(order)


@router.post("/{order_id}/status")
async def advance_status(order_id: str, body: AdvanceStatusBody, request: Request) -> dict:
    order = await get_lifecycle(request).advance_status(order_id, body.status, body.role)
    return render_order(order)


@router.post("/{order_id}/fulfillment")
async def choose_fulfillment(order_id: str, body: FulfillmentBody, request: Request) -> dict:
    order = await get_lifecycle(request).choose_fulfillment(order_id, body.customer_id, body.choice)
    return render_order(order)


@router.post("/{order_id}/delivery-payment")
async def pay_delivery_fee(order_id: str, body: DeliveryPaymentBody, request: Request) -> dict:
    order = await get_lifecycle(request).pay_delivery_fee(order_id, body.customer_id, body.method)
    return render_order(order)
