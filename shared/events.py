"""
Pydantic event schemas shared across all services.
All events extend EventBase which carries correlation/tracing metadata.

Order lifecycle events are published by the order store after every
committed write; the fulfillment service consumes them.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from shared.clock import utcnow
from shared.order_state import OrderStatus, PaymentStatus

ORDERS_CREATED_TOPIC = "orders.created"
ORDERS_UPDATED_TOPIC = "orders.updated"
ORDERS_DLQ_TOPIC = "orders.dlq"
FULFILLMENT_STEPS_TOPIC = "fulfillment.steps"


class EventBase(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_version: int = 1
    correlation_id: str  # carries X-Request-ID from the HTTP layer
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = {"extra": "ignore"}


class OrderItemSnapshot(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal

    model_config = {"extra": "ignore"}

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class AddressSnapshot(BaseModel):
    name: str
    street: str
    city: str
    state: str
    postal_code: str
    phone: str
    email: str | None = None
    country: str | None = None

    model_config = {"extra": "ignore"}


class OrderSnapshot(BaseModel):
    """Point-in-time copy of an order row, built straight from the ORM object."""

    id: str
    user_id: str
    user_email: str | None = None
    items: list[OrderItemSnapshot]
    address: AddressSnapshot
    payment_status: PaymentStatus
    order_status: OrderStatus
    payment_error: str | None = None
    created_at: datetime

    model_config = {"extra": "ignore", "from_attributes": True}

    @property
    def total_amount(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0.00"))

    @property
    def contact_email(self) -> str | None:
        return self.user_email or self.address.email or None


class OrderCreatedEvent(EventBase):
    order: OrderSnapshot


class OrderUpdatedEvent(EventBase):
    before: OrderSnapshot
    after: OrderSnapshot


class PipelineStepEvent(EventBase):
    order_id: str | None = None
    trigger: str
    step: str
    outcome: str  # "started" | "succeeded" | "failed" | "skipped"
    detail: str | None = None
    error: str | None = None
