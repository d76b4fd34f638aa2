import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, EmailStr, Field

from shared.order_state import OrderStatus, PaymentStatus, ShipmentStatus


class AddressIn(BaseModel):
    name: str
    street: str
    city: str
    state: str
    postal_code: str
    phone: str
    email: EmailStr | None = None
    country: str | None = None


class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class OrderCreate(BaseModel):
    user_email: EmailStr | None = None
    address: AddressIn
    items: list[OrderItemCreate] = Field(min_length=1)


class PaymentUpdate(BaseModel):
    status: PaymentStatus
    reason: str | None = None


class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class NotificationRecord(BaseModel):
    timestamp: datetime
    recipient: str


class PaymentFailedResponse(BaseModel):
    timestamp: datetime
    reason: str | None
    cancellation_scheduled_for: datetime | None
    auto_cancel: bool


class ShipmentResponse(BaseModel):
    id: uuid.UUID
    order_id: str
    tracking_number: str
    carrier_name: str
    estimated_delivery: str | None
    label_url: str | None
    status: ShipmentStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    id: str
    user_id: str
    user_email: str | None
    items: list[OrderItemResponse]
    address: dict
    payment_status: PaymentStatus
    order_status: OrderStatus
    total_amount: Decimal
    invoice_url: str | None
    invoice_generated_at: datetime | None
    email_sent: dict[str, NotificationRecord]
    payment_failed: PaymentFailedResponse | None
    cancelled_at: datetime | None
    cancel_reason: str | None
    fulfilled_at: datetime | None
    created_at: datetime
    updated_at: datetime
    shipment: ShipmentResponse | None = None


class TrackingUpdateResponse(BaseModel):
    status: str
    timestamp: str
    location: str
    message: str


class TrackingResponse(BaseModel):
    shipment: ShipmentResponse
    order_status: OrderStatus
    carrier_status: str
    current_location: str
    estimated_delivery: str
    updates: list[TrackingUpdateResponse]
