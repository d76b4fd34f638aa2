"""
Re-declares only the ORM models that fulfillment_service needs to read/write.
Table names must match those created by the order store (app/).
The orders/products/shipments tables stay owned by app; the only table this
service creates is fulfillment_transitions.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from fulfillment_service.database import Base
from shared.clock import utcnow
from shared.order_state import OrderStatus, PaymentStatus, ShipmentStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class TransitionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    DONE = "done"
    SKIPPED = "skipped"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    address: Mapped[dict] = mapped_column(JSON, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, name="paymentstatus", values_callable=_enum_values), nullable=False
    )
    payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, name="orderstatus", values_callable=_enum_values), nullable=False
    )
    invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_generated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    email_sent: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    payment_failed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    payment_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_scheduled_for: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    auto_cancel: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Shipment(Base):
    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True, nullable=False)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tracking_number: Mapped[str] = mapped_column(String(100), nullable=False)
    carrier_name: Mapped[str] = mapped_column(String(100), nullable=False)
    estimated_delivery: Mapped[str | None] = mapped_column(String(32), nullable=True)
    label_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[ShipmentStatus] = mapped_column(
        SAEnum(ShipmentStatus, name="shipmentstatus", values_callable=_enum_values), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class FulfillmentTransition(Base):
    """Idempotency record for one (order, payment transition) plus pipeline checkpoints."""

    __tablename__ = "fulfillment_transitions"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transition: Mapped[str] = mapped_column(String(32), primary_key=True)  # "completed" | "failed"
    status: Mapped[TransitionStatus] = mapped_column(
        SAEnum(TransitionStatus, name="transitionstatus", values_callable=_enum_values),
        nullable=False,
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_generated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    inventory_adjusted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
