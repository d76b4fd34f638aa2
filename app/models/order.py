import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from shared.clock import utcnow
from shared.order_state import OrderStatus, PaymentStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_email: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Denormalized snapshots taken at checkout; never rewritten
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    address: Mapped[dict] = mapped_column(JSON, nullable=False)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus, name="paymentstatus", values_callable=_enum_values),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus, name="orderstatus", values_callable=_enum_values),
        default=OrderStatus.PENDING,
        nullable=False,
    )

    invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_generated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # {kind: {"timestamp": iso8601, "recipient": email}}
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
