"""
Order store write paths.

Every committed mutation of an order is published to Kafka as a lifecycle
event (``orders.created`` / ``orders.updated``) so the fulfillment service can
react to it. Events are published only after the commit succeeds.
"""

import logging
from decimal import Decimal

from aiokafka import AIOKafkaProducer
from opentelemetry.propagate import inject
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order
from app.models.product import Product
from app.models.shipment import Shipment
from app.schemas.order import (
    NotificationRecord,
    OrderCreate,
    OrderItemResponse,
    OrderResponse,
    PaymentFailedResponse,
    PaymentUpdate,
    ShipmentResponse,
    TrackingResponse,
    TrackingUpdateResponse,
)
from shared.clock import utcnow
from shared.collaborators.base import CollaboratorError
from shared.collaborators.notification import NotificationSender, TemplateKind
from shared.collaborators.shipment import ShipmentGateway
from shared.events import (
    ORDERS_CREATED_TOPIC,
    ORDERS_UPDATED_TOPIC,
    EventBase,
    OrderCreatedEvent,
    OrderItemSnapshot,
    OrderSnapshot,
    OrderUpdatedEvent,
)
from shared.order_state import (
    SHIPMENT_ORDER_STATUS,
    OrderStatus,
    PaymentStatus,
    ShipmentStatus,
    can_record_payment,
    can_transition,
)

logger = logging.getLogger(__name__)

_SHIPMENT_PROGRESS = [ShipmentStatus.PENDING, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED]

_PROGRESS_NOTIFICATIONS = {
    OrderStatus.SHIPPED: TemplateKind.SHIPMENT_CREATED,
    OrderStatus.DELIVERED: TemplateKind.ORDER_DELIVERED,
}


class OrderNotFoundError(Exception):
    """No order with this id is visible to the caller."""


class ShipmentNotFoundError(Exception):
    """The order has no shipment yet."""


class PaymentTransitionError(Exception):
    """The requested payment status change is not allowed from the current one."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _snapshot(order: Order) -> OrderSnapshot:
    return OrderSnapshot.model_validate(order)


def _build_response(order: Order, shipment: Shipment | None = None) -> OrderResponse:
    items = [OrderItemSnapshot.model_validate(raw) for raw in order.items]

    payment_failed = None
    if order.payment_failed_at is not None:
        payment_failed = PaymentFailedResponse(
            timestamp=order.payment_failed_at,
            reason=order.payment_failure_reason,
            cancellation_scheduled_for=order.cancellation_scheduled_for,
            auto_cancel=order.auto_cancel,
        )

    return OrderResponse(
        id=order.id,
        user_id=order.user_id,
        user_email=order.user_email,
        items=[
            OrderItemResponse(
                product_id=item.product_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            for item in items
        ],
        address=order.address,
        payment_status=order.payment_status,
        order_status=order.order_status,
        total_amount=sum((item.subtotal for item in items), Decimal("0.00")),
        invoice_url=order.invoice_url,
        invoice_generated_at=order.invoice_generated_at,
        email_sent={
            kind: NotificationRecord.model_validate(record)
            for kind, record in (order.email_sent or {}).items()
        },
        payment_failed=payment_failed,
        cancelled_at=order.cancelled_at,
        cancel_reason=order.cancel_reason,
        fulfilled_at=order.fulfilled_at,
        created_at=order.created_at,
        updated_at=order.updated_at,
        shipment=ShipmentResponse.model_validate(shipment) if shipment is not None else None,
    )


async def _fetch_order(db: AsyncSession, order_id: str, *, for_update: bool = False) -> Order | None:
    query = select(Order).where(Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalars().first()


async def _fetch_shipment(db: AsyncSession, order_id: str) -> Shipment | None:
    result = await db.execute(select(Shipment).where(Shipment.order_id == order_id))
    return result.scalars().first()


async def _publish(producer: AIOKafkaProducer, topic: str, order_id: str, event: EventBase) -> None:
    # Propagate trace context so the consumer's span joins this request's trace
    headers: dict[str, str] = {}
    inject(headers)
    await producer.send_and_wait(
        topic,
        key=order_id.encode(),
        value=event.model_dump_json().encode(),
        headers=[(k, v.encode()) for k, v in headers.items()],
    )
    logger.info(
        "Published %s event",
        topic,
        extra={"order_id": order_id, "correlation_id": event.correlation_id},
    )


async def _notify_progress(
    db: AsyncSession,
    order: Order,
    shipment: Shipment,
    notifications: NotificationSender,
    request_id: str,
) -> None:
    """Tell the customer the order shipped or arrived. Best-effort, once per kind."""
    kind = _PROGRESS_NOTIFICATIONS.get(order.order_status)
    snapshot = _snapshot(order)
    recipient = snapshot.contact_email
    if kind is None or not recipient or kind.value in (order.email_sent or {}):
        return

    data = {
        "order_id": order.id,
        "customer_name": snapshot.address.name,
        "carrier_name": shipment.carrier_name,
        "tracking_number": shipment.tracking_number,
        "estimated_delivery": shipment.estimated_delivery or "",
    }
    try:
        await notifications.send(recipient, kind, data)
    except CollaboratorError as exc:
        logger.warning(
            "Progress notification not sent",
            extra={
                "order_id": order.id,
                "request_id": request_id,
                "template": kind.value,
                "error": str(exc),
            },
        )
        return

    sent = dict(order.email_sent or {})
    sent[kind.value] = {"timestamp": utcnow().isoformat(), "recipient": recipient}
    order.email_sent = sent
    await db.commit()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def create_order(
    db: AsyncSession,
    order_data: OrderCreate,
    user_id: str,
    request_id: str,
    producer: AIOKafkaProducer,
) -> OrderResponse:
    # 1. Validate products and snapshot name + price at checkout time
    product_ids = [item.product_id for item in order_data.items]
    result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
    products: dict[str, Product] = {p.id: p for p in result.scalars().all()}

    missing = set(product_ids) - set(products.keys())
    if missing:
        raise ValueError(f"Products not found: {sorted(missing)}")

    items = [
        OrderItemSnapshot(
            product_id=item.product_id,
            name=products[item.product_id].name,
            quantity=item.quantity,
            unit_price=products[item.product_id].price,
        ).model_dump(mode="json")
        for item in order_data.items
    ]

    # 2. Persist (payment pending, order pending)
    order = Order(
        user_id=user_id,
        user_email=str(order_data.user_email) if order_data.user_email else None,
        items=items,
        address=order_data.address.model_dump(mode="json"),
        payment_status=PaymentStatus.PENDING,
        email_sent={},
    )
    db.add(order)
    await db.commit()

    logger.info(
        "Order persisted",
        extra={"order_id": order.id, "request_id": request_id, "item_count": len(items)},
    )

    # 3. Announce the new document
    await _publish(
        producer,
        ORDERS_CREATED_TOPIC,
        order.id,
        OrderCreatedEvent(correlation_id=request_id, order=_snapshot(order)),
    )
    return _build_response(order)


async def get_order_details(db: AsyncSession, order_id: str, caller_id: str) -> OrderResponse:
    order = await _fetch_order(db, order_id)
    # Another customer's order is reported exactly like a missing one
    if order is None or order.user_id != caller_id:
        raise OrderNotFoundError(order_id)
    return _build_response(order, await _fetch_shipment(db, order_id))


async def record_payment(
    db: AsyncSession,
    order_id: str,
    update: PaymentUpdate,
    request_id: str,
    producer: AIOKafkaProducer,
) -> OrderResponse:
    order = await _fetch_order(db, order_id, for_update=True)
    if order is None:
        raise OrderNotFoundError(order_id)

    if order.payment_status == update.status:
        # Gateways resend callbacks; an unchanged status is not a mutation
        logger.info(
            "Payment status unchanged, nothing to record",
            extra={"order_id": order_id, "payment_status": update.status.value},
        )
        response = _build_response(order)
        await db.rollback()
        return response

    if not can_record_payment(order.payment_status, update.status):
        # rollback expires the instance; read the status first
        current = order.payment_status
        await db.rollback()
        raise PaymentTransitionError(
            f"Cannot move payment from {current.value} to {update.status.value}"
        )

    before = _snapshot(order)
    order.payment_status = update.status
    if update.status == PaymentStatus.FAILED:
        order.payment_error = update.reason or "Payment declined"
    await db.commit()

    logger.info(
        "Payment status recorded",
        extra={
            "order_id": order_id,
            "request_id": request_id,
            "from": before.payment_status.value,
            "to": update.status.value,
        },
    )

    await _publish(
        producer,
        ORDERS_UPDATED_TOPIC,
        order_id,
        OrderUpdatedEvent(correlation_id=request_id, before=before, after=_snapshot(order)),
    )
    return _build_response(order, await _fetch_shipment(db, order_id))


async def refresh_tracking(
    db: AsyncSession,
    order_id: str,
    gateway: ShipmentGateway,
    notifications: NotificationSender,
    request_id: str,
    producer: AIOKafkaProducer,
) -> TrackingResponse:
    """Pull carrier tracking, move the shipment forward and advance the order to shipped/delivered."""
    shipment = await _fetch_shipment(db, order_id)
    if shipment is None:
        raise ShipmentNotFoundError(order_id)

    info = await gateway.track_shipment(shipment.external_id)

    order = await _fetch_order(db, order_id, for_update=True)
    if order is None:
        raise OrderNotFoundError(order_id)
    before = _snapshot(order)

    if _SHIPMENT_PROGRESS.index(info.status) > _SHIPMENT_PROGRESS.index(shipment.status):
        shipment.status = info.status
    if info.estimated_delivery:
        shipment.estimated_delivery = info.estimated_delivery

    target = SHIPMENT_ORDER_STATUS[shipment.status]
    order_changed = target is not None and can_transition(order.order_status, target)
    if order_changed:
        order.order_status = target
    await db.commit()

    if order_changed:
        logger.info(
            "Order advanced from carrier tracking",
            extra={
                "order_id": order_id,
                "request_id": request_id,
                "order_status": order.order_status.value,
                "carrier_status": info.raw_status,
            },
        )
        await _publish(
            producer,
            ORDERS_UPDATED_TOPIC,
            order_id,
            OrderUpdatedEvent(correlation_id=request_id, before=before, after=_snapshot(order)),
        )
        await _notify_progress(db, order, shipment, notifications, request_id)

    return TrackingResponse(
        shipment=ShipmentResponse.model_validate(shipment),
        order_status=order.order_status,
        carrier_status=info.raw_status,
        current_location=info.current_location,
        estimated_delivery=info.estimated_delivery,
        updates=[
            TrackingUpdateResponse(
                status=u.status, timestamp=u.timestamp, location=u.location, message=u.message
            )
            for u in info.updates
        ],
    )
