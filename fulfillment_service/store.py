"""
Order-row reads and writes used by the fulfillment handlers.

Functions that take an ``Order`` only mutate it; the caller commits, usually
together with a transition-ledger update.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment_service.models import Order, Shipment
from shared.collaborators.shipment import ShipmentHandle
from shared.events import OrderSnapshot
from shared.order_state import OrderStatus, PaymentStatus, ShipmentStatus, can_transition

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "Auto-cancelled: Payment not completed within 24 hours"
DEFAULT_FAILURE_REASON = "Payment declined"


async def load_order(db: AsyncSession, order_id: str, *, for_update: bool = False) -> Order | None:
    query = select(Order).where(Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalars().first()


async def load_snapshot(db: AsyncSession, order_id: str) -> OrderSnapshot | None:
    order = await load_order(db, order_id)
    return OrderSnapshot.model_validate(order) if order is not None else None


# ---------------------------------------------------------------------------
# Notification bookkeeping (email_sent)
# ---------------------------------------------------------------------------


async def mark_notification(
    db: AsyncSession, order_id: str, kind: str, recipient: str, now: datetime
) -> bool:
    """Record ``kind`` as sent; False if it was already recorded (or the order is gone)."""
    order = await load_order(db, order_id, for_update=True)
    if order is None or kind in (order.email_sent or {}):
        await db.rollback()
        return False
    sent = dict(order.email_sent or {})
    sent[kind] = {"timestamp": now.isoformat(), "recipient": recipient}
    order.email_sent = sent
    await db.commit()
    return True


async def unmark_notification(db: AsyncSession, order_id: str, kind: str) -> None:
    order = await load_order(db, order_id, for_update=True)
    if order is None or kind not in (order.email_sent or {}):
        await db.rollback()
        return
    sent = dict(order.email_sent)
    del sent[kind]
    order.email_sent = sent
    await db.commit()


# ---------------------------------------------------------------------------
# Payment-completed pipeline
# ---------------------------------------------------------------------------


async def load_shipment(db: AsyncSession, order_id: str) -> Shipment | None:
    result = await db.execute(select(Shipment).where(Shipment.order_id == order_id))
    return result.scalars().first()


def add_shipment(db: AsyncSession, order_id: str, handle: ShipmentHandle, now: datetime) -> Shipment:
    shipment = Shipment(
        order_id=order_id,
        external_id=handle.shipment_id,
        tracking_number=handle.tracking_number,
        carrier_name=handle.carrier_name,
        estimated_delivery=handle.estimated_delivery,
        label_url=handle.label_url or None,
        status=ShipmentStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(shipment)
    return shipment


def apply_fulfillment(
    order: Order, invoice_url: str, invoice_generated_at: datetime, now: datetime
) -> None:
    order.invoice_url = invoice_url
    order.invoice_generated_at = invoice_generated_at
    if can_transition(order.order_status, OrderStatus.PROCESSING):
        order.order_status = OrderStatus.PROCESSING
    order.fulfilled_at = now
    # A completed payment supersedes any pending auto-cancellation
    order.auto_cancel = False


# ---------------------------------------------------------------------------
# Payment failure
# ---------------------------------------------------------------------------


def apply_payment_failure(
    order: Order, reason: str | None, now: datetime, window: timedelta
) -> None:
    order.order_status = OrderStatus.PAYMENT_FAILED
    order.payment_failed_at = now
    order.payment_failure_reason = reason or DEFAULT_FAILURE_REASON
    order.cancellation_scheduled_for = now + window
    order.auto_cancel = True


# ---------------------------------------------------------------------------
# Reaper
# ---------------------------------------------------------------------------


def _reapable(cutoff: datetime):
    return (
        Order.payment_status == PaymentStatus.FAILED,
        Order.auto_cancel.is_(True),
        Order.created_at <= cutoff,
        Order.order_status.notin_([OrderStatus.CANCELLED, OrderStatus.DELIVERED]),
    )


async def find_reapable(db: AsyncSession, cutoff: datetime) -> list[str]:
    result = await db.execute(
        select(Order.id).where(*_reapable(cutoff)).order_by(Order.created_at)
    )
    return list(result.scalars().all())


async def cancel_if_reapable(db: AsyncSession, order_id: str, cutoff: datetime, now: datetime) -> bool:
    """Cancel one order if it still matches the reaper predicate. Commits."""
    result = await db.execute(
        update(Order)
        .where(Order.id == order_id, *_reapable(cutoff))
        .values(
            order_status=OrderStatus.CANCELLED,
            cancelled_at=now,
            cancel_reason=AUTO_CANCEL_REASON,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1
