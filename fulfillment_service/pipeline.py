"""
Payment-completed fulfillment pipeline.

Steps run in a fixed order, each one emitting structured step events:

  claim      claim the (order, "completed") transition; duplicates stop here
  invoice    generate the invoice, checkpointed on the transition row
  inventory  atomically decrement stock, checkpointed in the same transaction
  shipment   create the carrier shipment unless a shipment row already exists
  finalize   write invoice fields and advance the order to processing
  notify     payment-success message, best-effort

A failure in invoice..finalize propagates, leaving the order un-advanced. The
redelivered event resumes from the checkpoints, so the invoice is generated
once and stock is decremented once however often the event arrives.
"""

import logging
import time
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_service import inventory, notify, store, transitions
from fulfillment_service.metrics import PIPELINE_DURATION
from fulfillment_service.models import TransitionStatus
from fulfillment_service.results import Ok, PermanentError, TransientError
from fulfillment_service.steps import StepRecorder
from fulfillment_service.transitions import COMPLETED, Claim, ClaimState, TransitionGuard
from shared.clock import utcnow
from shared.collaborators.invoice import InvoiceGenerator
from shared.collaborators.notification import NotificationSender, TemplateKind
from shared.collaborators.shipment import ShipmentGateway
from shared.events import OrderSnapshot
from shared.order_state import OrderStatus

logger = logging.getLogger(__name__)


class FulfillmentPipeline:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        invoices: InvoiceGenerator,
        shipments: ShipmentGateway,
        notifications: NotificationSender,
        *,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: float = 600.0,
    ) -> None:
        self._sessions = sessions
        self._invoices = invoices
        self._shipments = shipments
        self._notifications = notifications
        self._clock = clock
        self._guard = TransitionGuard(sessions, clock, lease_seconds)

    async def run(self, order_id: str, recorder: StepRecorder) -> Ok:
        recorder.started("claim")
        claim = await self._guard.claim(order_id, COMPLETED)
        if claim.state == ClaimState.DUPLICATE:
            recorder.skipped("claim", detail="transition already handled")
            return Ok("duplicate")
        if claim.state == ClaimState.IN_FLIGHT:
            recorder.skipped("claim", detail="transition held by a concurrent run")
            raise TransientError(f"Payment completion for order {order_id} is already in progress")

        start = time.perf_counter()
        try:
            return await self._run_claimed(order_id, claim, recorder)
        except Exception:
            await self._guard.release(order_id, COMPLETED)
            raise
        finally:
            PIPELINE_DURATION.observe(time.perf_counter() - start)

    async def _run_claimed(self, order_id: str, claim: Claim, recorder: StepRecorder) -> Ok:
        async with self._sessions() as db:
            order = await store.load_snapshot(db, order_id)
        if order is None:
            recorder.failed("claim", error="order not found")
            raise PermanentError(f"Order {order_id} not found")

        if order.order_status == OrderStatus.CANCELLED:
            logger.warning(
                "Payment completed for an order that is already cancelled, not fulfilling",
                extra={"order_id": order_id, "correlation_id": recorder.correlation_id},
            )
            await self._guard.skip(order_id, COMPLETED)
            recorder.skipped("claim", detail="order already cancelled")
            return Ok("order cancelled")
        recorder.succeeded("claim", detail=f"attempt {claim.attempts}")

        invoice_url, invoice_generated_at = await self._invoice(order, claim, recorder)
        await self._inventory(order, claim, recorder)
        tracking_number = await self._shipment(order, recorder)

        with recorder.step("finalize"):
            async with self._sessions() as db:
                row = await store.load_order(db, order_id, for_update=True)
                if row is None:
                    raise PermanentError(f"Order {order_id} disappeared during fulfillment")
                now = self._clock()
                store.apply_fulfillment(row, invoice_url, invoice_generated_at, now)
                await transitions.finish(db, order_id, COMPLETED, TransitionStatus.DONE, now)
                await db.commit()

        logger.info(
            "Order fulfilled",
            extra={
                "order_id": order_id,
                "correlation_id": recorder.correlation_id,
                "invoice_url": invoice_url,
                "tracking_number": tracking_number,
            },
        )

        await notify.send_best_effort(
            self._sessions,
            self._notifications,
            recorder,
            order,
            TemplateKind.PAYMENT_SUCCESS,
            notify.template_data(order, invoice_url=invoice_url, tracking_number=tracking_number),
            self._clock,
        )
        return Ok("fulfilled")

    async def _invoice(
        self, order: OrderSnapshot, claim: Claim, recorder: StepRecorder
    ) -> tuple[str, datetime]:
        if claim.invoice_url:
            recorder.skipped("invoice", detail="reusing checkpointed invoice")
            return claim.invoice_url, claim.invoice_generated_at or self._clock()

        with recorder.step("invoice") as scope:
            url = await self._invoices.generate(order.id, order)
            generated_at = self._clock()
            async with self._sessions() as db:
                await transitions.save_invoice(db, order.id, COMPLETED, url, generated_at)
                await db.commit()
            scope.detail = url
        return url, generated_at

    async def _inventory(self, order: OrderSnapshot, claim: Claim, recorder: StepRecorder) -> None:
        if claim.inventory_adjusted_at is not None:
            recorder.skipped("inventory", detail="stock already adjusted")
            return

        with recorder.step("inventory") as scope:
            async with self._sessions() as db:
                now = self._clock()
                adjustment = await inventory.decrement_stock(
                    db, order.items, now=now, order_id=order.id
                )
                await transitions.mark_inventory_adjusted(db, order.id, COMPLETED, now)
                await db.commit()
            scope.detail = f"{len(adjustment.adjusted)} adjusted, {len(adjustment.missing)} missing"

    async def _shipment(self, order: OrderSnapshot, recorder: StepRecorder) -> str:
        async with self._sessions() as db:
            existing = await store.load_shipment(db, order.id)
        if existing is not None:
            recorder.skipped("shipment", detail="shipment already exists")
            return existing.tracking_number

        with recorder.step("shipment") as scope:
            handle = await self._shipments.create_shipment(order.id, order)
            async with self._sessions() as db:
                store.add_shipment(db, order.id, handle, self._clock())
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.warning(
                        "Shipment row written by a concurrent run, carrier shipment left unused",
                        extra={"order_id": order.id, "shipment_id": handle.shipment_id},
                    )
                    existing = await store.load_shipment(db, order.id)
            scope.detail = handle.tracking_number
        return existing.tracking_number if existing is not None else handle.tracking_number
