"""
Trigger dispatcher.

Routes order lifecycle events and scheduler ticks to their handlers and turns
every outcome into a tagged result. It deduplicates nothing itself; each
handler owns its idempotency.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from opentelemetry import trace

from fulfillment_service.handlers import NewOrderHandler, PaymentFailedHandler
from fulfillment_service.metrics import TRIGGERS_DISPATCHED
from fulfillment_service.pipeline import FulfillmentPipeline
from fulfillment_service.reaper import PaymentFailureReaper
from fulfillment_service.results import HandlerResult, Ok, classify_exception
from fulfillment_service.steps import StepRecorder
from shared.events import OrderCreatedEvent, OrderSnapshot, OrderUpdatedEvent, PipelineStepEvent
from shared.order_state import PaymentStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Trigger(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    ORDER_UPDATED = "order_updated"  # an update that is not a payment transition
    SCHEDULE = "schedule"


class PaymentTransition(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NONE = "none"


def classify_transition(before: OrderSnapshot, after: OrderSnapshot) -> PaymentTransition:
    if after.payment_status == before.payment_status:
        return PaymentTransition.NONE
    if after.payment_status == PaymentStatus.COMPLETED:
        return PaymentTransition.COMPLETED
    if after.payment_status == PaymentStatus.FAILED:
        return PaymentTransition.FAILED
    return PaymentTransition.NONE


@dataclass
class Dispatch:
    trigger: Trigger
    result: HandlerResult
    events: list[PipelineStepEvent] = field(default_factory=list)


class TriggerDispatcher:
    def __init__(
        self,
        new_order: NewOrderHandler,
        pipeline: FulfillmentPipeline,
        payment_failed: PaymentFailedHandler,
        reaper: PaymentFailureReaper,
    ) -> None:
        self._new_order = new_order
        self._pipeline = pipeline
        self._payment_failed = payment_failed
        self._reaper = reaper

    async def on_order_created(self, event: OrderCreatedEvent) -> Dispatch:
        order = event.order
        recorder = StepRecorder(Trigger.ORDER_CREATED.value, event.correlation_id, order.id)
        return await self._run(
            Trigger.ORDER_CREATED, recorder, lambda: self._new_order.handle(order, recorder)
        )

    async def on_order_updated(self, event: OrderUpdatedEvent) -> Dispatch:
        transition = classify_transition(event.before, event.after)
        order_id = event.after.id

        if transition == PaymentTransition.COMPLETED:
            recorder = StepRecorder(Trigger.PAYMENT_COMPLETED.value, event.correlation_id, order_id)
            return await self._run(
                Trigger.PAYMENT_COMPLETED,
                recorder,
                lambda: self._pipeline.run(order_id, recorder),
            )
        if transition == PaymentTransition.FAILED:
            recorder = StepRecorder(Trigger.PAYMENT_FAILED.value, event.correlation_id, order_id)
            return await self._run(
                Trigger.PAYMENT_FAILED,
                recorder,
                lambda: self._payment_failed.handle(event.after, recorder),
            )

        logger.debug(
            "Order update is not a payment transition, ignoring",
            extra={"order_id": order_id, "correlation_id": event.correlation_id},
        )
        TRIGGERS_DISPATCHED.labels(Trigger.ORDER_UPDATED.value, "ok").inc()
        return Dispatch(Trigger.ORDER_UPDATED, Ok("no payment transition"))

    async def on_schedule(self, correlation_id: str | None = None) -> Dispatch:
        recorder = StepRecorder(Trigger.SCHEDULE.value, correlation_id or f"schedule-{uuid.uuid4()}")

        async def reap() -> Ok:
            report = await self._reaper.run(recorder)
            return Ok(f"{report.cancelled} of {report.scanned} cancelled", value=report)

        return await self._run(Trigger.SCHEDULE, recorder, reap)

    async def _run(
        self,
        trigger: Trigger,
        recorder: StepRecorder,
        call: Callable[[], Awaitable[Ok]],
    ) -> Dispatch:
        with tracer.start_as_current_span(f"fulfillment.{trigger.value}") as span:
            span.set_attribute("fulfillment.trigger", trigger.value)
            if recorder.order_id:
                span.set_attribute("order.id", recorder.order_id)
            try:
                result: HandlerResult = await call()
            except Exception as exc:
                result = classify_exception(exc)
                logger.warning(
                    "Trigger handler failed",
                    extra={
                        "trigger": trigger.value,
                        "order_id": recorder.order_id,
                        "correlation_id": recorder.correlation_id,
                        "result": result.label,
                        "error": result.error,
                    },
                )
            span.set_attribute("fulfillment.result", result.label)

        TRIGGERS_DISPATCHED.labels(trigger.value, result.label).inc()
        return Dispatch(trigger, result, recorder.events)
