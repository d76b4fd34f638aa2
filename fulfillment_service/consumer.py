"""
At-least-once Kafka consumer for the fulfillment service.

Guarantees:
  - Idempotency: left to the handlers (transition ledger, email_sent marks)
  - At-least-once delivery: offset committed only once the dispatch is Ok or dead-lettered
  - Retries: a retryable result is redelivered in-process with exponential backoff
  - DLQ: unparseable events, fatal results and exhausted retries go to orders.dlq
"""

import asyncio
import logging

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from opentelemetry import trace
from opentelemetry.propagate import extract, inject
from pydantic import ValidationError

from fulfillment_service.dispatcher import Dispatch, TriggerDispatcher
from fulfillment_service.metrics import MESSAGES_CONSUMED
from fulfillment_service.results import FatalError, Ok, RetryableError
from shared.events import (
    FULFILLMENT_STEPS_TOPIC,
    ORDERS_CREATED_TOPIC,
    ORDERS_DLQ_TOPIC,
    ORDERS_UPDATED_TOPIC,
    OrderCreatedEvent,
    OrderUpdatedEvent,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_EVENT_TYPES = {
    ORDERS_CREATED_TOPIC: OrderCreatedEvent,
    ORDERS_UPDATED_TOPIC: OrderUpdatedEvent,
}


async def run_consumer(
    consumer: AIOKafkaConsumer,
    producer: AIOKafkaProducer,
    dispatcher: TriggerDispatcher,
    *,
    max_attempts: int = 5,
    backoff_seconds: float = 1.0,
) -> None:
    """Main consumer loop; runs until cancelled."""
    async for msg in consumer:
        await handle_message(
            msg,
            consumer,
            producer,
            dispatcher,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
        )


def _trace_headers() -> list[tuple[str, bytes]]:
    carrier: dict[str, str] = {}
    inject(carrier)
    return [(k, v.encode()) for k, v in carrier.items()]


async def publish_steps(producer: AIOKafkaProducer, dispatch: Dispatch) -> None:
    """Publish a dispatch's step events. Losing them must not block the order stream."""
    for event in dispatch.events:
        try:
            await producer.send_and_wait(
                FULFILLMENT_STEPS_TOPIC,
                key=event.order_id.encode() if event.order_id else None,
                value=event.model_dump_json().encode(),
                headers=_trace_headers(),
            )
        except KafkaError as exc:
            logger.warning(
                "Failed to publish step event",
                extra={"order_id": event.order_id, "step": event.step, "error": str(exc)},
            )
            return


async def _dead_letter(producer: AIOKafkaProducer, msg, reason: str) -> None:
    await producer.send_and_wait(
        ORDERS_DLQ_TOPIC,
        key=msg.key,
        value=msg.value,
        headers=[
            ("x-source-topic", msg.topic.encode()),
            ("x-dlq-reason", reason.encode()),
            *_trace_headers(),
        ],
    )
    MESSAGES_CONSUMED.labels(msg.topic, "dlq").inc()


async def _dispatch(dispatcher: TriggerDispatcher, event) -> Dispatch:
    if isinstance(event, OrderCreatedEvent):
        return await dispatcher.on_order_created(event)
    return await dispatcher.on_order_updated(event)


async def handle_message(
    msg,
    consumer: AIOKafkaConsumer,
    producer: AIOKafkaProducer,
    dispatcher: TriggerDispatcher,
    *,
    max_attempts: int = 5,
    backoff_seconds: float = 1.0,
) -> Dispatch | None:
    # Extract W3C trace context propagated via Kafka headers
    headers = {k: v.decode() for k, v in msg.headers} if msg.headers else {}
    ctx = extract(headers)

    with tracer.start_as_current_span(f"kafka.consume.{msg.topic}", context=ctx):
        event_type = _EVENT_TYPES.get(msg.topic)
        try:
            if event_type is None:
                raise ValueError(f"No event type registered for topic {msg.topic}")
            event = event_type.model_validate_json(msg.value)
        except (ValidationError, ValueError) as exc:
            logger.error(
                "Failed to parse %s message, sending to DLQ",
                msg.topic,
                extra={"error": str(exc), "offset": msg.offset, "partition": msg.partition},
            )
            await _dead_letter(producer, msg, f"unparseable: {exc}")
            await consumer.commit()
            return None

        logger.info(
            "Received %s event",
            msg.topic,
            extra={"correlation_id": event.correlation_id, "offset": msg.offset},
        )

        attempt = 0
        while True:
            attempt += 1
            dispatch = await _dispatch(dispatcher, event)
            await publish_steps(producer, dispatch)

            if not isinstance(dispatch.result, RetryableError) or attempt >= max_attempts:
                break

            backoff = backoff_seconds * 2 ** (attempt - 1)  # 1s, 2s, 4s, ...
            MESSAGES_CONSUMED.labels(msg.topic, "retried").inc()
            logger.warning(
                "Retryable failure on attempt %d/%d, redelivering in %.1fs",
                attempt,
                max_attempts,
                backoff,
                extra={
                    "correlation_id": event.correlation_id,
                    "trigger": dispatch.trigger.value,
                    "error": dispatch.result.error,
                },
            )
            await asyncio.sleep(backoff)

        result = dispatch.result
        if isinstance(result, Ok):
            MESSAGES_CONSUMED.labels(msg.topic, "processed").inc()
        else:
            reason = "fatal" if isinstance(result, FatalError) else "retries exhausted"
            logger.error(
                "Dispatch failed (%s), sending to DLQ",
                reason,
                extra={
                    "correlation_id": event.correlation_id,
                    "trigger": dispatch.trigger.value,
                    "error": result.error,
                    "attempts": attempt,
                },
            )
            await _dead_letter(producer, msg, f"{reason}: {result.error}")

        # Commit offset only after the event is handled or parked in the DLQ
        await consumer.commit()
        return dispatch
