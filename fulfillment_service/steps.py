import logging
from contextlib import contextmanager
from dataclasses import dataclass

from fulfillment_service.metrics import PIPELINE_STEPS
from shared.events import PipelineStepEvent

logger = logging.getLogger(__name__)


@dataclass
class StepScope:
    detail: str | None = None


class StepRecorder:
    """Collects the structured step events emitted during one dispatch.

    Every event is logged and counted as it is recorded; the consumer
    publishes ``events`` to the step topic once the dispatch returns.
    """

    def __init__(self, trigger: str, correlation_id: str, order_id: str | None = None) -> None:
        self.trigger = trigger
        self.correlation_id = correlation_id
        self.order_id = order_id
        self.events: list[PipelineStepEvent] = []

    def record(
        self,
        step: str,
        outcome: str,
        *,
        detail: str | None = None,
        error: str | None = None,
        order_id: str | None = None,
    ) -> PipelineStepEvent:
        event = PipelineStepEvent(
            correlation_id=self.correlation_id,
            order_id=order_id or self.order_id,
            trigger=self.trigger,
            step=step,
            outcome=outcome,
            detail=detail,
            error=error,
        )
        self.events.append(event)
        PIPELINE_STEPS.labels(self.trigger, step, outcome).inc()

        level = logging.WARNING if outcome == "failed" else logging.INFO
        logger.log(
            level,
            "Step %s %s",
            step,
            outcome,
            extra={
                "order_id": event.order_id,
                "correlation_id": self.correlation_id,
                "trigger": self.trigger,
                "step": step,
                "outcome": outcome,
                "detail": detail,
                "error": error,
            },
        )
        return event

    def started(self, step: str, **kwargs) -> PipelineStepEvent:
        return self.record(step, "started", **kwargs)

    def succeeded(self, step: str, **kwargs) -> PipelineStepEvent:
        return self.record(step, "succeeded", **kwargs)

    def failed(self, step: str, **kwargs) -> PipelineStepEvent:
        return self.record(step, "failed", **kwargs)

    def skipped(self, step: str, **kwargs) -> PipelineStepEvent:
        return self.record(step, "skipped", **kwargs)

    def outcomes(self, step: str) -> list[str]:
        return [e.outcome for e in self.events if e.step == step]

    @contextmanager
    def step(self, step: str, *, order_id: str | None = None):
        """Record ``started``, then ``succeeded`` or ``failed`` depending on how the block exits."""
        scope = StepScope()
        self.started(step, order_id=order_id)
        try:
            yield scope
        except Exception as exc:
            self.failed(step, error=f"{type(exc).__name__}: {exc}", order_id=order_id)
            raise
        self.succeeded(step, detail=scope.detail, order_id=order_id)
