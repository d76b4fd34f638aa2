from prometheus_client import Counter, Histogram

MESSAGES_CONSUMED = Counter(
    "fulfillment_messages_consumed_total",
    "Order lifecycle messages consumed by the fulfillment service",
    ["topic", "status"],  # processed | retried | dlq
)

TRIGGERS_DISPATCHED = Counter(
    "fulfillment_triggers_dispatched_total",
    "Trigger dispatches by handler and result",
    ["trigger", "result"],  # ok | retryable | fatal
)

PIPELINE_STEPS = Counter(
    "fulfillment_pipeline_steps_total",
    "Pipeline step events by step and outcome",
    ["trigger", "step", "outcome"],  # started | succeeded | failed | skipped
)

PIPELINE_DURATION = Histogram(
    "fulfillment_pipeline_duration_seconds",
    "Wall time of one payment-completed pipeline run",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

ORDERS_REAPED = Counter(
    "fulfillment_orders_reaped_total",
    "Reaper per-order outcomes",
    ["outcome"],  # cancelled | failed
)
