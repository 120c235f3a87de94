"""
Prometheus metrics: lifecycle transitions (API), notification hand-off, worker outcomes, queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

# Lifecycle: accepted / rejected transitions
transitions_applied_total = Counter(
    "order_transitions_applied_total",
    "Total accepted order status transitions",
    ["status"],
)
transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total status transitions rejected by the transition table",
    ["current_status", "attempted_status"],
)
version_conflicts_total = Counter(
    "order_version_conflicts_total",
    "Total compare-and-write conflicts (each one triggers a re-read)",
)

# Notification hand-off to the sink
notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Total notification intents handed to the sink",
    ["type"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notification intents the sink could not accept",
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "notification_messages_processed_total",
    "Total notification messages successfully persisted",
)
messages_failed_total = Counter(
    "notification_messages_failed_total",
    "Total notification messages that failed processing (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "notification_messages_dlq_total",
    "Total notification messages moved to DLQ after max retries",
)

# SQS queue depth (when using SQS)
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (notification queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
