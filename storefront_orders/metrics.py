"""
Prometheus metrics: transitions applied/denied (API + sweeper), sweeper outcomes,
notifications published (API) and sent/failed (worker).
"""
from prometheus_client import Counter, Gauge, generate_latest

# Lifecycle engine
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order lifecycle transitions applied and persisted",
    ["kind"],
)
order_transitions_denied_total = Counter(
    "order_transitions_denied_total",
    "Total transitions rejected by a guard",
    ["kind", "reason"],
)
order_transition_conflicts_total = Counter(
    "order_transition_conflicts_total",
    "Total concurrent-write conflicts hit while persisting a transition (each retry counts)",
)

# Sweeper
orders_auto_cancelled_total = Counter(
    "orders_auto_cancelled_total",
    "Total unpaid orders cancelled by the sweeper or the lazy fetch check",
)
refunds_auto_credited_total = Counter(
    "refunds_auto_credited_total",
    "Total refunds credited automatically after the grace period",
)
sweep_failures_total = Counter(
    "sweep_failures_total",
    "Total per-order failures during a sweep (sweep continues)",
    ["sweep"],
)

# Notifications
notifications_published_total = Counter(
    "notifications_published_total",
    "Total notification intents pushed to the queue",
    ["template"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Total notification failures (publish from API, or send from worker)",
    ["stage"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Total notification emails sent by the worker",
)
notifications_dlq_total = Counter(
    "notifications_dlq_total",
    "Total notifications moved to DLQ after max retries",
)
notification_queue_depth = Gauge(
    "notification_queue_depth",
    "Number of notifications waiting in the Redis queue",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
