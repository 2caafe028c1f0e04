"""Prometheus metrics for scheduling, delivery and status polling"""

from prometheus_client import Counter, Histogram

# Lifecycle metrics
notifications_scheduled_counter = Counter(
    "dunning_notifications_scheduled_total",
    "Notification records created by the planner",
    ["stage", "channel"],
)

notifications_sent_counter = Counter(
    "dunning_notifications_sent_total",
    "Notifications delivered",
    ["channel"],
)

notifications_failed_counter = Counter(
    "dunning_notifications_failed_total",
    "Failed delivery attempts",
    ["channel", "terminal"],  # terminal: "true" once the retry budget is spent
)

notifications_deferred_counter = Counter(
    "dunning_notifications_deferred_total",
    "Notifications pushed back by policy",
    ["reason"],  # window | daily_cap
)

notifications_cancelled_counter = Counter(
    "dunning_notifications_cancelled_total",
    "Notifications cancelled",
)

# Delivery metrics
delivery_latency_histogram = Histogram(
    "dunning_delivery_latency_seconds",
    "Channel sender response time",
    ["channel"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Queue metrics
queue_task_failures_counter = Counter(
    "dunning_queue_task_failures_total",
    "Task handler exceptions",
    ["queue", "final"],
)

# Credit service metrics
credit_lookup_failures_counter = Counter(
    "dunning_credit_lookup_failures_total",
    "Failed credit service calls",
)

status_checks_counter = Counter(
    "dunning_status_checks_total",
    "Credit status checks",
    ["outcome"],  # unchanged | cancelled | missing_plan | error
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_failure(channel: str, terminal: bool) -> None:
    """Record a failed delivery attempt"""
    notifications_failed_counter.labels(channel=channel, terminal="true" if terminal else "false").inc()
