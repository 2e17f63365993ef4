"""Prometheus metric definitions for the notification service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
notifications_dispatched_total = Counter(
    "notifications_dispatched_total",
    "Dispatch calls by category and recipient set",
    ["category", "audience"],
)
inbox_records_written_total = Counter(
    "inbox_records_written_total",
    "Inbox records persisted",
    ["flavor"],
)
dispatch_latency_seconds = Histogram(
    "dispatch_latency_seconds",
    "Time spent in the synchronous part of a dispatch",
    ["audience"],
)
push_delivery_total = Counter(
    "push_delivery_total",
    "Per-target push outcomes reported by the provider",
    ["outcome"],
)
push_batches_total = Counter("push_batches_total", "Provider calls issued", ["result"])
invalid_targets_removed_total = Counter(
    "invalid_targets_removed_total",
    "Device targets purged after a permanent provider failure",
)
realtime_sessions = Gauge("realtime_sessions", "Operator sessions currently registered")
realtime_handshakes_total = Counter("realtime_handshakes_total", "Realtime handshake results", ["result"])
realtime_send_failures_total = Counter("realtime_send_failures_total", "Failed realtime sends")
reminders_scheduled_total = Counter("reminders_scheduled_total", "Reminder entries created", ["kind"])
reminders_fired_total = Counter("reminders_fired_total", "Reminders delivered by the sweep", ["kind"])
reminders_skipped_total = Counter(
    "reminders_skipped_total",
    "Reminders marked sent without notifying",
    ["reason"],
)
reminders_cleaned_total = Counter("reminders_cleaned_total", "Sent reminders garbage-collected")
scheduler_tick_errors_total = Counter("scheduler_tick_errors_total", "Failed scheduler ticks", ["job"])
background_tasks_dropped_total = Counter(
    "background_tasks_dropped_total",
    "Delivery tasks dropped because the queue was full",
)
background_task_failures_total = Counter(
    "background_task_failures_total",
    "Delivery tasks that raised",
    ["task"],
)
background_queue_depth = Gauge("background_queue_depth", "Delivery tasks waiting for a worker")
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
)
events_consumed_total = Counter(
    "events_consumed_total",
    "Consumed dealership events by outcome",
    ["topic", "outcome"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
