"""Structured JSON logging.

Every record carries the service name plus whichever correlation ids are bound
for the current task: trace and event ids of a consumed dealership event, or
the principal behind an HTTP call or realtime session.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from dealerhub.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
principal_id_ctx: ContextVar[str] = ContextVar("principal_id", default="")

CONTEXT_FIELDS = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "principal_id": principal_id_ctx,
}
# Client libraries that log every request/heartbeat at INFO.
QUIET_LOGGERS = ("aiokafka", "urllib3", "google.auth", "httpx")


class ContextFilter(logging.Filter):
    """Copy bound correlation ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


@contextmanager
def bound(**values: str):
    """Bind correlation ids (`trace_id`, `event_id`, `principal_id`) inside the block."""

    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Install the JSON handler on the root logger; safe to call more than once."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s "
            "%(principal_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


logger = logging.getLogger("dealerhub")
