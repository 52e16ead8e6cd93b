"""Observability helpers: logging, metrics, and health checks."""

from .logging_config import configure_logging, ensure_request_id
from .metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    record_event,
    get_counter_value,
    get_gauge_value,
    get_events,
    get_metrics_snapshot,
    reset_metrics,
)

__all__ = [
    "configure_logging",
    "ensure_request_id",
    "increment_counter",
    "set_gauge",
    "observe_latency",
    "record_event",
    "get_counter_value",
    "get_gauge_value",
    "get_events",
    "get_metrics_snapshot",
    "reset_metrics",
]
