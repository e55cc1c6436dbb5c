"""Logging configuration and Prometheus metrics for the queue service."""

from __future__ import annotations

import logging

import structlog
from prometheus_client import REGISTRY, Counter, Histogram


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging and render JSON lines."""

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames=()):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "clinic_queue_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "clinic_queue_request_latency_seconds",
    "Latency of HTTP requests in seconds",
    ["method", "path"],
)
CACHE_LOOKUPS = _get_or_create_metric(
    Counter,
    "clinic_queue_cache_lookups_total",
    "Tenant cache lookups by outcome",
    ["outcome"],
)
CACHE_CLEARS = _get_or_create_metric(
    Counter,
    "clinic_queue_cache_clears_total",
    "Tenant cache invalidations by mode",
    ["mode"],
)
NOTIFICATIONS_EMITTED = _get_or_create_metric(
    Counter,
    "clinic_queue_notifications_total",
    "Events emitted to tenant channels",
    ["event"],
)
AUTO_COMPLETED = _get_or_create_metric(
    Counter,
    "clinic_queue_auto_completed_total",
    "Patients force-completed after lingering in the dispensary",
)
SWEEPS_SKIPPED = _get_or_create_metric(
    Counter,
    "clinic_queue_sweeps_skipped_total",
    "Background sweeps skipped because a previous run was still active",
    ["job"],
)


__all__ = [
    "configure_logging",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "CACHE_LOOKUPS",
    "CACHE_CLEARS",
    "NOTIFICATIONS_EMITTED",
    "AUTO_COMPLETED",
    "SWEEPS_SKIPPED",
]
