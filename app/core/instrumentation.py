"""WA Gateway – Instrumentation.

Structlog configuration plus Prometheus metrics for HTTP traffic and the
session lifecycle.
"""

import logging
import re
import time
from typing import Any, Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

REQUEST_COUNT = Counter(
    "wagw_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "wagw_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

SESSIONS = Gauge(
    "wagw_sessions",
    "Registered WhatsApp sessions by connection status",
    ["status"],
)

CONNECT_ATTEMPTS = Counter(
    "wagw_connect_attempts_total",
    "connect() calls by outcome",
    ["outcome"],
)

DISCONNECTS = Counter(
    "wagw_disconnects_total",
    "Transport closes by classification",
    ["kind"],
)

MESSAGES_DISPATCHED = Counter(
    "wagw_messages_dispatched_total",
    "Inbound messages handed to responders",
    ["responder", "status"],
)

SWEEP_FAILURES = Counter(
    "wagw_sweep_failures_total",
    "Per-session failures inside supervisor sweeps",
    ["sweep"],
)

# Phone numbers / JIDs are PII; only the first five digits survive in logs.
_PHONE_PATTERN = re.compile(r"\b(\d{5})\d{5,10}\b")


def _mask_phone(value: Any) -> Any:
    if isinstance(value, str):
        return _PHONE_PATTERN.sub(lambda m: m.group(1) + "****", value)
    return value


def mask_phone_numbers(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking phone numbers in every string field."""
    return {key: _mask_phone(val) for key, val in event_dict.items()}


def refresh_session_gauge(status_counts: dict[str, int]) -> None:
    SESSIONS.clear()
    for status, count in status_counts.items():
        SESSIONS.labels(status=status).set(count)


_session_counts_provider: Callable[[], dict[str, int]] | None = None


def set_session_counts_provider(provider: Callable[[], dict[str, int]]) -> None:
    global _session_counts_provider
    _session_counts_provider = provider


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics, refreshing the session gauge on scrape."""
    if _session_counts_provider is not None:
        refresh_session_gauge(_session_counts_provider())
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info"):
    """Configure structlog with phone-number masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            mask_phone_numbers,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach logging and HTTP metrics middleware."""
    setup_logging(log_level)
    app.include_router(router)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, endpoint=path).observe(time.time() - start_time)
        return response
