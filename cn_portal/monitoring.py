# cn_portal/monitoring.py
"""
Logging, Prometheus metrics and optional Sentry for the portal.

Everything logs through the one `cn-portal` logger; pass structured fields
with `extra=` (never reserved LogRecord names such as filename or module).

Env vars:
- LOG_LEVEL (default: INFO), LOG_AS_JSON (default: true)
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN, ENVIRONMENT (default: development)
"""

import os
import logging
import time
import functools
from typing import Callable, Optional, Tuple

from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)

try:
    from pythonjsonlogger import jsonlogger
except ImportError:
    jsonlogger = None

try:
    import sentry_sdk
except ImportError:
    sentry_sdk = None

def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")

PROMETHEUS_ENABLED = _flag("PROMETHEUS_ENABLED", "true")
LOG_AS_JSON = _flag("LOG_AS_JSON", "true")
SENTRY_DSN = os.getenv("SENTRY_DSN")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

def setup_logger(name: str = "cn-portal", level: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    if log.handlers:
        return log
    handler = logging.StreamHandler()
    if LOG_AS_JSON and jsonlogger is not None:
        handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    log.addHandler(handler)
    return log

logger = setup_logger()

if SENTRY_DSN and sentry_sdk is not None:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized", extra={"environment": ENVIRONMENT})

# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "cn_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "cn_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

INGESTED_ROWS = Counter(
    "cn_ingested_rows_total",
    "Rows processed by the ingestion pipeline",
    ["outcome"],  # added | duplicate | failed
)

UPLOADS_TOTAL = Counter(
    "cn_uploads_total",
    "Ingestion batches processed",
    ["status"],
)

SEARCH_LATENCY = Histogram(
    "cn_search_latency_seconds",
    "Fuzzy search latency",
    ["phase"],  # matching | total
)

SEARCH_CACHE = Counter(
    "cn_search_cache_total",
    "Search cache lookups",
    ["outcome"],  # hit | miss
)

CHAT_REQUESTS = Counter(
    "cn_chat_requests_total",
    "Assistant chat requests",
    ["outcome"],
)

STORE_RECORDS = Gauge(
    "cn_store_records",
    "Records in the store after the last ingestion",
)

# --- Metric helpers: a broken metric must never fail the request that records it
def _quiet(fn: Callable) -> Callable:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.debug("Metric update failed", extra={"metric_helper": fn.__name__, "error": str(e)})
    return wrapper

@_quiet
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
    REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()

@_quiet
def inc_ingested(outcome: str, n: int = 1):
    if n:
        INGESTED_ROWS.labels(outcome=outcome).inc(n)

@_quiet
def inc_upload(status: str):
    UPLOADS_TOTAL.labels(status=status).inc()

@_quiet
def observe_search(matching_ms: float, total_ms: float):
    for phase, ms in (("matching", matching_ms), ("total", total_ms)):
        SEARCH_LATENCY.labels(phase=phase).observe(ms / 1000.0)

@_quiet
def inc_search_cache(outcome: str):
    SEARCH_CACHE.labels(outcome=outcome).inc()

@_quiet
def inc_chat(outcome: str):
    CHAT_REQUESTS.labels(outcome=outcome).inc()

@_quiet
def set_store_records(n: int):
    STORE_RECORDS.set(n)

def prometheus_metrics_response() -> Tuple[bytes, str]:
    """(body, content type) for a Prometheus scrape."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
