"""Prometheus metrics middleware for request and coordination outcomes."""
import re
import time
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


# =============================================================================
# Prometheus Metrics Definitions
# =============================================================================

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_requests_active",
    "Number of active HTTP requests",
)

# Accept race metrics
ACCEPT_COUNTER = Counter(
    "order_accepts_total",
    "Order accept attempts by outcome",
    ["outcome"],  # won, conflict, rejected, error
)

ACCEPT_LATENCY = Histogram(
    "order_accept_latency_seconds",
    "Order accept latency in seconds",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

# Capacity-guarded writes (binds, lottery, signup confirmation)
ADMISSION_COUNTER = Counter(
    "round_admissions_total",
    "Round admission attempts by outcome",
    ["outcome"],  # admitted, full, rejected, error
)


# =============================================================================
# Metrics Middleware
# =============================================================================

class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics for all HTTP requests."""

    # Endpoints to normalize for metrics (reduce cardinality)
    ENDPOINT_PATTERNS = (
        (re.compile(r"^/api/v1/orders/\d+/accept$"), "/api/v1/orders/{id}/accept"),
        (re.compile(r"^/api/v1/orders/\d+/round$"), "/api/v1/orders/{id}/round"),
        (re.compile(r"^/api/v1/rounds/\d+/lottery$"), "/api/v1/rounds/{id}/lottery"),
        (re.compile(r"^/api/v1/rounds/signups/\d+/confirm$"), "/api/v1/rounds/signups/{id}/confirm"),
        (re.compile(r"^/api/v1/orders"), "/api/v1/orders"),
        (re.compile(r"^/api/v1/assignments"), "/api/v1/assignments"),
        (re.compile(r"^/api/v1/rounds"), "/api/v1/rounds"),
    )

    ADMISSION_ENDPOINTS = frozenset({
        "/api/v1/orders/{id}/round",
        "/api/v1/rounds/{id}/lottery",
        "/api/v1/rounds/signups/{id}/confirm",
    })

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint to avoid recursion
        if request.url.path == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.inc()
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            ACTIVE_REQUESTS.dec()
            latency = time.perf_counter() - start_time

            endpoint = self._normalize_endpoint(request.url.path)

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status=status_code,
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint,
            ).observe(latency)

            if endpoint == "/api/v1/orders/{id}/accept" and request.method == "POST":
                ACCEPT_LATENCY.observe(latency)
                ACCEPT_COUNTER.labels(outcome=self._outcome(status_code, "won", "conflict")).inc()
            elif endpoint in self.ADMISSION_ENDPOINTS:
                ADMISSION_COUNTER.labels(
                    outcome=self._outcome(status_code, "admitted", "full")
                ).inc()

        return response

    @staticmethod
    def _outcome(status_code: int, success: str, conflict: str) -> str:
        if status_code in (200, 201):
            return success
        if status_code == 409:
            return conflict
        if status_code >= 500:
            return "error"
        return "rejected"

    def _normalize_endpoint(self, path: str) -> str:
        """Normalize endpoint path to reduce metric cardinality."""
        for pattern, normalized in self.ENDPOINT_PATTERNS:
            if pattern.match(path):
                return normalized

        if path in ("/health", "/metrics"):
            return path

        return "/other"


# =============================================================================
# Metrics Endpoint
# =============================================================================

async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics scrape endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
