"""Prometheus metrics for the justification verification service.

Metrics goals:
- low-cardinality labels (no key names, subjects or token ids)
- visibility into issuance, verification, rotation and manual key actions
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "jvs_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "jvs_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
TOKENS_ISSUED_TOTAL = Counter(
    "jvs_tokens_issued_total",
    "Justification token issuance attempts",
    ["outcome"],
)
VERIFICATIONS_TOTAL = Counter(
    "jvs_token_verifications_total",
    "Token verification attempts",
    ["outcome"],
)
ROTATION_ACTIONS_TOTAL = Counter(
    "jvs_rotation_actions_total",
    "Key version actions taken by the rotation engine",
    ["action"],
)
ROTATION_FAILURES_TOTAL = Counter(
    "jvs_rotation_failures_total",
    "Keys whose rotation finished with at least one failed step",
)
CERT_ACTIONS_TOTAL = Counter(
    "jvs_certificate_actions_total",
    "Manual certificate actions",
    ["action", "outcome"],
)


def record_token_issued(outcome: str) -> None:
    TOKENS_ISSUED_TOTAL.labels(outcome=str(outcome)).inc()


def record_verification(outcome: str) -> None:
    VERIFICATIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_rotation_action(action: str) -> None:
    ROTATION_ACTIONS_TOTAL.labels(action=str(action)).inc()


def record_rotation_failure() -> None:
    ROTATION_FAILURES_TOTAL.inc()


def record_cert_action(action: str, outcome: str) -> None:
    CERT_ACTIONS_TOTAL.labels(action=str(action), outcome=str(outcome)).inc()


def instrument_fastapi(app, authorize: Optional[Callable[[Request], bool]] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    Set JVS_METRICS_ENABLED=0 to skip instrumentation entirely.
    """
    if not _env_bool("JVS_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
