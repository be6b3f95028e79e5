"""Prometheus metrics for the paywall gateway.

Metrics goals:
- low-cardinality labels (never token ids, addresses or resource paths)
- internal observability for challenges, access decisions, content fetches
  and best-effort consumption

Set PAYWALL_METRICS_ENABLED=0 to skip the /metrics endpoint and middleware.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
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
    "paywall_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "paywall_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
UPSTREAM_LATENCY_SECONDS = Histogram(
    "paywall_upstream_latency_seconds",
    "Latency of ledger and blob/decryption calls made while serving a request",
    ["upstream"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)
CHALLENGES_TOTAL = Counter(
    "paywall_challenges_total",
    "Total 402 payment challenges issued",
)
ACCESS_DECISIONS_TOTAL = Counter(
    "paywall_access_decisions_total",
    "Total access verifier decisions",
    ["outcome", "reason"],
)
CONTENT_FETCH_TOTAL = Counter(
    "paywall_content_fetch_total",
    "Total content retrievals after a grant",
    ["outcome"],
)
CONSUME_TOTAL = Counter(
    "paywall_consume_total",
    "Total best-effort token consumptions after delivery",
    ["outcome"],
)


def record_challenge() -> None:
    CHALLENGES_TOTAL.inc()


def record_access_decision(outcome: str, reason: str = "") -> None:
    ACCESS_DECISIONS_TOTAL.labels(outcome=str(outcome), reason=str(reason or "none")).inc()


def record_content_fetch(outcome: str) -> None:
    CONTENT_FETCH_TOTAL.labels(outcome=str(outcome)).inc()


def record_consume(outcome: str) -> None:
    CONSUME_TOTAL.labels(outcome=str(outcome)).inc()


def observe_upstream(upstream: str, seconds: float) -> None:
    UPSTREAM_LATENCY_SECONDS.labels(upstream=str(upstream)).observe(max(0.0, float(seconds)))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.

    Must be called before the catch-all content route is registered so that
    /metrics is matched first.
    """
    if not _env_bool("PAYWALL_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            try:
                route = request.scope.get("route")
                # Route templates only; raw paths would explode cardinality.
                route_path = getattr(route, "path", None) or "unmatched"
                method = request.method
                status = getattr(response, "status_code", 500)
                HTTP_REQUESTS_TOTAL.labels(method=method, route=route_path, status=str(status)).inc()
                HTTP_REQUEST_LATENCY_SECONDS.labels(method=method, route=route_path).observe(time.time() - start)
            except Exception:
                # metrics must never break the app
                pass

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None:
            try:
                ok = authorize(request)
            except Exception:
                ok = False
            if not ok:
                # avoid leaking existence details
                return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
