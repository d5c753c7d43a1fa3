"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Pricebook sync counters (runs, per-entity outcomes, rate-limit hits,
  pending queue gauge)
- track_sync_run(): Context manager that times a sync run and counts its status
- init_sentry(): Initialize Sentry with tenant-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.app.core.tenant import get_current_tenant

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "tenant_id"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "tenant_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

pricebook_sync_runs_total = Counter(
    "pricebook_sync_runs_total",
    "Pricebook sync runs by outcome",
    ["entity_type", "scope", "status"],
)

pricebook_sync_run_duration_seconds = Histogram(
    "pricebook_sync_run_duration_seconds",
    "Pricebook sync run duration in seconds",
    ["entity_type", "scope"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0, 1800.0),
)

pricebook_sync_entities_total = Counter(
    "pricebook_sync_entities_total",
    "Per-entity merge and push outcomes",
    ["entity_type", "outcome"],
)

pricebook_rate_limit_hits_total = Counter(
    "pricebook_rate_limit_hits_total",
    "429 responses received from the external pricing system",
)

pricebook_pending_entries = Gauge(
    "pricebook_pending_entries",
    "Pending-sync queue size by tenant and status (last observed)",
    ["tenant_id", "status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


def _tenant_label(request: Request) -> str:
    # TenantMiddleware resets its contextvar on the way out; the header is
    # what identified the tenant in the first place.
    return request.headers.get("X-Tenant-ID") or "none"


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    # Route templates keep record ids out of the label set.
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count and time HTTP requests per route template and tenant."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        endpoint = _route_label(request)
        tenant_id = _tenant_label(request)
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            tenant_id=tenant_id,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method, endpoint=endpoint, tenant_id=tenant_id
        ).observe(elapsed)
        return response


# ── Sync Run Helper ──────────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(
    entity_type: str,
    scope: str,
) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks sync run metrics.

    Usage:
        async with track_sync_run("service", "full") as tracker:
            result = await engine.pull(...)
            tracker["status"] = "succeeded"

    Records the run duration and a run counter labelled with the final
    status ("failed" when the body raises, otherwise tracker["status"]).
    """
    tracker: dict[str, Any] = {"status": "succeeded"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except BaseException:
        tracker["status"] = "failed"
        raise
    finally:
        duration = time.perf_counter() - start_time
        pricebook_sync_run_duration_seconds.labels(
            entity_type=entity_type,
            scope=scope,
        ).observe(duration)
        pricebook_sync_runs_total.labels(
            entity_type=entity_type,
            scope=scope,
            status=tracker["status"],
        ).inc()


def record_entity_outcome(entity_type: str, outcome: str, count: int = 1) -> None:
    """Increment the per-entity outcome counter (created/updated/failed/...)."""
    if count:
        pricebook_sync_entities_total.labels(entity_type=entity_type, outcome=outcome).inc(count)


# ── Sentry Integration ───────────────────────────────────────────────────────


def _tag_tenant(event: dict, hint: dict) -> dict:
    """before_send hook: tag events with the active tenant, if any."""
    try:
        ctx = get_current_tenant()
    except RuntimeError:
        return event
    tags = event.setdefault("tags", {})
    tags["tenant_id"] = ctx.tenant_id
    tags["tenant_slug"] = ctx.tenant_slug
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry. Trace sampling is reduced in production."""
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=_tag_tenant,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
