"""Request logging and structlog setup.

Each request gets a request_id (taken from X-Request-ID or generated). It
is bound into structlog's contextvars for the lifetime of the request, so
any pricebook log line emitted while handling the request carries it, and
it is echoed back on the response.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings
from src.app.core.tenant import get_current_tenant

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def configure_structlog() -> None:
    """JSON lines in production, console rendering elsewhere."""
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(message)s")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _tenant_id(request: Request) -> str | None:
    # TenantMiddleware runs inside this one and has already reset its context.
    try:
        return get_current_tenant().tenant_id
    except RuntimeError:
        return request.headers.get("X-Tenant-ID")


class LoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, with timing, status and tenant."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.monotonic()
        fields = {"method": request.method, "path": request.url.path}

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    **fields,
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                    tenant_id=_tenant_id(request),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id
            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http.request_completed",
                **fields,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                tenant_id=_tenant_id(request),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
