"""External pricing system provider -- pricebook REST API over httpx.

Implements PricebookProvider against the external system's pricebook v2
endpoints (``/pricebook/v2/tenant/{tenant}/{resource}``).

Key implementation details:
- OAuth2 client-credentials token, cached until shortly before expiry
- Every outbound call passes through the shared RateLimitGuard first
- 429 responses feed the guard (Retry-After hint) and raise RateLimited
- 5xx and transport failures raise TransientNetworkError and are retried
  with tenacity exponential backoff; nothing else is retried
- 401/403 raise ConfigurationError (credentials rejected -- fatal for a job)
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.config import Settings
from src.app.pricebook.errors import (
    ConfigurationError,
    EntityNotFound,
    RateLimited,
    TransientNetworkError,
    ValidationError,
)
from src.app.pricebook.providers.base import Capability, PricebookProvider
from src.app.pricebook.rate_limit import RateLimitGuard, parse_retry_after
from src.app.pricebook.schemas import EntityType

logger = structlog.get_logger(__name__)

RESOURCE_PATHS: dict[EntityType, str] = {
    EntityType.CATEGORY: "categories",
    EntityType.SERVICE: "services",
    EntityType.MATERIAL: "materials",
    EntityType.EQUIPMENT: "equipment",
}

# Refresh the token this many seconds before it actually expires.
TOKEN_EXPIRY_MARGIN = 60


class ExternalPricebookProvider(PricebookProvider):
    """Pricebook provider backed by the external pricing system's REST API.

    Args:
        base_url: API root, e.g. ``https://api.servicetitan.io``.
        auth_url: OAuth root serving ``/connect/token``.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        app_key: Application key sent as ``ST-App-Key``.
        tenant_id: External tenant identifier embedded in every path.
        guard: Shared rate-limit guard.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport-backed client here).
    """

    name = "external"
    capabilities = frozenset({Capability.LIST, Capability.GET, Capability.CREATE, Capability.UPDATE})

    def __init__(
        self,
        *,
        base_url: str,
        auth_url: str,
        client_id: str,
        client_secret: str,
        app_key: str,
        tenant_id: str,
        guard: RateLimitGuard,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth_url = auth_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._app_key = app_key
        self._tenant_id = tenant_id
        self._guard = guard
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings, guard: RateLimitGuard) -> ExternalPricebookProvider:
        return cls(
            base_url=settings.PRICING_API_BASE_URL,
            auth_url=settings.PRICING_AUTH_URL,
            client_id=settings.PRICING_CLIENT_ID,
            client_secret=settings.PRICING_CLIENT_SECRET,
            app_key=settings.PRICING_APP_KEY,
            tenant_id=settings.PRICING_TENANT_ID,
            guard=guard,
            timeout=settings.PRICING_REQUEST_TIMEOUT,
        )

    # ── PricebookProvider ───────────────────────────────────────────────

    async def list_page(
        self,
        entity_type: EntityType,
        page: int,
        page_size: int,
        *,
        modified_since: datetime | None = None,
    ) -> Mapping[str, Any]:
        params: dict[str, Any] = {"page": page, "pageSize": page_size}
        if modified_since is not None:
            params["modifiedOnOrAfter"] = modified_since.astimezone(timezone.utc).isoformat()
        response = await self._send("GET", self._resource_url(entity_type), params=params)
        return self._json(response)

    async def get(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None:
        try:
            response = await self._send("GET", f"{self._resource_url(entity_type)}/{external_id}")
        except EntityNotFound:
            return None
        body = self._json(response)
        if not isinstance(body, dict):
            raise ValidationError(f"{entity_type.value} {external_id}: response is not an object")
        return body

    async def create(self, entity_type: EntityType, payload: dict[str, Any]) -> str:
        response = await self._send("POST", self._resource_url(entity_type), json=payload)
        body = self._json(response)
        new_id = body.get("id") if isinstance(body, dict) else None
        if new_id in (None, ""):
            raise ValidationError(f"create {entity_type.value}: response carried no id")
        logger.info("pricing_api.entity_created", entity_type=entity_type.value, external_id=str(new_id))
        return str(new_id)

    async def update(self, entity_type: EntityType, external_id: str, payload: dict[str, Any]) -> None:
        await self._send("PATCH", f"{self._resource_url(entity_type)}/{external_id}", json=payload)
        logger.info("pricing_api.entity_updated", entity_type=entity_type.value, external_id=external_id)

    async def close(self) -> None:
        await self._client.aclose()

    # ── HTTP plumbing ────────────────────────────────────────────────────

    def _resource_url(self, entity_type: EntityType) -> str:
        if not self._tenant_id:
            raise ConfigurationError("PRICING_TENANT_ID is not configured")
        return f"{self._base_url}/pricebook/v2/tenant/{self._tenant_id}/{RESOURCE_PATHS[entity_type]}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(TransientNetworkError),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request through the guard and normalize failures."""
        self._guard.check()
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "ST-App-Key": self._app_key,
        }

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("pricing_api.transport_error", method=method, url=url, error=str(exc))
            raise TransientNetworkError(f"{method} {url} failed: {exc}") from exc

        return self._raise_for_status(response)

    def _raise_for_status(self, response: httpx.Response) -> httpx.Response:
        status = response.status_code
        if status < 400:
            return response

        if status == 429:
            self._guard.record_rate_limit(parse_retry_after(response.headers.get("Retry-After")))
            raise RateLimited(self._guard.remaining_seconds())
        if status >= 500:
            logger.warning("pricing_api.server_error", status_code=status, url=str(response.request.url))
            raise TransientNetworkError(f"external system returned {status}", status_code=status)
        if status in (401, 403):
            self._token = None
            raise ConfigurationError(f"external system rejected credentials ({status})")
        if status == 404:
            raise EntityNotFound(str(response.request.url))
        raise ValidationError(f"external system rejected request ({status}): {response.text[:500]}")

    async def _access_token(self) -> str:
        """Return a cached OAuth token, fetching a new one when expired."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not (self._client_id and self._client_secret and self._app_key):
            raise ConfigurationError("external pricing credentials are not configured")

        try:
            response = await self._client.post(
                f"{self._auth_url}/connect/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"token request failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransientNetworkError(f"token endpoint returned {response.status_code}", response.status_code)
        if response.status_code >= 400:
            raise ConfigurationError(f"token request rejected ({response.status_code})")

        body = response.json()
        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 900)) - TOKEN_EXPIRY_MARGIN)
        logger.debug("pricing_api.token_refreshed")
        return self._token

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ValidationError("external system returned a non-JSON body") from exc
