"""Pricebook provider abstract base class -- the capability-bearing interface
every pricebook backend implements.

Variants:
- ExternalPricebookProvider: talks to the external pricing system over HTTP.
- NativeProvider: tenants that keep the pricebook locally only.

A provider that cannot perform an operation returns a NotSupported value
instead of raising, so callers branch on capability rather than catching
exceptions for control flow.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from src.app.pricebook.schemas import EntityType


class Capability(str, Enum):
    LIST = "list"
    GET = "get"
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True)
class NotSupported:
    """Typed result for a capability the provider does not implement."""

    provider: str
    capability: Capability

    def __str__(self) -> str:
        return f"{self.provider} does not support {self.capability.value}"


class PricebookProvider(ABC):
    """Abstract interface for pricebook backends.

    Methods:
        list_page: One page of a listing, shaped ``{"data": [...], "hasMore": bool}``.
        get: A single entity payload by external id (None when absent).
        create: Create an entity, return its new external id.
        update: Update an entity by external id.
    """

    name: str = "provider"
    capabilities: frozenset[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def not_supported(self, capability: Capability) -> NotSupported:
        return NotSupported(provider=self.name, capability=capability)

    @abstractmethod
    async def list_page(
        self,
        entity_type: EntityType,
        page: int,
        page_size: int,
        *,
        modified_since: datetime | None = None,
    ) -> Mapping[str, Any] | NotSupported:
        """Fetch one page of entities."""
        ...

    @abstractmethod
    async def get(self, entity_type: EntityType, external_id: str) -> dict[str, Any] | None | NotSupported:
        """Fetch a single entity payload by external id."""
        ...

    @abstractmethod
    async def create(self, entity_type: EntityType, payload: dict[str, Any]) -> str | NotSupported:
        """Create an entity, return the external id."""
        ...

    @abstractmethod
    async def update(
        self,
        entity_type: EntityType,
        external_id: str,
        payload: dict[str, Any],
    ) -> None | NotSupported:
        """Update an entity by external id."""
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None
