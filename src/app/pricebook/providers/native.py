"""Native provider -- for tenants whose pricebook lives only in MASTER.

There is no remote system to list, fetch or write, so every capability
answers NotSupported. The sync engine treats that as "nothing to do" rather
than as an error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from src.app.pricebook.providers.base import Capability, NotSupported, PricebookProvider
from src.app.pricebook.schemas import EntityType


class NativeProvider(PricebookProvider):
    name = "native"
    capabilities = frozenset()

    async def list_page(
        self,
        entity_type: EntityType,
        page: int,
        page_size: int,
        *,
        modified_since: datetime | None = None,
    ) -> NotSupported:
        return self.not_supported(Capability.LIST)

    async def get(self, entity_type: EntityType, external_id: str) -> NotSupported:
        return self.not_supported(Capability.GET)

    async def create(self, entity_type: EntityType, payload: dict[str, Any]) -> NotSupported:
        return self.not_supported(Capability.CREATE)

    async def update(self, entity_type: EntityType, external_id: str, payload: dict[str, Any]) -> NotSupported:
        return self.not_supported(Capability.UPDATE)
