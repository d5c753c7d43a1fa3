"""FastAPI dependency injection for tenant-scoped resources.

These dependencies are used in endpoint function signatures to inject the
tenant context and the tenant's pricebook sync service.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from src.app.core.tenant import TenantContext, get_current_tenant
from src.app.pricebook.service import PricebookServiceRegistry, PricebookSyncService


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantMiddleware)."""
    return get_current_tenant()


def get_pricebook_registry(request: Request) -> PricebookServiceRegistry:
    """Retrieve the PricebookServiceRegistry from app.state, 503 if not available."""
    registry = getattr(request.app.state, "pricebook_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pricebook sync not initialized",
        )
    return registry


async def get_pricebook_service(
    tenant: TenantContext = Depends(get_tenant),
    registry: PricebookServiceRegistry = Depends(get_pricebook_registry),
) -> PricebookSyncService:
    """The current tenant's pricebook sync service."""
    return registry.get(tenant)
