"""Admin endpoints for the response cache."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from cohost.config import settings
from cohost.dependencies import get_engine
from cohost.schemas.conversation import CacheInvalidateRequest, CacheInvalidateResponse
from cohost.services.orchestrator_service import Engine

router = APIRouter(prefix="/admin")


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    data: CacheInvalidateRequest,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    engine: Engine = Depends(get_engine),
) -> CacheInvalidateResponse:
    """Drop cached replies after a template or property edit."""
    _require_admin_token(x_admin_token)
    if not data.property_id and not data.template_id:
        raise HTTPException(status_code=400, detail="property_id or template_id is required")

    evicted = engine.cache.invalidate(property_id=data.property_id, template_id=data.template_id)
    return CacheInvalidateResponse(success=True, evicted=evicted, message=f"Evicted {evicted} entries")


@router.get("/cache/stats")
async def cache_stats(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    engine: Engine = Depends(get_engine),
):
    _require_admin_token(x_admin_token)
    return {"status": "ok", **engine.cache.stats(), "pending_notifications": engine.notifier.pending}
