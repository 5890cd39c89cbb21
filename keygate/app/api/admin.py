from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from keygate.app.api.dependencies import ActivationServiceDep
from keygate.app.middleware.auth import require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/keys/stats")
async def key_stats(service: ActivationServiceDep) -> dict[str, Any]:
    """Pool size and limiter state."""
    return await service.stats()


@router.post("/keys/replenish")
async def replenish_keys(
    request: Request,
    service: ActivationServiceDep,
    count: int | None = Query(default=None, ge=1, le=1_000_000),
) -> dict[str, Any]:
    """Generate new keys into the pool (POOL_REPLENISH_SIZE by default)."""
    if count is None:
        count = request.app.state.settings.pool_replenish_size
    pool_size = await service.replenish(count)
    return {"generated": count, "pool_size": pool_size}
