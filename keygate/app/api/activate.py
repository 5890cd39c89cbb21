from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from keygate.app.api.dependencies import ActivationServiceDep
from keygate.app.core.config import Settings
from keygate.app.middleware.client_identity import get_client_identity
from keygate.app.services.activation import DenialReason, Granted

router = APIRouter(tags=["activation"])


def _denial_status(reason: DenialReason, settings: Settings) -> int:
    if reason is DenialReason.RATE_LIMITED:
        return 429
    if reason is DenialReason.NO_TOKENS:
        return settings.pool_empty_status_code
    return 503


@router.get("/activate-key")
async def activate_key(request: Request, service: ActivationServiceDep) -> JSONResponse:
    """Claim one activation key for the calling client."""
    result = await service.claim(get_client_identity(request))

    if isinstance(result, Granted):
        return JSONResponse(
            content={"success": True, "key": result.token},
            headers={
                "Cache-Control": "no-store",
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": str(result.remaining),
                "X-RateLimit-Reset": str(result.reset_time),
            },
        )

    headers = {"Cache-Control": "no-store"}
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return JSONResponse(
        status_code=_denial_status(result.reason, request.app.state.settings),
        content={"success": False, "message": result.message},
        headers=headers,
    )
