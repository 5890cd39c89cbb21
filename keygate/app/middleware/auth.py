from fastapi import HTTPException, Request

from keygate.app.core.config import Settings
from keygate.app.core.security import verify_admin_token


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Admin endpoints do not exist while ADMIN_TOKEN is unset.

    Raises:
        HTTPException: 404 if admin endpoints are disabled
        HTTPException: 401 if admin token is missing or invalid
    """
    settings: Settings = request.app.state.settings
    if not settings.admin_token:
        raise HTTPException(status_code=404, detail="Not found")

    if not verify_admin_token(get_bearer_token(request), settings.admin_token):
        # Same message for missing and wrong tokens
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
