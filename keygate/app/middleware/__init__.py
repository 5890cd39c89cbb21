"""Middleware package for keygate."""

from keygate.app.middleware.auth import require_admin
from keygate.app.middleware.client_identity import get_client_identity
from keygate.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "require_admin",
    "get_client_identity",
    "RequestIdMiddleware",
    "get_request_id",
]
