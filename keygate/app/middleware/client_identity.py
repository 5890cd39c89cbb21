from fastapi import Request

from keygate.app.core.config import Settings


def get_client_identity(request: Request) -> str:
    """Rate limit identity of the requester.

    The connection's source address, or the first X-Forwarded-For hop when
    the service runs behind a trusted reverse proxy.
    """
    settings: Settings = request.app.state.settings
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()
            if client_ip:
                return client_ip
    return request.client.host if request.client else "unknown"
