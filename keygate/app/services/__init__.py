"""Services package for keygate.

This package provides:
- The persisted key pool (TokenStore)
- Per-client issuance limiting (IssuanceRateLimiter)
- Key activation composing both (ActivationService)
"""

from keygate.app.services.activation import (
    ActivationService,
    ClaimResult,
    Denied,
    DenialReason,
    Granted,
)
from keygate.app.services.rate_limiter import (
    IssuanceRateLimiter,
    IssuanceRecord,
    RateLimitResult,
)
from keygate.app.services.token_store import TokenStore

__all__ = [
    "ActivationService",
    "ClaimResult",
    "Denied",
    "DenialReason",
    "Granted",
    "IssuanceRateLimiter",
    "IssuanceRecord",
    "RateLimitResult",
    "TokenStore",
]
