"""Key activation: rate limiter and key pool composed into one claim."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from keygate.app.core.logging import get_log_context, get_logger
from keygate.app.core.security import hash_identity
from keygate.app.exceptions import EmptyPoolError, RateLimitedError, StoreIOError
from keygate.app.services.rate_limiter import IssuanceRateLimiter
from keygate.app.services.token_store import TokenStore

logger = get_logger(__name__)


class DenialReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    NO_TOKENS = "no_tokens"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Granted:
    """A key was issued to the client."""
    token: str
    limit: int
    remaining: int
    reset_time: int

    @property
    def granted(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    """No key was issued; ``reason`` says why."""
    reason: DenialReason
    message: str
    retry_after: Optional[int] = None

    @property
    def granted(self) -> bool:
        return False


ClaimResult = Union[Granted, Denied]


class ActivationService:
    """Single entry point for claiming a key.

    The limiter is consulted before the pool, so a client over quota never
    competes for the last keys and a rate-limited claim never consumes one.
    ``claim`` does not raise: every outcome is a Granted or Denied value.
    """

    def __init__(
        self,
        store: TokenStore,
        limiter: IssuanceRateLimiter,
        refund_on_empty: bool = False,
    ):
        """Initialize the service.

        Args:
            store: Key pool to draw from
            limiter: Per-client issuance limiter
            refund_on_empty: Give the window slot back when the pool turns
                out to be empty
        """
        self._store = store
        self._limiter = limiter
        self.refund_on_empty = refund_on_empty

    async def claim(self, identity: str, now: Optional[float] = None) -> ClaimResult:
        """Claim one key for the client identified by ``identity``.

        Args:
            identity: Opaque client identity (usually the source address)
            now: Claim time in epoch seconds; the limiter clock by default
        """
        if now is None:
            now = self._limiter.now()
        log_context = get_log_context(client_id=hash_identity(identity))

        try:
            quota = await self._limiter.check_and_record(identity, now)
        except RateLimitedError as exc:
            logger.info(
                "Claim denied: rate limited",
                extra={**log_context, "retry_after": exc.retry_after},
            )
            return Denied(DenialReason.RATE_LIMITED, exc.message, exc.retry_after)

        try:
            # The store's exclusive section completes in its worker thread
            # even if this claim is cancelled while waiting on it.
            token = await asyncio.to_thread(self._store.take_one)
        except EmptyPoolError as exc:
            logger.warning("Claim denied: key pool is empty", extra=log_context)
            if self.refund_on_empty:
                await self._limiter.refund(identity, now)
            return Denied(DenialReason.NO_TOKENS, exc.message)
        except StoreIOError as exc:
            logger.error("Claim failed: %s", exc.message, extra=log_context)
            await self._limiter.refund(identity, now)
            return Denied(DenialReason.STORE_UNAVAILABLE, "Key store unavailable, please try again later.")

        logger.info("Key issued", extra={**log_context, "remaining_quota": quota.remaining})
        return Granted(
            token=token,
            limit=quota.limit,
            remaining=quota.remaining,
            reset_time=quota.reset_time,
        )

    async def replenish(self, count: int) -> int:
        """Generate ``count`` new keys into the pool.

        Returns:
            Pool size after replenishment

        Raises:
            StoreIOError: The batch could not be persisted
        """
        await asyncio.to_thread(self._store.generate, count)
        pool_size = await asyncio.to_thread(len, self._store)
        logger.info("Key pool replenished", extra={"generated": count, "pool_size": pool_size})
        return pool_size

    async def stats(self) -> dict[str, Any]:
        return {
            "pool_size": await asyncio.to_thread(len, self._store),
            "tracked_clients": len(self._limiter),
            "rate_limit": {
                "max_keys": self._limiter.max_keys,
                "window_seconds": self._limiter.window_seconds,
            },
        }
