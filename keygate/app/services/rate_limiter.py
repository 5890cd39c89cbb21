"""Per-client issuance limiting.

Each client identity may receive at most ``max_keys`` keys in any rolling
window of ``window_seconds``. State lives in process memory only and is lost
on restart.
"""

import asyncio
import contextlib
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

from keygate.app.core.logging import get_logger
from keygate.app.exceptions import RateLimitedError

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    """Result of an admitted claim."""
    limit: int
    remaining: int
    reset_time: int


@dataclass
class IssuanceRecord:
    """Issuance timestamps of one client inside the current window."""
    timestamps: list[float] = field(default_factory=list)

    def prune(self, cutoff: float) -> None:
        """Drop issuances at or before cutoff."""
        self.timestamps = [ts for ts in self.timestamps if ts > cutoff]


class IssuanceRateLimiter:
    """In-memory sliding-log limiter keyed by client identity.

    An issuance at ``t`` counts against the client until ``t + window_seconds``;
    a claim at exactly that instant is admitted again.

    Memory:
    - Expired timestamps are dropped on the client's next check and by
      ``cleanup()``, which the application runs periodically.
    - Records are kept in an OrderedDict in LRU order. Past ``max_entries``
      expired records are swept first; only if that is not enough are the
      least recently used 20% evicted, which forgets their issuances.
    """

    DEFAULT_MAX_ENTRIES = 100000

    def __init__(
        self,
        max_keys: int = 1,
        window_seconds: int = 24 * 60 * 60,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            max_keys: Keys a client may claim per window
            window_seconds: Rolling window length in seconds
            max_entries: Maximum number of client records to store
            clock: Time source returning epoch seconds
        """
        self.max_keys = max_keys
        self.window_seconds = window_seconds
        self._max_entries = max_entries
        self._clock = clock

        self._records: OrderedDict[str, IssuanceRecord] = OrderedDict()
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        return len(self._records)

    async def check_and_record(
        self, identity: str, now: Optional[float] = None
    ) -> RateLimitResult:
        """Admit and record one issuance for identity, or refuse it.

        Check and record form one critical section, so concurrent claims from
        the same client cannot both pass the check.

        Raises:
            RateLimitedError: The client already holds max_keys issuances
                inside the window
        """
        async with self._lock:
            if now is None:
                now = self._clock()

            record = self._records.get(identity)
            if record is None:
                self._enforce_entry_limit(now)
                record = IssuanceRecord()
                self._records[identity] = record
            else:
                self._records.move_to_end(identity)

            record.prune(now - self.window_seconds)

            if len(record.timestamps) >= self.max_keys:
                oldest = min(record.timestamps)
                retry_after = max(1, math.ceil(oldest + self.window_seconds - now))
                raise RateLimitedError(
                    limit=self.max_keys,
                    window_seconds=self.window_seconds,
                    retry_after=retry_after,
                )

            record.timestamps.append(now)
            return RateLimitResult(
                limit=self.max_keys,
                remaining=self.max_keys - len(record.timestamps),
                reset_time=int(min(record.timestamps) + self.window_seconds),
            )

    async def refund(self, identity: str, at: float) -> bool:
        """Forget the issuance recorded for identity at ``at``.

        Returns:
            True if a matching issuance was removed
        """
        async with self._lock:
            record = self._records.get(identity)
            if record is None or at not in record.timestamps:
                return False
            record.timestamps.remove(at)
            if not record.timestamps:
                del self._records[identity]
            return True

    async def usage(self, identity: str, now: Optional[float] = None) -> int:
        """Number of issuances identity holds inside the window."""
        async with self._lock:
            if now is None:
                now = self._clock()
            record = self._records.get(identity)
            if record is None:
                return 0
            cutoff = now - self.window_seconds
            return sum(1 for ts in record.timestamps if ts > cutoff)

    async def cleanup(self, now: Optional[float] = None) -> int:
        """Remove records with no issuance inside the window.

        Returns:
            Number of records removed
        """
        async with self._lock:
            if now is None:
                now = self._clock()
            return self._sweep_expired(now)

    def _sweep_expired(self, now: float) -> int:
        cutoff = now - self.window_seconds
        expired = [
            identity for identity, record in self._records.items()
            if all(ts <= cutoff for ts in record.timestamps)
        ]
        for identity in expired:
            del self._records[identity]
        return len(expired)

    def _enforce_entry_limit(self, now: float) -> None:
        if len(self._records) < self._max_entries:
            return
        self._sweep_expired(now)
        if len(self._records) < self._max_entries:
            return
        remove_count = min(max(1, int(self._max_entries * 0.2)), len(self._records))
        for _ in range(remove_count):
            self._records.popitem(last=False)
        logger.warning(
            "Rate limiter full; evicted %d least recently used clients", remove_count
        )

    async def start_sweeper(self, interval_seconds: float) -> None:
        """Run cleanup() every interval_seconds in a background task."""
        if self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = await self.cleanup()
            if removed:
                logger.debug("Swept %d expired rate limit records", removed)
