"""Durable pool of unissued activation keys.

On-disk layout:
  <pool>           one key per line, in issue order
  <pool>.consumed  append-only log of keys issued since the last compaction

The live pool is ``<pool>`` minus every key listed in the consumed log.
Issuing a key appends it to the log (flushed and fsync'ed) before the key
leaves the store, so the state on disk always reflects every completed take.
Compaction rewrites ``<pool>`` through a temp file and ``os.replace`` and then
drops the log; a crash between the two steps is harmless because subtracting
an already-removed key is a no-op.
"""

import os
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Iterable, Optional

from keygate.app.core.logging import get_logger
from keygate.app.core.security import SecretsTokenGenerator, TokenGenerator
from keygate.app.exceptions import EmptyPoolError, StoreIOError

logger = get_logger(__name__)


def _atomic_write_lines(path: Path, lines: Iterable[str]) -> None:
    """Write lines to path via temp file + rename.

    If the process crashes mid-write, the original file is preserved.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="ascii", newline="\n") as f:
            for line in lines:
                f.write(line)
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def _read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    with open(path, "r", encoding="ascii") as f:
        return [line.strip() for line in f if line.strip()]


class TokenStore:
    """Sole owner of the persisted key pool.

    Every public operation runs inside one process-wide exclusive section, so
    under any number of concurrent callers each key is returned by exactly one
    ``take_one``. Methods block on file I/O; async callers should run them in
    a worker thread.
    """

    CONSUMED_SUFFIX = ".consumed"
    DEFAULT_COMPACT_THRESHOLD = 1000

    def __init__(
        self,
        path: str | os.PathLike,
        generator: Optional[TokenGenerator] = None,
        compact_threshold: int = DEFAULT_COMPACT_THRESHOLD,
    ):
        """Initialize the store. Nothing is read until first use.

        Args:
            path: Pool file path
            generator: Key source for ``generate`` (CSPRNG by default)
            compact_threshold: Consumed-log entries that trigger a compaction
        """
        self.path = Path(path)
        self.consumed_path = self.path.with_name(self.path.name + self.CONSUMED_SUFFIX)
        self._generator: TokenGenerator = generator or SecretsTokenGenerator()
        self._compact_threshold = compact_threshold

        self._lock = threading.Lock()
        self._pool: deque[str] = deque()
        self._members: set[str] = set()
        # Keys in the consumed log, cleared on compaction
        self._consumed: set[str] = set()
        # A failed append may have left a partial line without a newline
        self._log_torn = False
        self._loaded = False

    @property
    def is_initialized(self) -> bool:
        """True once a pool file has been written at this path."""
        return self.path.exists()

    def __len__(self) -> int:
        with self._lock:
            self._ensure_loaded()
            return len(self._pool)

    def snapshot(self) -> list[str]:
        """Return the unissued keys in issue order."""
        with self._lock:
            self._ensure_loaded()
            return list(self._pool)

    def load(self) -> int:
        """(Re)read the persisted pool, discarding in-memory state.

        Returns:
            Number of unissued keys
        """
        with self._lock:
            self._load_locked()
            return len(self._pool)

    def take_one(self) -> str:
        """Remove and return the head key of the pool.

        Raises:
            EmptyPoolError: No unissued keys remain
            StoreIOError: The removal could not be persisted; the key stays
                in the pool
        """
        with self._lock:
            self._ensure_loaded()
            if not self._pool:
                raise EmptyPoolError()

            token = self._pool[0]
            try:
                self._append_consumed(token)
            except OSError as exc:
                raise StoreIOError(f"Cannot record issued key in {self.consumed_path}: {exc}") from exc

            self._pool.popleft()
            self._members.discard(token)
            self._consumed.add(token)

            if len(self._consumed) >= self._compact_threshold:
                try:
                    self._rewrite_locked(self._pool)
                except StoreIOError:
                    # The take itself is durable; compaction retries on the next take
                    logger.exception("Key pool compaction failed")
            return token

    def generate(self, n: int) -> list[str]:
        """Append ``n`` freshly generated keys to the pool.

        The whole batch is persisted in one atomic rewrite, which also
        compacts the consumed log. On failure the pool is unchanged.

        Returns:
            The generated keys

        Raises:
            ValueError: n is negative
            StoreIOError: The pool file could not be written
        """
        if n < 0:
            raise ValueError("n must not be negative")
        if n == 0:
            return []

        with self._lock:
            self._ensure_loaded()
            batch: list[str] = []
            batch_members: set[str] = set()
            while len(batch) < n:
                token = self._generator()
                if token in self._members or token in self._consumed or token in batch_members:
                    logger.warning("Generated key collides with an existing key; regenerating")
                    continue
                batch.append(token)
                batch_members.add(token)

            self._rewrite_locked([*self._pool, *batch])
            self._pool.extend(batch)
            self._members.update(batch_members)
            pool_size = len(self._pool)

        logger.info("Generated %d keys", n, extra={"pool_size": pool_size})
        return batch

    def compact(self) -> None:
        """Fold the consumed log into the pool file."""
        with self._lock:
            self._ensure_loaded()
            self._rewrite_locked(self._pool)

    # -- internals, called with self._lock held --

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._load_locked()

    def _load_locked(self) -> None:
        try:
            self._repair_consumed_log()
            tokens = _read_lines(self.path)
            consumed = set(_read_lines(self.consumed_path))
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreIOError(f"Cannot read key pool {self.path}: {exc}") from exc

        pool: deque[str] = deque()
        members: set[str] = set()
        duplicates = 0
        for token in tokens:
            if token in consumed:
                continue
            if token in members:
                duplicates += 1
                continue
            members.add(token)
            pool.append(token)

        if duplicates:
            logger.warning("Dropped %d duplicate keys from %s", duplicates, self.path)

        self._pool = pool
        self._members = members
        self._consumed = consumed
        self._log_torn = False
        self._loaded = True
        logger.info(
            "Key pool loaded",
            extra={"pool_size": len(pool), "consumed_pending": len(consumed)},
        )

    def _repair_consumed_log(self) -> None:
        """Terminate a torn trailing record left by a crash mid-append."""
        if not self.consumed_path.exists():
            return
        with open(self.consumed_path, "rb+") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                f.write(b"\n")
                f.flush()
                os.fsync(f.fileno())

    def _append_consumed(self, token: str) -> None:
        """Durably append token to the consumed log.

        On failure the log is cut back to its previous length, so a key whose
        take failed is never counted as consumed on disk.
        """
        record = f"{token}\n".encode("ascii")
        if self._log_torn:
            record = b"\n" + record
        # Unbuffered, so truncate() cannot flush a pending write after the fact
        with open(self.consumed_path, "ab", buffering=0) as f:
            start = f.tell()
            try:
                view = memoryview(record)
                while view:
                    view = view[f.write(view):]
                os.fsync(f.fileno())
            except OSError:
                self._truncate_consumed_log(f, start)
                raise
        self._log_torn = False

    def _truncate_consumed_log(self, f, length: int) -> None:
        try:
            f.truncate(length)
            os.fsync(f.fileno())
        except OSError:
            # A partial record may remain; the next append starts a fresh line
            self._log_torn = True
            logger.exception("Could not roll back %s", self.consumed_path)

    def _rewrite_locked(self, tokens: Iterable[str]) -> None:
        try:
            _atomic_write_lines(self.path, tokens)
        except OSError as exc:
            raise StoreIOError(f"Cannot write key pool {self.path}: {exc}") from exc

        try:
            self.consumed_path.unlink(missing_ok=True)
        except OSError as exc:
            # Stale log entries no longer match anything in the rewritten pool
            logger.warning("Could not remove %s: %s", self.consumed_path, exc)
            return
        self._consumed.clear()
        self._log_torn = False
        logger.debug("Key pool compacted", extra={"pool_size": len(self._pool)})
