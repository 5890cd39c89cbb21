"""Shared fixtures for keygate tests."""

from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest

from keygate.app.core.security import TokenGenerator
from keygate.app.services.token_store import TokenStore


class FakeClock:
    """Controllable time source for the rate limiter."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pool_path(tmp_path: Path) -> Path:
    return tmp_path / "keys.txt"


@pytest.fixture
def make_store(pool_path: Path) -> Callable[..., TokenStore]:
    """Build a TokenStore over pool_path, optionally seeding the file first."""

    def _make(
        tokens: Optional[Iterable[str]] = None,
        generator: Optional[TokenGenerator] = None,
        compact_threshold: int = TokenStore.DEFAULT_COMPACT_THRESHOLD,
    ) -> TokenStore:
        if tokens is not None:
            pool_path.write_text("".join(f"{t}\n" for t in tokens))
        return TokenStore(pool_path, generator=generator, compact_threshold=compact_threshold)

    return _make
