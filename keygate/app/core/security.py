import hashlib
import hmac
import secrets
from typing import Iterable, Iterator, Protocol


class TokenGenerator(Protocol):
    """Source of new activation keys."""

    def __call__(self) -> str: ...


class SecretsTokenGenerator:
    """Generate URL-safe keys from the operating system CSPRNG.

    Uses ``secrets.token_urlsafe()``: unpadded base64url, so a key never
    contains whitespace or a newline.
    """

    def __init__(self, nbytes: int = 32):
        self.nbytes = nbytes

    def __call__(self) -> str:
        return secrets.token_urlsafe(self.nbytes)


class SequenceTokenGenerator:
    """Replay a fixed sequence of keys.

    Raises RuntimeError once the sequence is exhausted.
    """

    def __init__(self, tokens: Iterable[str]):
        self._tokens: Iterator[str] = iter(tokens)

    def __call__(self) -> str:
        try:
            return next(self._tokens)
        except StopIteration:
            raise RuntimeError("token sequence exhausted") from None


def hash_identity(identity: str) -> str:
    """Digest a client identity for log output.

    32 hex chars (128 bits) keep distinct clients distinguishable in logs
    without writing their addresses.
    """
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:32]


def verify_admin_token(provided: str | None, expected: str) -> bool:
    """Constant-time admin token comparison.

    An empty expected token never matches, so an unset ADMIN_TOKEN cannot be
    satisfied by an empty Authorization header.
    """
    if not expected:
        return False
    return hmac.compare_digest((provided or "").encode(), expected.encode())
