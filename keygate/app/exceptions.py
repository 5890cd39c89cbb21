"""Custom exceptions for keygate."""


class KeygateException(Exception):
    """Base class for keygate exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Keygate error"):
        self.message = message
        super().__init__(message)


class EmptyPoolError(KeygateException):
    """Raised when the key pool has no unissued keys left.

    Recoverable by replenishing the pool.
    Maps to HTTP 404 Not Found (429 if configured).
    """
    status_code = 404

    def __init__(self, message: str = "No keys available for activation."):
        super().__init__(message)


class RateLimitedError(KeygateException):
    """Raised when a client has claimed its quota of keys for the window.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        retry_after: int,
        message: str | None = None,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = retry_after
        if message is None:
            noun = "key" if limit == 1 else "keys"
            hours = window_seconds / 3600
            span = f"{hours:g} hours" if hours != 1 else "hour"
            message = f"You can only activate {limit} {noun} per {span}."
        super().__init__(message)


class StoreIOError(KeygateException):
    """Raised when the key pool cannot be read or written.

    Fatal to the operation, not to the process. The persisted pool is left
    as it was before the failed write.
    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, message: str = "Key store unavailable"):
        super().__init__(message)
