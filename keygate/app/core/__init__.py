"""Core utilities for keygate."""

from keygate.app.core.config import Settings, settings
from keygate.app.core.logging import get_logger, setup_logging
from keygate.app.core.security import SecretsTokenGenerator, hash_identity

__all__ = [
    "Settings",
    "settings",
    "get_logger",
    "setup_logging",
    "SecretsTokenGenerator",
    "hash_identity",
]
