import json
import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma/space separated hosts.
    if raw.startswith(("[", '"')):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if "://" in part:
            candidates = [part]
        else:
            # Browsers send the scheme in Origin, so accept both.
            candidates = [f"http://{part}", f"https://{part}"]
        for origin in candidates:
            if origin not in origins:
                origins.append(origin)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8080, validation_alias="PORT")

    # Key pool settings
    pool_path: Path = Path("keys.txt")
    pool_initial_size: int = 50000  # Generated on startup when the pool is empty
    pool_generate_on_startup: bool = True
    pool_replenish_size: int = 1000  # Default batch for admin replenishment
    pool_compact_threshold: int = 1000  # Consumed-log entries before compaction
    token_bytes: int = 32  # Entropy per key
    pool_empty_status_code: int = 404  # 404 or 429 when no keys are left

    # Rate limiting settings (per client identity)
    rate_limit_max_keys: int = 1
    rate_limit_window_seconds: int = 24 * 60 * 60
    rate_limit_max_entries: int = 100000
    rate_limit_sweep_interval_seconds: int = 600
    rate_limit_refund_on_empty: bool = False

    # Use the first X-Forwarded-For hop as client identity (behind a proxy)
    trust_forwarded_for: bool = False

    # Admin endpoints are disabled while this is empty
    admin_token: str = ""

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator(
        "rate_limit_max_keys",
        "rate_limit_window_seconds",
        "rate_limit_max_entries",
        "rate_limit_sweep_interval_seconds",
        "pool_compact_threshold",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limiter and compaction values are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("pool_initial_size", "pool_replenish_size")
    @classmethod
    def validate_pool_sizes(cls, v: int) -> int:
        if v < 0:
            raise ValueError("pool sizes must not be negative")
        return v

    @field_validator("token_bytes")
    @classmethod
    def validate_token_bytes(cls, v: int) -> int:
        """Keys below 128 bits of entropy are guessable."""
        if v < 16:
            raise ValueError("token_bytes must be at least 16")
        return v

    @field_validator("pool_empty_status_code")
    @classmethod
    def validate_pool_empty_status_code(cls, v: int) -> int:
        if v not in (404, 429):
            raise ValueError("pool_empty_status_code must be 404 or 429")
        return v

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


# Global settings instance
settings = Settings()
