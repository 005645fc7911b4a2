import json
import re
from typing import Annotated, Any, Literal

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

    # JSON is the documented format; bare host lists are tolerated so a
    # misconfigured deployment still boots.
    if raw.startswith(("[", "{", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()
            if not raw or raw == "[]":
                return []
            if raw == "*":
                return ["*"]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    origins: list[str] = []
    for part in parts:
        if part == "*":
            return ["*"]
        if "://" in part:
            origins.append(part)
            continue
        # Browsers send the scheme in Origin, so a bare host allows both.
        origins.append(f"http://{part}")
        origins.append(f"https://{part}")

    seen: set[str] = set()
    result: list[str] = []
    for origin in origins:
        if origin in seen:
            continue
        seen.add(origin)
        result.append(origin)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Supabase settings (PostgREST + GoTrue)
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_key: str = ""  # Used for server-side progress writes
    supabase_progress_table: str = "user_progress"
    supabase_auth_cache_ttl_seconds: float = 60.0
    supabase_auth_cache_max_size: int = 10000

    # Progress store backend: memory | supabase | database
    progress_store_backend: Literal["memory", "supabase", "database"] = "memory"

    # PostgreSQL settings (database progress store)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True
    db_command_timeout: float = 30.0

    @property
    def database_url(self) -> str:
        """Database connection URL for the database progress store.

        Falls back to a local SQLite file when DATABASE_URL is not set.
        """
        if self.database_url_override:
            return self.database_url_override
        return "sqlite+aiosqlite:///./vibestudy_progress.db"

    # HTTP Client connection pool settings
    httpx_connect_timeout: float = 5.0
    httpx_read_timeout: float = 15.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Redis settings (optional, shared rate limit counters)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_default_limit: int = 100  # API_GENERAL, per window
    rate_limit_default_window_ms: int = 60_000
    rate_limit_progress_limit: int = 120  # PROGRESS_SYNC, per window
    rate_limit_max_entries: int = 10000  # In-memory bucket cap (LRU)
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the counter store is unavailable
    )

    # Progress sync settings
    sync_max_retries: int = 3
    sync_retry_base_delay: float = 1.0
    sync_retry_max_delay: float = 30.0
    sync_retry_jitter: bool = True
    sync_debounce_code_seconds: float = 2.0
    sync_debounce_notes_seconds: float = 2.0
    sync_debounce_recap_seconds: float = 2.0
    sync_dead_letter_path: str = "/tmp/vibestudy_failed_syncs.jsonl"

    # CORS settings
    # NoDecode keeps a non-JSON value (e.g. "study.example.com") from
    # crashing startup.
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("supabase_url")
    @classmethod
    def strip_supabase_url(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator(
        "rate_limit_default_limit",
        "rate_limit_default_window_ms",
        "rate_limit_progress_limit",
        "rate_limit_max_entries",
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("sync_max_retries")
    @classmethod
    def validate_sync_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("sync_max_retries must not be negative")
        return v

    @field_validator("sync_retry_base_delay", "sync_retry_max_delay")
    @classmethod
    def validate_retry_delay_positive(cls, v: float) -> float:
        """Validate retry delays are positive."""
        if v <= 0:
            raise ValueError("Retry delays must be positive")
        return v

    @field_validator(
        "sync_debounce_code_seconds",
        "sync_debounce_notes_seconds",
        "sync_debounce_recap_seconds",
    )
    @classmethod
    def validate_debounce_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Debounce delays must not be negative")
        return v

    @field_validator("db_pool_size", "db_max_overflow")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool_size is positive."""
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    @field_validator("httpx_connect_timeout", "httpx_read_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
