import json
import re
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

    # Prefer JSON, but tolerate comma/space separated values so a
    # misconfigured deployment does not crash at startup.
    if raw.startswith(("[", '"', "'")):
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

    # Admin token for the security maintenance endpoints
    admin_token: str = ""

    # Content admission validator
    message_min_length: int = 5
    message_max_length: int = 350
    message_max_line_breaks: int = 5
    message_max_repetition_percentage: float = 70.0
    message_min_line_length: float = 2.0

    # Submission rate limiter (milliseconds, per session)
    rate_limit_burst_window_ms: int = 120_000
    rate_limit_max_submissions: int = 3
    rate_limit_cooldown_ms: int = 30_000
    rate_limit_max_sessions: int = 10_000

    # Attestation
    attestation_enforced: bool = True
    attestation_mock: bool = False
    attestation_base_url: str = "https://attestation.example.com/v1"
    attestation_site_key: str = ""
    attestation_timeout: float = 10.0
    attestation_token_ttl_seconds: int = 300  # 5 minutes, shorter than provider lifetime
    security_event_log_max_entries: int = 100

    # Storage
    # Empty DATABASE_URL keeps messages in process memory.
    database_url: str = Field(default="", validation_alias="DATABASE_URL")
    message_ttl_hours: int = 24
    report_threshold: int = 2

    # Redis settings (optional, backs the security event log)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    security_event_log_key: str = "chatguard:security_events"

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 5.0
    httpx_read_timeout: float = 10.0
    httpx_write_timeout: float = 5.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 50
    httpx_max_keepalive_connections: int = 10

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
        "message_min_length",
        "message_max_length",
        "rate_limit_burst_window_ms",
        "rate_limit_max_submissions",
        "rate_limit_cooldown_ms",
        "rate_limit_max_sessions",
        "attestation_token_ttl_seconds",
        "security_event_log_max_entries",
        "message_ttl_hours",
        "report_threshold",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limits are at least 1."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("message_max_line_breaks")
    @classmethod
    def validate_line_breaks(cls, v: int) -> int:
        if v < 0:
            raise ValueError("message_max_line_breaks cannot be negative")
        return v

    @field_validator("message_max_repetition_percentage")
    @classmethod
    def validate_percentage(cls, v: float) -> float:
        """Validate the repetition threshold is a percentage."""
        if not 0 <= v <= 100:
            raise ValueError("message_max_repetition_percentage must be between 0 and 100")
        return v

    @field_validator("attestation_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("attestation_timeout must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
