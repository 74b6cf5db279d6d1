from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Fields a policy override may set; anything else is a configuration error.
_POLICY_OVERRIDE_FIELDS = ("window_ms", "max_requests")


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_path_prefix: str = "/api/"  # Middleware only gates paths under this prefix
    rate_limit_max_entries: int = 10000  # In-memory store cap; new keys are rejected when full
    rate_limit_sweep_interval_ms: int = 60_000  # 0 = sweep expired entries on every check
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when Redis is unavailable
    )
    # JSON, e.g. RATE_LIMIT_POLICY_OVERRIDES='{"AUTH": {"max_requests": 10}}'
    rate_limit_policy_overrides: dict[str, dict[str, int]] = {}

    # Redis settings (optional shared counter store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Security headers
    security_headers_enabled: bool = True

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is one of the supported formatters."""
        v = v.strip().lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @field_validator("rate_limit_max_entries")
    @classmethod
    def validate_max_entries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit_max_entries must be at least 1")
        return v

    @field_validator("rate_limit_sweep_interval_ms")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rate_limit_sweep_interval_ms must not be negative")
        return v

    @field_validator("rate_limit_path_prefix")
    @classmethod
    def validate_path_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("rate_limit_path_prefix must start with '/'")
        return v

    @field_validator("rate_limit_policy_overrides", mode="before")
    @classmethod
    def validate_policy_overrides(cls, v: Any) -> Any:
        """Normalize policy names and reject unknown or non-positive fields.

        Policy names are upper-cased here; whether a name exists in the
        registry is checked when the policies are loaded.
        """
        if v is None:
            return {}
        if not isinstance(v, dict):
            return v
        normalized: dict[str, dict[str, int]] = {}
        for name, fields in v.items():
            if not isinstance(fields, dict):
                raise ValueError(f"override for policy {name!r} must be an object")
            coerced: dict[str, int] = {}
            for field, value in fields.items():
                if field not in _POLICY_OVERRIDE_FIELDS:
                    raise ValueError(
                        f"unsupported override field {field!r} for policy {name!r}"
                    )
                try:
                    value = int(value)
                except (TypeError, ValueError) as e:
                    raise ValueError(
                        f"{field} for policy {name!r} must be an integer"
                    ) from e
                if value < 1:
                    raise ValueError(
                        f"{field} for policy {name!r} must be at least 1"
                    )
                coerced[field] = value
            normalized[str(name).strip().upper()] = coerced
        return normalized

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
