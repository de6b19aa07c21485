"""
Centralized configuration for the POS analytics sync engine.

Configuration is loaded from environment variables (and an optional .env
file) with sensible defaults.

Usage:
    from possync.config import config

    token = config.api.token
    max_age = config.sync.current_data_max_age_ms
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    """Read an integer env var, ignoring malformed values."""
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


class TrailingDaysPolicy(str, Enum):
    """When the current month's trailing days are fetched one by one."""

    EVERY_PASS = "every_pass"              # each time the current month unit is fetched
    ONCE_PER_SESSION = "once_per_session"  # at most once per sync service instance
    DISABLED = "disabled"

    @classmethod
    def parse(cls, value: str, default: "TrailingDaysPolicy" = None) -> "TrailingDaysPolicy":
        try:
            return cls(value.strip().lower())
        except (ValueError, AttributeError):
            return default or cls.EVERY_PASS


@dataclass(frozen=True)
class APIConfig:
    """Remote POS backend configuration."""

    base_url: str = field(
        default_factory=lambda: os.getenv(
            "POS_API_BASE_URL", "https://pos-candy-kush.vercel.app/api/mobile"
        )
    )
    token: str = field(default_factory=lambda: os.getenv("POS_API_TOKEN", ""))
    request_timeout: float = field(
        default_factory=lambda: _env_float("POS_REQUEST_TIMEOUT", 30.0)
    )
    # Minimum spacing between consecutive requests (requests per second)
    requests_per_second: float = 5.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0


@dataclass(frozen=True)
class SyncConfig:
    """Background sync and freshness policy."""

    current_data_max_age_ms: int = 2 * 60 * 1000        # current day / month
    historical_data_max_age_ms: int = 24 * 60 * 60 * 1000
    items_stock_max_age_ms: int = 5 * 60 * 1000
    list_max_age_ms: int = 5 * 60 * 1000                # invoices, expenses, purchases
    earliest_year: int = field(default_factory=lambda: _env_int("POS_EARLIEST_YEAR", 2020))
    default_months_back: int = 12
    trailing_days: int = 7
    trailing_days_policy: TrailingDaysPolicy = field(
        default_factory=lambda: TrailingDaysPolicy.parse(
            os.getenv("POS_TRAILING_DAYS_POLICY", "every_pass")
        )
    )
    # Pause between units so a full historical walk doesn't hammer the backend
    unit_delay_seconds: float = 0.3
    current_month_refresh_minutes: int = 15
    stock_refresh_minutes: int = 5


@dataclass(frozen=True)
class CacheConfig:
    """Local cache database configuration."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("POS_CACHE_PATH", str(Path.cwd() / "data" / "sales_cache.duckdb"))
        )
    )
    query_timeout: float = 30.0
    retention_days: int = field(default_factory=lambda: _env_int("POS_CACHE_RETENTION_DAYS", 0))


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(
        default_factory=lambda: os.getenv("LOG_JSON", "false").lower() == "true"
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    api: APIConfig = field(default_factory=APIConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(cfg: AppConfig = None, require_token: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on startup to fail fast with clear error messages.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    cfg = cfg or config
    errors = []

    if require_token and not cfg.api.token:
        errors.append("POS_API_TOKEN is required but not set")

    if not cfg.api.base_url.startswith(("http://", "https://")):
        errors.append(f"POS_API_BASE_URL must be an http(s) URL (got {cfg.api.base_url!r})")

    if cfg.api.request_timeout <= 0:
        errors.append("POS_REQUEST_TIMEOUT must be positive")

    if cfg.sync.earliest_year < 1970:
        errors.append("POS_EARLIEST_YEAR must be 1970 or later")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
