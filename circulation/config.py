import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "circulation.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    renew_days: int = int(os.getenv("RENEW_DAYS", "14"))
    fine_rate_per_day: float = float(os.getenv("FINE_RATE_PER_DAY", "0.50"))
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    block_borrow_when_overdue: bool = _env_flag("BLOCK_BORROW_WHEN_OVERDUE", "True")

    # Statistics
    stats_cache_ttl: int = int(os.getenv("STATS_CACHE_TTL", "300"))  # 5 minutes
    stats_query_timeout: float = float(os.getenv("STATS_QUERY_TIMEOUT", "5"))
    stats_query_retries: int = int(os.getenv("STATS_QUERY_RETRIES", "2"))
    stats_retry_backoff: float = float(os.getenv("STATS_RETRY_BACKOFF", "1.0"))
    stats_total_timeout: float = float(os.getenv("STATS_TOTAL_TIMEOUT", "15"))
    stats_eviction_interval: float = float(os.getenv("STATS_EVICTION_INTERVAL", "300"))

    # Redis cache tier (optional, memory tier is always used)
    redis_url: Optional[str] = os.getenv("REDIS_URL")

    # Notification delivery
    notification_webhook_url: Optional[str] = os.getenv("NOTIFICATION_WEBHOOK_URL")
    notification_timeout: float = float(os.getenv("NOTIFICATION_TIMEOUT", "5"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_flag("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once, using LOG_LEVEL unless a level is given."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
