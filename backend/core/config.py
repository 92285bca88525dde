import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database & Cache
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None
    REDIS_URL: str = "redis://localhost:6379"

    # Shopify app credentials
    SHOPIFY_API_KEY: Optional[str] = None
    SHOPIFY_API_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2025-07"
    APP_URL: str = "http://localhost:8000"

    # Billing
    BILLING_ENABLED: bool = True
    BILLING_TEST_MODE: bool = True
    TRIAL_DAYS: int = 5

    # Tokens
    TOKEN_SAFETY_MARGIN: float = 1.5

    # Generation jobs
    GENERATION_SERVICE_URL: Optional[str] = None
    GENERATION_TIMEOUT_SECONDS: float = 600.0
    JOB_SECONDS_PER_SLOT: int = 60
    JOB_RQ_TIMEOUT: str = "30m"
    # A processing job older than this lost its worker (RQ timeout plus a minute)
    JOB_STALE_AFTER_SECONDS: int = 1860

    # Client polling defaults
    POLL_INTERVAL_SECONDS: float = 10.0
    POLL_PROGRESS_INTERVAL_SECONDS: float = 3.0
    POLL_MAX_ATTEMPTS: int = 30

    # CORS
    CORS_ALLOWED_ORIGINS: str = "http://localhost:3000"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("aiseo")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "SHOPIFY_API_KEY",
        "SHOPIFY_API_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if getattr(cfg, "TOKEN_SAFETY_MARGIN", 1.0) < 1.0:
        message = "TOKEN_SAFETY_MARGIN must be >= 1.0"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
