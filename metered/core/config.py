import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Image queue parallelism per plan (concurrently processing jobs)
    IMAGE_QUEUE_PARALLEL_FREE: int = 1
    IMAGE_QUEUE_PARALLEL_STARTER: int = 1
    IMAGE_QUEUE_PARALLEL_PRO: int = 2
    IMAGE_QUEUE_PARALLEL_BUSINESS_PLUS: int = 4

    # Queue priority weights (higher is served first)
    IMAGE_QUEUE_PRIORITY_FREE: int = 0
    IMAGE_QUEUE_PRIORITY_STARTER: int = 10
    IMAGE_QUEUE_PRIORITY_PRO: int = 20
    IMAGE_QUEUE_PRIORITY_BUSINESS_PLUS: int = 30

    # Batch rate limits: free and business_plus are unlimited unless both values are set
    IMAGE_RATE_LIMIT_FREE_MAX: Optional[int] = None
    IMAGE_RATE_LIMIT_FREE_WINDOW_SEC: Optional[int] = None
    IMAGE_RATE_LIMIT_STARTER_MAX: int = 1
    IMAGE_RATE_LIMIT_STARTER_WINDOW_SEC: int = 5 * 60
    IMAGE_RATE_LIMIT_PRO_MAX: int = 2
    IMAGE_RATE_LIMIT_PRO_WINDOW_SEC: int = 10 * 60
    IMAGE_RATE_LIMIT_BUSINESS_PLUS_MAX: Optional[int] = None
    IMAGE_RATE_LIMIT_BUSINESS_PLUS_WINDOW_SEC: Optional[int] = None

    # Daily job caps (None = unlimited)
    IMAGE_DAILY_LIMIT_FREE: Optional[int] = None
    IMAGE_DAILY_LIMIT_STARTER: Optional[int] = 100
    IMAGE_DAILY_LIMIT_PRO: Optional[int] = 250
    IMAGE_DAILY_LIMIT_BUSINESS_PLUS: Optional[int] = None

    # ETA fallbacks when no duration history exists
    IMAGE_QUEUE_ESTIMATE_SECONDS_PER_IMAGE: float = 45.0
    IMAGE_QUEUE_ESTIMATE_SECONDS_BASIC: Optional[float] = None
    IMAGE_QUEUE_ESTIMATE_SECONDS_PRO: Optional[float] = None
    IMAGE_QUEUE_ESTIMATE_SECONDS_ULTRA: Optional[float] = None

    # Worker support
    IMAGE_WORKER_STALE_MINUTES: int = 20

    # Usage audit
    USAGE_PROMPT_MAX_CHARS: int = 1000

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
    log = logger or logging.getLogger("metered")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
