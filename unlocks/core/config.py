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

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY: Optional[str] = None
    USE_SIMULATED_PURCHASES: bool = False
    DEFAULT_CURRENCY: str = "USD"

    # App URLs (checkout redirects)
    BASE_URL: str = "http://localhost:3000"
    CUSTOM_DOMAIN: Optional[str] = None

    # Auth
    AUTH_JWT_SECRET: Optional[str] = None
    ADMIN_KEY: Optional[str] = None

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def get_base_url(settings_obj: Optional[Settings] = None) -> str:
    """Base URL for checkout redirects; a custom domain wins over BASE_URL."""
    cfg = settings_obj or settings
    if cfg.CUSTOM_DOMAIN:
        domain = cfg.CUSTOM_DOMAIN
        return domain if domain.startswith("http") else f"https://{domain}"
    return cfg.BASE_URL.rstrip("/")


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("unlocks")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_JWT_SECRET",
    ]
    # Stripe keys are only required when purchases are not simulated
    if not getattr(cfg, "USE_SIMULATED_PURCHASES", False):
        required_keys += ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
