import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict, model_validator
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
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_AGENCY: Optional[str] = None
    STRIPE_PRICE_ENTERPRISE: Optional[str] = None

    # Internal compute backend
    BACKEND_ORIGIN: Optional[str] = None
    BACKEND_URL: Optional[str] = None
    PUBLIC_ORIGIN: Optional[str] = None
    PORT: int = 8080
    BACKEND_PREFIX: str = "/api/v1"
    INTERNAL_API_KEY: Optional[str] = None
    BACKEND_TIMEOUT_SECONDS: float = 15.0

    # Quotas
    QUOTA_TIMEZONE: str = "UTC"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _fill_backend_origin(self):
        if not self.BACKEND_ORIGIN:
            self.BACKEND_ORIGIN = (
                self.BACKEND_URL
                or self.PUBLIC_ORIGIN
                or f"http://127.0.0.1:{self.PORT}"
            )
        return self

    @property
    def database_url(self) -> Optional[str]:
        """TEST_DATABASE_URL under ENV=test when set, DATABASE_URL otherwise."""
        if self.ENV == "test" and self.TEST_DATABASE_URL:
            return self.TEST_DATABASE_URL
        return self.DATABASE_URL

    @property
    def price_map(self) -> dict:
        """Configured Stripe price id -> tier name (unset prices are skipped)."""
        pairs = [
            (self.STRIPE_PRICE_PRO, "pro"),
            (self.STRIPE_PRICE_AGENCY, "agency"),
            (self.STRIPE_PRICE_ENTERPRISE, "enterprise"),
        ]
        return {price: tier for price, tier in pairs if price}


def get_settings() -> Settings:
    """Read settings fresh from the environment."""
    return Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or get_settings()
    log = logger or logging.getLogger("gateway")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required = {
        "DATABASE_URL": cfg.database_url,
        "STRIPE_WEBHOOK_SECRET": cfg.STRIPE_WEBHOOK_SECRET,
        "INTERNAL_API_KEY": cfg.INTERNAL_API_KEY,
    }

    missing = [key for key, value in required.items() if not value]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    if not cfg.price_map:
        log.warning("No Stripe price ids configured; every subscription resolves to the free tier")

    return True
