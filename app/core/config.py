from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB Configuration
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "launchzone"

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    PROJECT_NAME: str = "LaunchZone"

    # Frontend Configuration
    FRONTEND_URL: str = "http://localhost:3000"  # Override with production URL in env

    # Stripe Configuration
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Stripe price ids per plan / add-on
    STRIPE_PRICE_STARTER: str = "price_1Rv6l6GdU41U3RDABW3PJgU3"
    STRIPE_PRICE_PRO_50: str = "price_1Rv6sTGdU41U3RDAMU7CB5Vf"
    STRIPE_PRICE_PRO_200: str = "price_1Rv6u0GdU41U3RDAqLI5XEde"
    STRIPE_PRICE_PRO_500: str = "price_1Rv6uvGdU41U3RDAjMpsNLkm"
    STRIPE_ADDON_PRICE_CREDITS_500: str = "price_1Rv6x6GdU41U3RDAuUTeAVvZ"
    STRIPE_ADDON_PRICE_VIDEO_60: str = "price_1Rv70PGdU41U3RDAHsnClUmo"
    STRIPE_ADDON_PRICE_POSTS_1000: str = "price_1Rv6ybGdU41U3RDAh3CxzEPf"
    STRIPE_ADDON_PRICE_BRAND: str = "price_1Rv72JGdU41U3RDAPYwGN6S7"
    STRIPE_ADDON_PRICE_SEAT: str = "price_1Rv73pGdU41U3RDAVuTAjcWO"

    # Cache Configuration (seconds)
    CACHE_DEFAULT_TTL_SECONDS: float = 15 * 60
    CACHE_CLEANUP_INTERVAL_SECONDS: float = 5 * 60
    CACHE_PRELOAD_TTL_SECONDS: float = 60 * 60
    CACHE_MAX_ENTRIES: int = 10_000

    # Usage metering
    ATOMIC_USAGE_RESERVATION: bool = True

    # Lifecycle emails
    LIFECYCLE_EMAILS_ENABLED: bool = True
    LIFECYCLE_EMAIL_SEND_DELAY_SECONDS: float = 1.0
    WELCOME_EMAIL_DELAY_SECONDS: float = 2.0

    # Email transport
    EMAIL_FROM: str = "LaunchZone <hello@launchzone.app>"
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # Testing Configuration
    TEST_MODE: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra env variables


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
