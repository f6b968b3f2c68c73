import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Identity provider (Clerk-compatible JWTs)
    CLERK_SECRET_KEY: Optional[str] = None
    CLERK_ISSUER: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev
    CLERK_AUDIENCE: Optional[str] = None
    CLERK_JWKS_URL: Optional[str] = None  # e.g. https://your-instance.clerk.accounts.dev/.well-known/jwks.json
    IDENTITY_TIMEOUT_SECONDS: float = 10.0

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_PRICE_BASIC: Optional[str] = None
    STRIPE_PRICE_PRO: Optional[str] = None
    STRIPE_PRICE_TEAM: Optional[str] = None
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_MAX_ATTEMPTS: int = 3
    STRIPE_BACKOFF_BASE_SECONDS: float = 1.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # App URLs
    PUBLIC_BASE_URL: str = "http://localhost:3000"
    UPGRADE_PATH: str = "/pricing"

    # Entitlements
    FREE_AUDITS_PER_MONTH: int = 5
    OPTIMISTIC_PRO_GRACE_SECONDS: int = 300  # display-only hint for clients
    SYNC_LEASE_TTL_SECONDS: int = 30

    # Admin access (hybrid auth)
    ADMIN_KEY: Optional[str] = None  # Legacy shared key
    ADMIN_AUTH_MODE: str = "hybrid"  # "clerk" | "legacy" | "hybrid"

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
    log = logger or logging.getLogger("auditor")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PUBLIC_BASE_URL",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if not (getattr(cfg, "CLERK_SECRET_KEY", None) or getattr(cfg, "CLERK_JWKS_URL", None) or getattr(cfg, "CLERK_ISSUER", None)):
        missing.append("CLERK_SECRET_KEY|CLERK_JWKS_URL|CLERK_ISSUER")
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
