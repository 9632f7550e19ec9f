import logging
from enum import Enum
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class BlacklistBackend(str, Enum):
    AUTO = "auto"
    MEMORY = "memory"
    REDIS = "redis"


class RateLimitRule(BaseModel):
    """A single path-specific rate limit rule (first match wins)."""

    name: str = Field(..., min_length=1)
    path_pattern: str = Field(..., min_length=1)
    permit_limit: int = Field(10, ge=1)
    window_seconds: int = Field(60, ge=1)

    model_config = {"frozen": True}


def _default_rate_limit_rules() -> List[RateLimitRule]:
    return [
        RateLimitRule(name="auth-strict", path_pattern="/api/auth/login", permit_limit=5, window_seconds=60),
        RateLimitRule(name="auth-register", path_pattern="/api/auth/register", permit_limit=5, window_seconds=60),
        RateLimitRule(name="auth-refresh", path_pattern="/api/auth/refresh", permit_limit=10, window_seconds=60),
        RateLimitRule(
            name="auth-forgot-password", path_pattern="/api/auth/forgot-password", permit_limit=3, window_seconds=60
        ),
        RateLimitRule(
            name="auth-reset-password", path_pattern="/api/auth/reset-password", permit_limit=5, window_seconds=60
        ),
    ]


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    # SECURITY: In production, explicitly set APP_MODE=prod
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./arenaops_auth.db"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # JWT Configuration (RS256, key pair bootstrapped from JWT_KEY_FILE_PATH)
    JWT_ISSUER: str = "ArenaOps"
    JWT_AUDIENCE: str = "ArenaOps"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(30, ge=1)
    REFRESH_TOKEN_EXPIRE_DAYS: int = Field(7, ge=1)
    JWT_KEY_FILE_PATH: str = "keys/rsa-private.key"
    JWT_CLOCK_SKEW_SECONDS: int = Field(60, ge=0)

    # bcrypt work factor for password hashes
    BCRYPT_ROUNDS: int = Field(12, ge=4, le=16)

    # Lifetime of the one-time code sent by /auth/forgot-password
    PASSWORD_RESET_OTP_EXPIRE_MINUTES: int = Field(10, ge=1, le=60)

    # Shared key-value store. Required for multi-instance deployments:
    # blacklist and rate-limit state must be visible to every worker.
    REDIS_URL: Optional[str] = None
    # Connect/read timeout for Redis commands, in seconds
    REDIS_SOCKET_TIMEOUT: float = Field(0.25, gt=0)

    # Token blacklist backend: "auto" picks redis when REDIS_URL is set
    TOKEN_BLACKLIST_BACKEND: BlacklistBackend = BlacklistBackend.AUTO
    BLACKLIST_SWEEP_INTERVAL_SECONDS: int = Field(300, ge=1)

    # Rate Limiting (fixed window)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_GLOBAL_PERMIT_LIMIT: int = Field(100, ge=1)
    RATE_LIMIT_GLOBAL_WINDOW_SECONDS: int = Field(60, ge=1)
    # JSON list, e.g. [{"name": "auth-strict", "path_pattern": "/api/auth/login",
    #                   "permit_limit": 5, "window_seconds": 60}]
    RATE_LIMIT_RULES: List[RateLimitRule] = Field(default_factory=_default_rate_limit_rules)

    # Trusted proxy networks (comma-separated CIDR notation)
    # SECURITY: Only IPs from these networks are trusted to set X-Forwarded-For headers
    TRUSTED_PROXIES: Optional[str] = None

    # Comma-separated list of allowed origins
    CORS_ALLOWED_ORIGINS: str = ""

    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.APP_MODE == AppMode.PROD

    @property
    def effective_blacklist_backend(self) -> BlacklistBackend:
        """Resolve AUTO to a concrete blacklist backend."""
        if self.TOKEN_BLACKLIST_BACKEND == BlacklistBackend.AUTO:
            return BlacklistBackend.REDIS if self.REDIS_URL else BlacklistBackend.MEMORY
        return self.TOKEN_BLACKLIST_BACKEND

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Get allowed CORS origins.

        SECURITY: never returns ["*"]; production requires explicit
        CORS_ALLOWED_ORIGINS.
        """
        origins = []

        if self.APP_MODE == AppMode.DEV:
            origins = [
                "http://localhost:3000",
                "http://127.0.0.1:3000",
            ]

        if self.CORS_ALLOWED_ORIGINS:
            custom_origins = [
                o.strip() for o in self.CORS_ALLOWED_ORIGINS.split(",") if o.strip()
            ]
            origins.extend(custom_origins)

        if not origins and self.APP_MODE == AppMode.PROD:
            logger.warning(
                "SECURITY WARNING: No CORS_ALLOWED_ORIGINS configured in production. "
                "Cross-origin requests will be blocked."
            )

        return origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env variables


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    SECURITY: This function ensures critical security settings are properly
    configured in production environments.
    """
    if settings.REDIS_URL is None and settings.TOKEN_BLACKLIST_BACKEND == BlacklistBackend.REDIS:
        error_msg = "TOKEN_BLACKLIST_BACKEND=redis requires REDIS_URL to be set."
        logger.critical(error_msg)
        raise ValueError(error_msg)

    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if DEBUG is enabled in production
        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Debug mode exposes sensitive information in error responses. "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if not settings.TRUSTED_PROXIES:
            logger.warning(
                "TRUSTED_PROXIES not configured in production. "
                "If behind a reverse proxy, rate limiting will see the proxy IP. "
                "Set TRUSTED_PROXIES to your proxy's IP range."
            )

        # Revocation and rate-limit state are instance-local without Redis
        if not settings.REDIS_URL:
            logger.warning(
                "REDIS_URL not configured in production. "
                "Token blacklist and rate limiting are NOT shared across workers. "
                "Logout will only be effective on the worker that handled it."
            )

    return settings


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    This function validates settings on first access and raises errors
    for critical misconfigurations.
    """
    settings = Settings()
    return _validate_settings(settings)
