# backend/app/core/config.py
"""
Application configuration using pydantic-settings.

Security considerations:
- No hardcoded secrets in production (SECRET_KEY must be set via env)
- CORS_ORIGINS parsed from comma-separated env var, never defaults to "*"
- Database URLs normalized for async drivers automatically
- Stack traces only rendered in error bodies when ENVIRONMENT=development
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./crypticstorage.db"

_ASYNC_SCHEMES = (
    ("postgres://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("sqlite:///", "sqlite+aiosqlite:///"),
)

CACHE_BACKENDS = ("none", "memory", "redis")


class Settings(BaseSettings):
    """
    Strictly typed application settings.

    Priority for loading:
    1. Environment variables (highest priority)
    2. .env file (via pydantic-settings)
    3. Default values (lowest priority, dev-safe only)
    """

    # ─────────────────────────────────────────────────────────────
    # Application metadata
    # ─────────────────────────────────────────────────────────────
    PROJECT_NAME: str = "CrypticStorage"
    PROJECT_VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # ─────────────────────────────────────────────────────────────
    # Environment mode
    # "development" exposes tracebacks in error responses
    # ─────────────────────────────────────────────────────────────
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # ─────────────────────────────────────────────────────────────
    # Security: JWT + server-side sessions
    # SECRET_KEY MUST be set in production via environment variable
    # ─────────────────────────────────────────────────────────────
    SECRET_KEY: str = "INSECURE_DEV_KEY_CHANGE_IN_PRODUCTION"
    ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "crypticstorage"
    SESSION_EXPIRE_MINUTES: int = 7 * 24 * 60
    SESSION_CACHE_TTL_SECONDS: int = 300
    # Minimum gap between last_activity writes for cache-served requests
    SESSION_TOUCH_INTERVAL_SECONDS: int = 60

    # ─────────────────────────────────────────────────────────────
    # Rate limiting
    # Per-IP request limits (slowapi, in-process memory store) plus a
    # durable login lockout counted from audited failures.
    # LOGIN_MAX_FAILURES <= 0 disables the lockout.
    # ─────────────────────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = True
    LOGIN_MAX_FAILURES: int = 10
    LOGIN_FAILURE_WINDOW_MINUTES: int = 15

    # ─────────────────────────────────────────────────────────────
    # Two-factor authentication
    # TOTP_ENCRYPTION_KEY: urlsafe base64 Fernet key. When empty a key
    # is derived from SECRET_KEY with HKDF.
    # ─────────────────────────────────────────────────────────────
    TOTP_ISSUER: str = "CrypticStorage"
    TOTP_ENCRYPTION_KEY: Optional[str] = None

    # ─────────────────────────────────────────────────────────────
    # Database Configuration
    # Priority: DATABASE_URL env var → SQLite fallback for local dev
    # ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = DEFAULT_DATABASE_URL

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def normalize_database_url(cls, v: Optional[str]) -> str:
        """
        Rewrite sync driver schemes to their async drivers
        (postgres:// and postgresql:// to asyncpg, sqlite:/// to aiosqlite).
        """
        if v is None:
            return DEFAULT_DATABASE_URL

        url = v.strip()
        for prefix, replacement in _ASYNC_SCHEMES:
            if url.startswith(prefix):
                return replacement + url[len(prefix):]
        return url

    # MUST be False in production to prevent SQL query exposure
    DATABASE_ECHO: bool = False

    # ─────────────────────────────────────────────────────────────
    # Storage accounting and blob store
    # ─────────────────────────────────────────────────────────────
    DEFAULT_STORAGE_QUOTA: int = 5 * 1024 * 1024 * 1024
    BLOB_STORAGE_ROOT: str = "./storage"
    CHARGE_VERSION_STORAGE: bool = False
    MAX_FOLDER_DEPTH: int = 100

    # ─────────────────────────────────────────────────────────────
    # Cache accelerator (advisory only)
    # CACHE_BACKEND: "none" | "memory" | "redis"
    # "memory" is only safe with a single worker process
    # ─────────────────────────────────────────────────────────────
    CACHE_BACKEND: str = "none"
    REDIS_URL: Optional[str] = None
    SHARE_CACHE_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # ─────────────────────────────────────────────────────────────
    # Audit retention (maintenance task)
    # ─────────────────────────────────────────────────────────────
    AUDIT_RETENTION_DAYS: int = 90

    # ─────────────────────────────────────────────────────────────
    # CORS Configuration
    # Empty string → empty list (NOT "*" for security)
    # ─────────────────────────────────────────────────────────────
    CORS_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173"

    @property
    def BACKEND_CORS_ORIGINS(self) -> List[str]:
        """Allowed origins; blank entries dropped, so "" disables CORS."""
        origins = (self.CORS_ORIGINS or "").split(",")
        return [o.strip() for o in origins if o.strip()]

    @field_validator("CACHE_BACKEND")
    @classmethod
    def check_cache_backend(cls, v: str) -> str:
        backend = v.strip().lower()
        if backend not in CACHE_BACKENDS:
            raise ValueError(f"CACHE_BACKEND must be one of {', '.join(CACHE_BACKENDS)}")
        return backend

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database (local development)."""
        return "sqlite" in self.DATABASE_URL.lower()


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, read from the environment once."""
    return Settings()
