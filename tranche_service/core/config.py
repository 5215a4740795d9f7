"""
Application configuration.

Every setting can be overridden by an environment variable of the same name
or a ``.env`` file in the working directory.  Credentials have no defaults.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PG_REQUIRED = ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_SERVER", "POSTGRES_DB")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Tranche Pricing & Funding Service"
    API_V1_STR: str = "/api/v1"
    CORS_ORIGINS: str = "*"  # comma-separated

    # ── Database ──
    # USE_SQLITE switches to an in-memory aiosqlite database (demo and tests).
    USE_SQLITE: bool = False
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SERVER: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: int = 5432
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # ── Logging ──
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    # ── Pricing read-model cache ──
    CACHE_ENABLED: bool = True
    CACHE_TTL: float = Field(default=30.0, gt=0)
    CACHE_MAX_SIZE: int = Field(default=1000, gt=0)

    # ── Database circuit breaker ──
    CB_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    CB_RECOVERY_TIMEOUT: float = Field(default=30.0, gt=0)

    # ── Purchases ──
    # Re-quote attempts after a lost capacity race; 0 surfaces the first conflict.
    PURCHASE_MAX_RETRIES: int = Field(default=3, ge=0)
    PURCHASE_RETRY_BASE_DELAY: float = Field(default=0.05, ge=0)

    # ── Tranche statistics ──
    # Days after today still counted as "upcoming".
    UPCOMING_WINDOW_DAYS: int = Field(default=30, ge=0)

    @model_validator(mode="after")
    def _require_pg_credentials_unless_sqlite(self) -> "Settings":
        if self.USE_SQLITE:
            return self
        missing = [name for name in _PG_REQUIRED if not getattr(self, name)]
        if missing:
            raise ValueError(
                f"PostgreSQL mode requires {', '.join(missing)}. Set them (for example "
                f"in .env) or run against in-memory SQLite:\n"
                f"    USE_SQLITE=true uvicorn tranche_service.main:app"
            )
        return self

    @property
    def DATABASE_URL(self) -> str:
        """Async DSN: aiosqlite in SQLite mode, asyncpg otherwise."""
        if self.USE_SQLITE:
            return "sqlite+aiosqlite://"
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )


settings = Settings()
