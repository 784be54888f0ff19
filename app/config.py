from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Storage: "memory" keeps everything in-process, "postgres" uses the pool
    STORAGE_BACKEND: Literal["memory", "postgres"] = "memory"
    DATABASE_URL: str | None = None

    # Events: "memory" records events in-process, "redis" publishes to a channel
    EVENT_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str | None = None
    EVENT_CHANNEL: str = "progression-events"

    # Profile service that owns user interests; unset keeps them in-process
    PROFILE_SERVICE_URL: str | None = None

    # Auth settings (tokens are issued by the identity provider)
    JWT_SECRET: str | None = None
    JWT_JWKS_URL: str | None = None
    JWT_AUDIENCE: str = "authenticated"
    JWT_ALGORITHM: str = "HS256"

    # Request context
    TRUST_X_FORWARDED_FOR: bool = False
    TRUSTED_PROXY_IPS: list[str] = []

    # =================================================================
    # VOTING ROUND SETTINGS
    # =================================================================
    VOTING_WINDOW_HOURS: float = 24.0
    VOTING_OPTION_COUNT: int = 3
    MAX_EMPTY_ROUND_REOPENS: int = 1
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = 60.0

    # =================================================================
    # DATABASE POOL SETTINGS
    # =================================================================
    DB_POOL_MIN_SIZE: int = 2
    DB_POOL_MAX_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def voting_option_count(self) -> int:
        """Number of candidates offered per round, clamped to the 2-5 range."""
        return max(2, min(5, self.VOTING_OPTION_COUNT))

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            config.update(
                {
                    "min_size": 1,
                    "max_size": 4,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
