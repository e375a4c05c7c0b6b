"""Runtime settings for the lead ingestor, sourced from the environment."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL", min_length=1)
    upload_dir: Path = Field(Path("./uploads"), alias="UPLOAD_DIR")
    processed_dir: Path = Field(Path("./processed"), alias="PROCESSED_DIR")
    failed_dir: Path = Field(Path("./failed"), alias="FAILED_DIR")
    lock_file: Path = Field(Path("./process.lock"), alias="LOCK_FILE")
    file_glob: str = Field("*.csv", alias="FILE_GLOB")

    batch_size: int = Field(1000, alias="BATCH_SIZE", ge=1)
    max_execution_seconds: int = Field(3600, alias="MAX_EXECUTION_SECONDS", ge=1)
    max_retries: int = Field(5, alias="MAX_RETRIES", ge=1)
    retry_initial_delay: float = Field(0.5, alias="RETRY_INITIAL_DELAY", gt=0)
    retry_max_delay: float = Field(30.0, alias="RETRY_MAX_DELAY", gt=0)
    retry_jitter: float = Field(0.5, alias="RETRY_JITTER", ge=0)
    persist_workers: int = Field(1, alias="PERSIST_WORKERS", ge=1)
    phone_queue_step: int = Field(11, alias="PHONE_QUEUE_STEP")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("database_url")
    @classmethod
    def _strip_driver_suffix(cls, value: str) -> str:
        # psycopg wants a libpq URL, not the SQLAlchemy dialect form.
        return value.strip().replace("postgresql+psycopg://", "postgresql://", 1)

    @model_validator(mode="after")
    def _check_retry_window(self) -> "Settings":
        if self.retry_max_delay < self.retry_initial_delay:
            raise ValueError("RETRY_MAX_DELAY must be >= RETRY_INITIAL_DELAY")
        return self


def load_settings(**overrides: object) -> Settings:
    """Build settings, converting validation problems into ``ConfigurationError``."""

    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance."""

    return load_settings()


def reset_settings() -> None:
    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "load_settings", "reset_settings"]
