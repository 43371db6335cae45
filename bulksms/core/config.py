from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = BASE_DIR / ".env"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    PROJECT_NAME: str = "Bulk SMS Dispatcher"
    API_PREFIX: str = "/api"

    DATABASE_URL: str = Field(...)
    REDIS_URL: Optional[str] = Field(default=None)

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE_PATH: Optional[str] = Field(default=None)
    ENVIRONMENT: str = Field(default="development")

    CORS_ORIGINS: Annotated[list[str], NoDecode] = Field(default_factory=list)

    TERMII_API_KEY: Optional[str] = Field(default=None)
    TERMII_BASE_URL: str = Field(default="https://api.ng.termii.com")
    SMS_SENDER_ID: str = Field(default="N-Alert")
    SMS_DEFAULT_CHANNEL: str = Field(default="dnd")
    SMS_DRY_RUN: bool = Field(default=False)
    GATEWAY_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)
    GATEWAY_BULK_LIMIT: int = Field(default=100, ge=1)

    PHONE_COUNTRY_CODE: str = Field(default="234", pattern=r"^\d{1,4}$")
    PHONE_LOCAL_LENGTH: int = Field(default=10, ge=4, le=14)
    PHONE_TRUNK_PREFIX: str = Field(default="0", pattern=r"^\d$")
    PHONE_COLUMN: Optional[str] = Field(default=None)

    DISPATCH_BATCH_SIZE: int = Field(default=100, ge=1)
    BATCH_DELAY_MS: int = Field(default=2000, ge=0)
    SEND_DELAY_MS: int = Field(default=100, ge=0)

    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=1.0, gt=0)
    RUN_WORKER_IN_PROCESS: bool = Field(default=False)
    # Must outlast the longest campaign, otherwise an active job is redelivered.
    JOB_LOCK_TTL_SECONDS: int = Field(default=3600, ge=1)
    COMPLETED_JOB_RETENTION_SECONDS: int = Field(default=3600, ge=0)
    COMPLETED_JOB_RETENTION_COUNT: int = Field(default=1000, ge=0)
    FAILED_JOB_RETENTION_SECONDS: int = Field(default=86400, ge=0)
    FAILED_BATCH_TTL_SECONDS: int = Field(default=7 * 86400, ge=1)

    PROGRESS_POLL_INTERVAL_MS: int = Field(default=500, ge=1)
    PROGRESS_HEARTBEAT_SECONDS: float = Field(default=30.0, gt=0)
    PROGRESS_CLOSE_GRACE_SECONDS: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            # Handle wildcard (allow all origins)
            v = v.strip().strip('"\'')  # Remove quotes if present
            if v == "*":
                return ["*"]
            # Otherwise split by comma
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def validate_batch_size(self) -> "Settings":
        if self.DISPATCH_BATCH_SIZE > self.GATEWAY_BULK_LIMIT:
            raise ValueError("DISPATCH_BATCH_SIZE must be <= GATEWAY_BULK_LIMIT.")
        return self


load_dotenv(ENV_FILE)


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    return Settings()
