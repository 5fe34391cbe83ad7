import os
from functools import lru_cache
from typing import Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

_OPTIONAL_VARIABLES = (
    "PUBLIC_BASE_URL",
    "BUCKET_MINUTES",
    "BUCKET_GRACE_SECONDS",
    "RAW_RETENTION_MINUTES",
    "RAW_HARD_CEILING_MINUTES",
    "STALE_WINDOW_MINUTES",
    "TOKEN_EXPIRY_HOURS",
    "SNOOZE_TIMEZONE",
    "DELIVERY_MAX_ATTEMPTS",
    "AGGREGATION_ESCALATE_AFTER",
    "WORKER_ENABLED",
    "WORKER_TICK_SECONDS",
    "UDP_PORT",
    "DASHBOARD_ALLOWED_ORIGINS",
)


class Settings(BaseModel):
    database_url: str = Field(..., alias="DATABASE_URL")
    ingest_service_token: str = Field(..., alias="INGEST_SERVICE_TOKEN")
    admin_token: str = Field(..., alias="ADMIN_TOKEN")
    environment: Literal["development", "production", "test"] = Field(default="development", alias="APP_ENV")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    dashboard_allowed_origins: List[str] = Field(default_factory=list, alias="DASHBOARD_ALLOWED_ORIGINS")

    bucket_minutes: int = Field(default=10, alias="BUCKET_MINUTES", ge=1, le=60)
    bucket_grace_seconds: int = Field(default=60, alias="BUCKET_GRACE_SECONDS", ge=0)
    raw_retention_minutes: int = Field(default=180, alias="RAW_RETENTION_MINUTES", ge=1)
    raw_hard_ceiling_minutes: int = Field(default=1440, alias="RAW_HARD_CEILING_MINUTES", ge=1)
    stale_window_minutes: int = Field(default=30, alias="STALE_WINDOW_MINUTES", ge=1)

    token_expiry_hours: int = Field(default=24, alias="TOKEN_EXPIRY_HOURS", ge=1)
    snooze_timezone: str = Field(default="UTC", alias="SNOOZE_TIMEZONE")
    delivery_max_attempts: int = Field(default=5, alias="DELIVERY_MAX_ATTEMPTS", ge=1)
    aggregation_escalate_after: int = Field(default=5, alias="AGGREGATION_ESCALATE_AFTER", ge=1)

    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_tick_seconds: int = Field(default=60, alias="WORKER_TICK_SECONDS", ge=1)
    udp_port: Optional[int] = Field(default=None, alias="UDP_PORT")

    @field_validator("snooze_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as err:
            raise ValueError(f"Unknown SNOOZE_TIMEZONE '{value}'") from err
        return value

    @field_validator("dashboard_allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, value):
        if value in (None, ""):
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        raise ValueError("Unsupported DASHBOARD_ALLOWED_ORIGINS type")

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_retention(self) -> "Settings":
        if self.raw_retention_minutes < self.bucket_minutes:
            raise ValueError("RAW_RETENTION_MINUTES must cover at least one bucket")
        if self.raw_hard_ceiling_minutes < self.raw_retention_minutes:
            raise ValueError("RAW_HARD_CEILING_MINUTES must not be shorter than RAW_RETENTION_MINUTES")
        # An open downtime window only hears from its device once per closed bucket.
        bucket_cycle_seconds = self.bucket_minutes * 60 + self.bucket_grace_seconds + self.worker_tick_seconds
        if self.stale_window_minutes * 60 <= bucket_cycle_seconds:
            raise ValueError(
                "STALE_WINDOW_MINUTES must exceed BUCKET_MINUTES plus BUCKET_GRACE_SECONDS plus WORKER_TICK_SECONDS"
            )
        return self

    @staticmethod
    def _normalize_database_url(url: str) -> str:
        if url.startswith("postgres://"):
            return "postgresql+psycopg://" + url[len("postgres://") :]
        if url.startswith("postgresql://") and "+psycopg" not in url:
            return "postgresql+psycopg://" + url[len("postgresql://") :]
        if url.startswith("postgresql+psycopg2://"):
            return "postgresql+psycopg://" + url[len("postgresql+psycopg2://") :]
        return url

    @staticmethod
    def _optional_env(name: str) -> Optional[str]:
        value = os.getenv(name)
        if value in (None, ""):
            return None
        return value.strip()

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            optional: Dict[str, str] = {}
            for name in _OPTIONAL_VARIABLES:
                value = cls._optional_env(name)
                if value is not None:
                    optional[name] = value
            database_url = cls._normalize_database_url(os.environ["DATABASE_URL"])
            return cls(
                DATABASE_URL=database_url,
                INGEST_SERVICE_TOKEN=os.environ["INGEST_SERVICE_TOKEN"],
                ADMIN_TOKEN=os.environ["ADMIN_TOKEN"],
                APP_ENV=os.getenv("APP_ENV", "development").lower(),
                **optional,
            )
        except ValidationError as err:
            raise RuntimeError(f"Configuration error: {err}") from err
        except KeyError as missing:
            raise RuntimeError(f"Missing required environment variable: {missing}") from missing


@lru_cache()
def get_settings() -> Settings:
    """
    Cached settings accessor so the app parses environment variables exactly once.
    """
    return Settings.from_env()
