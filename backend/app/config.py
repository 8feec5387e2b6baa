from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="../.env",
        case_sensitive=True,
        extra="ignore",
    )
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str

    FRONTEND_URL: str
    CORS_ORIGINS: str = ""
    SESSION_COOKIE_NAME: str = "sb-access-token"

    GOOGLE_SERVICE_ACCOUNT_JSON: str = ""
    GOOGLE_CALENDAR_ID: str = "primary"
    DEFAULT_TIME_ZONE: str = "Asia/Manila"

    SYNC_WINDOW_DAYS_PAST: int = 30
    SYNC_WINDOW_DAYS_AHEAD: int = 365
    SYNC_RATE_LIMIT_SECONDS: int = 5

    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    RATE_LIMIT_API: str = "120/minute"

    @field_validator("DEFAULT_TIME_ZONE")
    @classmethod
    def known_time_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @field_validator("GOOGLE_CALENDAR_ID", mode="before")
    @classmethod
    def empty_calendar_to_primary(cls, v: str | None) -> str:
        return v or "primary"

    @property
    def cors_origins(self) -> list[str]:
        origins = [self.FRONTEND_URL]
        if self.CORS_ORIGINS:
            origins.extend([o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()])
        return list(set(origins))

    @property
    def calendar_enabled(self) -> bool:
        return bool(self.GOOGLE_SERVICE_ACCOUNT_JSON)

    @model_validator(mode="after")
    def validate_production_invariants(self):
        if self.ENVIRONMENT == "production":
            if not self.FRONTEND_URL.startswith("https://"):
                raise ValueError("FRONTEND_URL must be https in production")
            if self.SYNC_WINDOW_DAYS_PAST < 0 or self.SYNC_WINDOW_DAYS_AHEAD <= 0:
                raise ValueError("Sync window must cover a positive range")

        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
