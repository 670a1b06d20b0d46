import json
from functools import lru_cache
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ALLOWED_ENV_FIELD_NAMES = frozenset(
    {
        "app_name",
        "app_env",
        "app_version",
        "api_prefix",
        "allowed_origins",
        "scheduling_store",
        "mongodb_uri",
        "mongodb_db_name",
        "mongodb_schedules_collection",
        "mongodb_blocked_dates_collection",
        "mongodb_events_collection",
        "mongodb_meetings_collection",
        "mongodb_slot_reservations_collection",
        "mongodb_connect_timeout_ms",
        "slot_reservation_ttl_minutes",
        "max_slot_range_days",
        "calendar_provider",
        "calendar_degraded_mode_enabled",
        "google_calendar_api_token",
        "google_calendar_refresh_token",
        "google_calendar_client_id",
        "google_calendar_client_secret",
        "google_calendar_ids_by_expert",
        "google_calendar_api_timeout_seconds",
    },
)


class Settings(BaseSettings):
    app_name: str = "Eleva Scheduling API"
    app_env: str = "development"
    app_version: str = "0.1.0"
    api_prefix: str = "/api"
    allowed_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    scheduling_store: str = "memory"
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "eleva_scheduling"
    mongodb_schedules_collection: str = "schedules"
    mongodb_blocked_dates_collection: str = "blocked_dates"
    mongodb_events_collection: str = "events"
    mongodb_meetings_collection: str = "meetings"
    mongodb_slot_reservations_collection: str = "slot_reservations"
    mongodb_connect_timeout_ms: int = 2000
    slot_reservation_ttl_minutes: int = 15
    max_slot_range_days: int = 62
    calendar_provider: str = "none"
    calendar_degraded_mode_enabled: bool = True
    google_calendar_api_token: str = ""
    google_calendar_refresh_token: str = ""
    google_calendar_client_id: str = ""
    google_calendar_client_secret: str = ""
    google_calendar_ids_by_expert: Annotated[dict[str, str], NoDecode] = {}
    google_calendar_api_timeout_seconds: float = 10.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def _filter_allowed_env_fields(source):
            return {
                field_name: raw_value
                for field_name, raw_value in source().items()
                if field_name in ALLOWED_ENV_FIELD_NAMES
            }

        return (
            init_settings,
            lambda: _filter_allowed_env_fields(env_settings),
            lambda: _filter_allowed_env_fields(dotenv_settings),
            file_secret_settings,
        )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("google_calendar_ids_by_expert", mode="before")
    @classmethod
    def parse_google_calendar_ids(cls, value: str | dict[str, str]) -> dict[str, str]:
        if isinstance(value, str):
            if not value.strip():
                return {}
            value = json.loads(value)
        if not isinstance(value, dict):
            raise ValueError("google_calendar_ids_by_expert must be a JSON object.")
        return {
            str(expert_id).strip(): str(calendar_id).strip()
            for expert_id, calendar_id in value.items()
            if str(expert_id).strip() and str(calendar_id).strip()
        }

    @field_validator("scheduling_store", "calendar_provider", mode="before")
    @classmethod
    def normalize_backend_name(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("google_calendar_api_timeout_seconds", mode="before")
    @classmethod
    def normalize_google_calendar_timeout(cls, value: float | str) -> float:
        parsed_value = float(value)
        if parsed_value <= 0:
            return 10.0
        return parsed_value

    @field_validator("slot_reservation_ttl_minutes", mode="before")
    @classmethod
    def normalize_reservation_ttl(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 15
        return parsed_value

    @field_validator("max_slot_range_days", mode="before")
    @classmethod
    def normalize_max_slot_range_days(cls, value: int | str) -> int:
        parsed_value = int(value)
        if parsed_value <= 0:
            return 62
        return parsed_value


@lru_cache
def get_settings() -> Settings:
    return Settings()
