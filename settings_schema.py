from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ValidationError, field_validator


class SettingsSchema(BaseModel):
    environment: str = "development"
    db_path: str = "reptrack.db"
    timezone: str = "UTC"
    jwt_secret: str = "dev-jwt-secret-change-in-production"
    token_ttl_days: int = 7
    app_url: str = "http://localhost:3000"
    google_client_id: str = ""
    google_client_secret: str = ""
    dev_user_email: str = "test@example.com"

    @field_validator("environment")
    @classmethod
    def _known_environment(cls, value: str) -> str:
        if value not in ("development", "test", "production"):
            raise ValueError("environment must be development, test or production")
        return value

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone: {value}")
        return value

    @field_validator("token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token_ttl_days must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
