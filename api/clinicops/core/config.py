from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "ClinicOps API"
    database_url: str = (
        "postgresql+psycopg2://clinicops:clinicops@db:5432/clinicops"  # pragma: allowlist secret
    )
    broker_url: str = "redis://redis:6379/0"
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60

    # Required, at least 32 characters (JWT_SECRET).
    jwt_secret: str = Field(min_length=32)
    jwt_issuer: str = "ClinicOps"
    token_ttl_hours: int = 8
    bcrypt_rounds: int = 12

    notifications_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
