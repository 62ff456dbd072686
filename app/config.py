"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="AniRec", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=5000, alias="PORT")

    api_base_url: str = Field(
        default="http://localhost:5000",
        alias="API_URL",
        validation_alias=AliasChoices("API_URL", "EXPRESS_URI", "NEXT_PUBLIC_API_URL"),
    )
    request_timeout_seconds: float = Field(
        default=20.0, alias="REQUEST_TIMEOUT", gt=0, le=300
    )
    auth_settle_delay_seconds: float = Field(
        default=0.2, alias="AUTH_SETTLE_DELAY", ge=0, le=5
    )
    session_token_file: Path | None = Field(default=None, alias="SESSION_TOKEN_FILE")

    anilist_api_url: HttpUrl = Field(
        default="https://graphql.anilist.co", alias="ANILIST_API_URL"
    )

    gemini_api_key: str | None = Field(default=None, alias="GOOGLE_GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_API_URL",
    )

    jwt_secret: str | None = Field(default=None, alias="JWT_SECRET")
    jwt_refresh_secret: str | None = Field(default=None, alias="JWT_REFRESH_SECRET")
    access_token_ttl_seconds: int = Field(
        default=900, alias="ACCESS_TOKEN_TTL", ge=60
    )
    refresh_token_ttl_seconds: int = Field(
        default=604_800, alias="REFRESH_TOKEN_TTL", ge=3_600
    )
    encryption_key: str | None = Field(default=None, alias="ENCRYPTION_KEY")

    app_url: str = Field(
        default="http://localhost:3000",
        alias="APP_URL",
        validation_alias=AliasChoices("APP_URL", "NEXT_PUBLIC_APP_URL"),
    )
    google_client_id: str | None = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: str | None = Field(default=None, alias="GOOGLE_CLIENT_SECRET")
    github_client_id: str | None = Field(default=None, alias="GITHUB_CLIENT_ID")
    github_client_secret: str | None = Field(default=None, alias="GITHUB_CLIENT_SECRET")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("api_base_url", "app_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value: object) -> object:
        """Normalise base URLs so paths can be appended verbatim."""

        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator(
        "gemini_api_key",
        "jwt_secret",
        "jwt_refresh_secret",
        "encryption_key",
        "google_client_id",
        "google_client_secret",
        "github_client_id",
        "github_client_secret",
        mode="before",
    )
    @classmethod
    def _blank_as_missing(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("encryption_key")
    @classmethod
    def _check_encryption_key(cls, value: str | None) -> str | None:
        if value is not None and len(value) < 32:
            raise ValueError("ENCRYPTION_KEY must be at least 32 characters long")
        return value

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
