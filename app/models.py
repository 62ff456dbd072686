"""Pydantic models describing API payloads."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .utils import coerce_timestamp, utcnow

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant", "system"]
AnimeStatus = Literal["CURRENT", "PLANNING", "COMPLETED", "DROPPED", "PAUSED", "REPEATING"]

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
API_KEY_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _message_id() -> str:
    return str(int(time.time() * 1000))


class ApiResponse(BaseModel):
    """Canonical ``{success, data?, error?, message?}`` envelope."""

    success: bool = False
    data: Any = None
    error: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, data: Any = None, *, message: str | None = None) -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str) -> "ApiResponse":
        return cls(success=False, error=error)

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON body for the envelope, omitting empty members."""

        return self.model_dump(mode="json", exclude_none=True)


_DATETIME = TypeAdapter(datetime)


def _optional_datetime(value: object) -> object:
    """Return ``None`` for timestamps that cannot be read instead of failing."""

    if value is None or value == "":
        return None
    try:
        return _DATETIME.validate_python(value)
    except ValidationError:
        logger.debug("Ignoring unreadable timestamp %r", value)
        return None


class OAuthProvider(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    provider_id: str | None = Field(default=None, alias="providerId")
    email: str | None = None
    connected_at: datetime | None = Field(default=None, alias="connectedAt")

    @field_validator("connected_at", mode="before")
    @classmethod
    def _lenient_connected_at(cls, value: object) -> object:
        return _optional_datetime(value)


class User(BaseModel):
    """Authenticated user in its canonical shape.

    The identifier may arrive as ``_id`` or ``id``. It is always held as
    :attr:`id` and serialised back as ``_id``.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("_id", "id"),
        serialization_alias="_id",
    )
    email: str
    username: str
    oauth_providers: list[OAuthProvider] | None = Field(
        default=None, alias="oauthProviders"
    )
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        if value is None or value == "":
            return None
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("oauth_providers", mode="before")
    @classmethod
    def _known_providers(cls, value: object) -> object:
        """Keep the provider entries that can be read and drop the rest."""

        if not isinstance(value, list):
            return None
        providers: list[OAuthProvider] = []
        for entry in value:
            try:
                providers.append(OAuthProvider.model_validate(entry))
            except ValidationError:
                logger.debug("Ignoring unreadable OAuth provider entry %r", entry)
        return providers

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _lenient_timestamps(cls, value: object) -> object:
        return _optional_datetime(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TokenPair(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    refresh_token: str | None = Field(default=None, alias="refreshToken")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AuthResult(BaseModel):
    """Outcome of a login or signup attempt."""

    success: bool
    user: User | None = None
    tokens: TokenPair | None = None
    error: str | None = None


class ChatMessage(BaseModel):
    """Single chat message as shown in the conversation log."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=_message_id)
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_timestamp(cls, data: Any) -> Any:
        """Prefer ``createdAt`` over ``timestamp`` and coerce whatever arrives."""

        if not isinstance(data, dict):
            return data
        payload = dict(data)
        raw = payload.pop("createdAt", None)
        if not raw:
            raw = payload.get("timestamp")
        payload["timestamp"] = coerce_timestamp(raw)
        if "_id" in payload and "id" not in payload:
            payload["id"] = payload.pop("_id")
        if isinstance(payload.get("id"), int):
            payload["id"] = str(payload["id"])
        return payload

    @property
    def conversation_id(self) -> str | None:
        if not self.metadata:
            return None
        value = self.metadata.get("conversationId")
        return str(value) if value else None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    conversation_id: str | None = Field(default=None, alias="conversationId")
    include_anime_context: bool | None = Field(
        default=None, alias="includeAnimeContext"
    )

    @field_validator("message", mode="before")
    @classmethod
    def _check_message(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        value = value.strip()
        if not value:
            raise ValueError("Message cannot be empty")
        if len(value) > 2000:
            raise ValueError("Message must be less than 2000 characters")
        return value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _check_email(value: object) -> object:
    if not isinstance(value, str):
        return value
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    if len(value) > 255:
        raise ValueError("Invalid email address")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: object) -> object:
        return _check_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: object) -> object:
        if isinstance(value, str) and not value:
            raise ValueError("Password is required")
        return value


class SignupRequest(BaseModel):
    email: str
    username: str
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: object) -> object:
        return _check_email(value)

    @field_validator("username", mode="before")
    @classmethod
    def _validate_username(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        if len(value) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(value) > 30:
            raise ValueError("Username must be less than 30 characters")
        if not USERNAME_RE.match(value):
            raise ValueError(
                "Username can only contain letters, numbers, and underscores"
            )
        return value

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        if len(value) < 8:
            raise ValueError("Password must be at least 8 characters")
        if len(value) > 128:
            raise ValueError("Password must be less than 128 characters")
        if not re.search(r"[A-Z]", value):
            raise ValueError("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", value):
            raise ValueError("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", value):
            raise ValueError("Password must contain at least one number")
        return value


class ApiKeyRequest(BaseModel):
    """Linked-account credential submission."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey")
    store_permanently: StrictBool = Field(alias="storePermanently")

    @field_validator("api_key", mode="before")
    @classmethod
    def _validate_api_key(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        if len(value) < 20:
            raise ValueError("API key must be at least 20 characters")
        if len(value) > 500:
            raise ValueError("API key is too long")
        if not API_KEY_RE.match(value):
            raise ValueError("Invalid API key format")
        return value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SyncRequest(BaseModel):
    """Public-profile sync request.

    ``anilistUsername`` is accepted as an alternative spelling of
    ``username``. Exactly one of username and user id must be present.
    """

    model_config = ConfigDict(populate_by_name=True)

    force: bool | None = None
    username: str | None = Field(default=None, min_length=1, max_length=50)
    anilist_username: str | None = Field(
        default=None, alias="anilistUsername", min_length=1, max_length=50
    )
    user_id: StrictInt | None = Field(default=None, alias="userId")

    @field_validator("user_id")
    @classmethod
    def _positive_user_id(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("userId must be a positive integer")
        return value

    @model_validator(mode="after")
    def _require_single_target(self) -> "SyncRequest":
        if self.anilist_username and not self.username:
            self.username = self.anilist_username
        if self.username and self.user_id:
            raise ValueError("Cannot provide both username and userId")
        if not (self.username or self.user_id):
            raise ValueError(
                "Either username or userId must be provided to sync a public profile"
            )
        return self

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude_none=True)
        if self.username:
            payload["anilistUsername"] = self.username
        return payload


class Anime(BaseModel):
    """A single entry of a user's synced watch list."""

    model_config = ConfigDict(populate_by_name=True)

    anime_id: int = Field(alias="animeId")
    user_id: str = Field(default="", alias="userId")
    title: str
    title_english: str | None = Field(default=None, alias="titleEnglish")
    title_native: str | None = Field(default=None, alias="titleNative")
    description: str | None = None
    score: float = 0
    status: AnimeStatus | None = None
    progress: int | None = None
    total_episodes: int | None = Field(default=None, alias="totalEpisodes")
    format: str | None = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    cover_image: str | None = Field(default=None, alias="coverImage")
    banner_image: str | None = Field(default=None, alias="bannerImage")
    synced_at: datetime = Field(default_factory=utcnow, alias="syncedAt")


class Recommendation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    anime_id: int = Field(alias="animeId")
    title: str
    score: float
    reason: str
    similarity: float | None = None
