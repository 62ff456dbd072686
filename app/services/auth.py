"""Client-side authentication state and session lifecycle."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError

from ..config import Settings
from ..models import ApiResponse, AuthResult, LoginRequest, SignupRequest, TokenPair, User
from ..utils import first_validation_message, is_no_token_error
from .api_client import ApiClient

logger = logging.getLogger(__name__)

ME_PATH = "/api/auth/me"
LOGIN_PATH = "/api/auth/login"
SIGNUP_PATH = "/api/auth/signup"
LOGOUT_PATH = "/api/auth/logout"


@dataclass(slots=True)
class AuthPayload:
    """User and optional token pair located in an auth response."""

    user: User
    tokens: TokenPair | None = None


def _parse_tokens(value: Any) -> TokenPair | None:
    if not isinstance(value, Mapping):
        return None
    try:
        return TokenPair.model_validate(value)
    except ValidationError:
        return None


def _parse_user(value: Any) -> User | None:
    try:
        return User.model_validate(value)
    except ValidationError:
        return None


def _nested_layout(data: Mapping[str, Any]) -> AuthPayload | None:
    """``{"user": {...}, "tokens": {...}}``"""

    if not isinstance(data.get("user"), Mapping):
        return None
    user = _parse_user(data["user"])
    if user is None:
        return None
    return AuthPayload(user=user, tokens=_parse_tokens(data.get("tokens")))


def _flat_layout(data: Mapping[str, Any]) -> AuthPayload | None:
    """User fields directly on the payload, tokens optionally alongside."""

    if not (data.get("email") and data.get("username")):
        return None
    user = _parse_user(data)
    if user is None:
        return None
    return AuthPayload(user=user, tokens=_parse_tokens(data.get("tokens")))


def _doubly_nested_layout(data: Mapping[str, Any]) -> AuthPayload | None:
    """``{"data": {"user": {...}, "tokens": {...}}}``"""

    inner = data.get("data")
    if not isinstance(inner, Mapping) or not isinstance(inner.get("user"), Mapping):
        return None
    user = _parse_user(inner["user"])
    if user is None:
        return None
    tokens = _parse_tokens(inner.get("tokens")) or _parse_tokens(data.get("tokens"))
    return AuthPayload(user=user, tokens=tokens)


AUTH_LAYOUTS: tuple[Callable[[Mapping[str, Any]], AuthPayload | None], ...] = (
    _nested_layout,
    _flat_layout,
    _doubly_nested_layout,
)


def parse_auth_payload(data: Any) -> AuthPayload | None:
    """Return the first known layout that matches ``data``, else ``None``."""

    if not isinstance(data, Mapping):
        return None
    for layout in AUTH_LAYOUTS:
        parsed = layout(data)
        if parsed is not None:
            return parsed
    return None


class SessionManager:
    """Owns the current user and drives login, signup, logout and refresh.

    Each operation has its own one-shot guard. A second call while the
    first is pending is rejected (or, for ``check_auth``, ignored) without
    touching the network.
    """

    def __init__(
        self,
        settings: Settings,
        api_client: ApiClient,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._api = api_client
        self._tokens = api_client.token_store
        self._sleep = sleep
        self.user: User | None = None
        self.is_loading = True
        self._checking_auth = False
        self._logging_in = False
        self._signing_up = False
        self._alive = True

    @property
    def is_authenticated(self) -> bool:
        return not self.is_loading and self.user is not None

    @property
    def access_token(self) -> str | None:
        return self._tokens.get()

    async def start(self) -> None:
        """Restore any mirrored token and run the initial auth check."""

        if self._tokens.get():
            logger.info("Restored access token from session mirror")
        if self._alive:
            await self.check_auth()

    def close(self, *, discard_mirror: bool = False) -> None:
        """Stop applying results of in-flight checks to this manager.

        With ``discard_mirror`` the token file mirror is removed so the
        session cannot be resumed by a later process.
        """

        self._alive = False
        if discard_mirror:
            self._tokens.discard_mirror()

    async def check_auth(self) -> None:
        if self._checking_auth:
            return

        self._checking_auth = True
        self.is_loading = True
        try:
            response = await self._api.get(ME_PATH)
            if not self._alive:
                return
            user = self._user_from_me(response)
            if user is not None:
                self.user = user
                return
            if response.error and not is_no_token_error(response.error):
                logger.info("Auth check response: %s", response.error)
            else:
                logger.debug("Auth check: not authenticated")
            self.user = None
        finally:
            if self._alive:
                self.is_loading = False
            self._checking_auth = False

    @staticmethod
    def _user_from_me(response: ApiResponse) -> User | None:
        if response.success is not True or not isinstance(response.data, Mapping):
            return None
        raw = response.data.get("user")
        if not isinstance(raw, Mapping):
            return None
        user = _parse_user(raw)
        if user is None:
            logger.warning("Auth check returned an unrecognised user payload")
        return user

    async def login(self, email: str, password: str) -> AuthResult:
        if self._logging_in:
            return AuthResult(success=False, error="Login already in progress")

        self._logging_in = True
        self.is_loading = True
        try:
            response = await self._api.post(
                LOGIN_PATH, {"email": email, "password": password}
            )
            return await self._establish(response, action="Login")
        finally:
            self.is_loading = False
            self._logging_in = False

    async def signup(self, email: str, username: str, password: str) -> AuthResult:
        if self._signing_up:
            return AuthResult(success=False, error="Signup already in progress")

        self._signing_up = True
        self.is_loading = True
        try:
            response = await self._api.post(
                SIGNUP_PATH,
                {"email": email, "username": username, "password": password},
            )
            return await self._establish(response, action="Signup")
        finally:
            self.is_loading = False
            self._signing_up = False

    async def _establish(self, response: ApiResponse, *, action: str) -> AuthResult:
        """Turn a login/signup envelope into session state."""

        if not response.success:
            error = response.error or f"{action} failed"
            logger.warning("%s error: %s", action, error)
            self.user = None
            return AuthResult(success=False, error=error)

        parsed = parse_auth_payload(response.data)
        if parsed is None:
            logger.warning(
                "%s succeeded but no user payload matched a known layout", action
            )
            self.user = None
            return AuthResult(
                success=False,
                error=f"{action} successful but no user data received",
            )

        if parsed.tokens is not None:
            self._tokens.set(parsed.tokens.access_token)
        self.user = parsed.user

        # Give the backend's cookies a moment, then confirm server-side state.
        await self._sleep(self._settings.auth_settle_delay_seconds)
        await self.check_auth()
        return AuthResult(success=True, user=parsed.user, tokens=parsed.tokens)

    async def logout(self) -> None:
        """Notify the backend and always drop local session state."""

        try:
            response = await self._api.post(LOGOUT_PATH)
            if not response.success:
                logger.warning("Logout error: %s", response.error)
        except Exception as exc:
            logger.warning("Logout error: %s", exc)
        finally:
            self.user = None
            self._tokens.clear()

    async def refresh_token(self) -> bool:
        """Mint a new access token. Failure terminates the session."""

        refreshed = await self._api.refresh_access_token()
        if not refreshed:
            logger.info("Token refresh failed, clearing session")
            self.user = None
        return refreshed


async def submit_login(manager: SessionManager, email: str, password: str) -> AuthResult:
    """Validate login form input before handing it to ``manager``."""

    try:
        validated = LoginRequest(email=email, password=password)
    except ValidationError as exc:
        return AuthResult(success=False, error=first_validation_message(exc))
    return await manager.login(validated.email, validated.password)


async def submit_signup(
    manager: SessionManager, email: str, username: str, password: str
) -> AuthResult:
    """Validate signup form input before handing it to ``manager``."""

    try:
        validated = SignupRequest(email=email, username=username, password=password)
    except ValidationError as exc:
        return AuthResult(success=False, error=first_validation_message(exc))
    return await manager.signup(validated.email, validated.username, validated.password)
