"""Entry point for the FastAPI development backend.

The backend speaks the ``{success, data?, error?, message?}`` envelope the
client services expect. State is kept in ``app.state`` for the lifetime of
the process.
"""

from __future__ import annotations

import json
import logging
import secrets
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Mapping, TypeVar
from urllib.parse import quote

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ValidationError

from .config import Settings, settings
from .models import (
    ApiKeyRequest,
    ApiResponse,
    ChatMessage,
    ChatRequest,
    LoginRequest,
    Recommendation,
    SignupRequest,
    SyncRequest,
    User,
)
from .security import (
    ConfigurationError,
    EncryptionError,
    decrypt_api_key,
    encrypt_api_key,
    extract_token_from_header,
    generate_access_token,
    generate_token_pair,
    hash_api_key,
    hash_password,
    verify_access_token,
    verify_password,
    verify_refresh_token,
)
from .services.anilist import (
    AniListAuthError,
    AniListClient,
    AniListError,
    AniListPrivateProfileError,
    AniListRateLimitError,
    AniListUserNotFoundError,
)
from .services.gemini import GeminiClient, GeminiError
from .utils import first_validation_message, sanitize_string, utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
DEFAULT_HISTORY_LIMIT = 50
MAX_HISTORY_LIMIT = 200

app: FastAPI


class EnvelopeError(Exception):
    """Raised by route helpers to short-circuit with an error envelope."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    app_settings: Settings = fastapi_app.state.settings
    if getattr(fastapi_app.state, "anilist", None) is None:
        anilist_http = await exit_stack.enter_async_context(
            httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
        )
        fastapi_app.state.anilist = AniListClient(app_settings, anilist_http)
    if getattr(fastapi_app.state, "gemini", None) is None:
        gemini_http = await exit_stack.enter_async_context(
            httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        )
        fastapi_app.state.gemini = GeminiClient(app_settings, gemini_http)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await exit_stack.aclose()


def create_app(app_settings: Settings | None = None) -> FastAPI:
    app_settings = app_settings or settings
    fastapi_app = FastAPI(
        title=app_settings.app_name,
        description="Development backend for the anime recommendation chat client",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.app_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    fastapi_app.state.settings = app_settings
    fastapi_app.state.anilist = None
    fastapi_app.state.gemini = None
    fastapi_app.state.users: dict[str, dict[str, Any]] = {}
    fastapi_app.state.chat_history: dict[str, list[ChatMessage]] = {}
    fastapi_app.state.stored_api_keys: dict[str, dict[str, str]] = {}
    fastapi_app.state.session_api_keys: dict[str, str] = {}
    fastapi_app.state.anime_lists: dict[str, list[Any]] = {}

    register_exception_handlers(fastapi_app)
    register_routes(fastapi_app)
    return fastapi_app


def envelope(response: ApiResponse, status_code: int = 200) -> JSONResponse:
    return JSONResponse(response.to_payload(), status_code=status_code)


def register_exception_handlers(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(EnvelopeError)
    async def _envelope_error(_: Request, exc: EnvelopeError) -> JSONResponse:
        return envelope(ApiResponse.fail(exc.message), exc.status_code)

    @fastapi_app.exception_handler(AniListError)
    async def _anilist_error(_: Request, exc: AniListError) -> JSONResponse:
        status_code = 500
        if isinstance(exc, AniListUserNotFoundError):
            status_code = 404
        elif isinstance(exc, AniListPrivateProfileError):
            status_code = 403
        elif isinstance(exc, AniListAuthError):
            status_code = 401
        elif isinstance(exc, AniListRateLimitError):
            status_code = 429
        if status_code == 500:
            logger.warning("AniList error: %s", exc)
        return envelope(ApiResponse.fail(str(exc)), status_code)

    @fastapi_app.exception_handler(GeminiError)
    async def _gemini_error(_: Request, exc: GeminiError) -> JSONResponse:
        logger.warning("Chat generation failed: %s", exc)
        return envelope(ApiResponse.fail(str(exc)), 500)

    @fastapi_app.exception_handler(ConfigurationError)
    async def _configuration_error(_: Request, exc: ConfigurationError) -> JSONResponse:
        logger.warning("Server misconfiguration: %s", exc)
        return envelope(ApiResponse.fail(str(exc)), 500)


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise EnvelopeError(400, "Invalid JSON body") from None
    if not isinstance(payload, dict):
        raise EnvelopeError(400, "Invalid payload")
    return payload


def _validate(model: type[ModelT], payload: Mapping[str, Any]) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise EnvelopeError(400, first_validation_message(exc)) from exc


def _set_auth_cookies(
    response: JSONResponse,
    app_settings: Settings,
    access_token: str,
    refresh_token: str | None = None,
) -> None:
    secure = app_settings.environment == "production"
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=app_settings.access_token_ttl_seconds,
        httponly=True,
        secure=secure,
        samesite="strict",
    )
    if refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            refresh_token,
            max_age=app_settings.refresh_token_ttl_seconds,
            httponly=True,
            secure=secure,
            samesite="strict",
        )


def _current_user(request: Request) -> User:
    """Resolve the caller from the bearer header, then the access cookie."""

    token = extract_token_from_header(request.headers.get("authorization"))
    if not token:
        token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise EnvelopeError(401, "Not authenticated")

    claims = verify_access_token(request.app.state.settings, token)
    record = request.app.state.users.get(str(claims.get("userId"))) if claims else None
    if record is None:
        raise EnvelopeError(401, "Invalid or expired token")
    return record["user"]


def _auth_success(app_settings: Settings, user: User) -> JSONResponse:
    tokens = generate_token_pair(app_settings, user)
    body = ApiResponse.ok({"user": user.to_payload(), "tokens": tokens.to_payload()})
    response = envelope(body)
    _set_auth_cookies(response, app_settings, tokens.access_token, tokens.refresh_token)
    return response


def _history_limit(raw: str | None) -> int:
    if raw is None:
        return DEFAULT_HISTORY_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        raise EnvelopeError(400, "limit must be an integer") from None
    return max(1, min(limit, MAX_HISTORY_LIMIT))


def register_routes(fastapi_app: FastAPI) -> None:
    state = fastapi_app.state

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/auth/signup")
    async def signup(request: Request) -> JSONResponse:
        form = _validate(SignupRequest, await _read_json(request))
        users: dict[str, dict[str, Any]] = state.users
        for record in users.values():
            existing: User = record["user"]
            if existing.email.lower() == form.email.lower():
                raise EnvelopeError(400, "Email already registered")
            if existing.username.lower() == form.username.lower():
                raise EnvelopeError(400, "Username already taken")

        now = utcnow()
        user = User(
            id=secrets.token_hex(12),
            email=form.email,
            username=form.username,
            created_at=now,
            updated_at=now,
        )
        users[user.id] = {"user": user, "password_hash": hash_password(form.password)}
        logger.info("Registered user %s", user.id)
        return _auth_success(state.settings, user)

    @fastapi_app.post("/api/auth/login")
    async def login(request: Request) -> JSONResponse:
        form = _validate(LoginRequest, await _read_json(request))
        for record in state.users.values():
            user: User = record["user"]
            if user.email.lower() != form.email.lower():
                continue
            if verify_password(form.password, record["password_hash"]):
                logger.info("User %s logged in", user.id)
                return _auth_success(state.settings, user)
            break
        raise EnvelopeError(401, "Invalid email or password")

    @fastapi_app.get("/api/auth/me")
    async def me(request: Request) -> JSONResponse:
        user = _current_user(request)
        return envelope(ApiResponse.ok({"user": user.to_payload()}))

    @fastapi_app.post("/api/auth/refresh")
    async def refresh(request: Request) -> JSONResponse:
        token = request.cookies.get(REFRESH_COOKIE)
        if not token:
            body = await request.body()
            if body:
                payload = await _read_json(request)
                value = payload.get("refreshToken")
                token = value if isinstance(value, str) and value else None
        if not token:
            raise EnvelopeError(401, "No refresh token")

        claims = verify_refresh_token(state.settings, token)
        record = state.users.get(str(claims.get("userId"))) if claims else None
        if record is None:
            raise EnvelopeError(401, "Invalid refresh token")

        access_token = generate_access_token(state.settings, record["user"])
        response = envelope(ApiResponse.ok({"tokens": {"accessToken": access_token}}))
        _set_auth_cookies(response, state.settings, access_token)
        logger.info("Issued refreshed access token for user %s", record["user"].id)
        return response

    @fastapi_app.post("/api/auth/logout")
    async def logout() -> JSONResponse:
        response = envelope(ApiResponse.ok(message="Logged out successfully"))
        response.delete_cookie(ACCESS_COOKIE)
        response.delete_cookie(REFRESH_COOKIE)
        return response

    @fastapi_app.get("/api/auth/oauth/{provider}")
    async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
        params = request.query_params
        code = params.get("code")
        state_token = params.get("state")
        error = params.get("error")
        logger.info(
            "OAuth callback for %s (code=%s, state=%s, error=%s)",
            provider,
            bool(code),
            bool(state_token),
            error,
        )
        if error:
            return RedirectResponse(f"/auth/login?error={quote(error, safe='')}", status_code=307)
        if not code or not state_token:
            return RedirectResponse("/auth/login?error=oauth_failed", status_code=307)
        return RedirectResponse("/chat", status_code=307)

    @fastapi_app.post("/api/chat")
    async def chat(request: Request) -> JSONResponse:
        user = _current_user(request)
        form = _validate(ChatRequest, await _read_json(request))
        history: list[ChatMessage] = state.chat_history.setdefault(user.id, [])
        anime = state.anime_lists.get(user.id, []) if form.include_anime_context else []

        gemini: GeminiClient = state.gemini
        reply_text = await gemini.generate(sanitize_string(form.message), history, anime)

        conversation_id = form.conversation_id or f"conv-{user.id}"
        metadata = {"conversationId": conversation_id}
        history.append(ChatMessage(role="user", content=form.message, metadata=metadata))
        reply = ChatMessage(role="assistant", content=reply_text, metadata=metadata)
        history.append(reply)
        return envelope(ApiResponse.ok({"message": reply.to_payload()}))

    @fastapi_app.get("/api/chat/history")
    async def chat_history(request: Request) -> JSONResponse:
        user = _current_user(request)
        limit = _history_limit(request.query_params.get("limit"))
        history = state.chat_history.get(user.id, [])
        messages = [
            {**message.to_payload(), "createdAt": message.timestamp.isoformat()}
            for message in history[-limit:]
        ]
        return envelope(ApiResponse.ok({"messages": messages}))

    @fastapi_app.delete("/api/chat/history")
    async def clear_chat_history(request: Request) -> JSONResponse:
        user = _current_user(request)
        state.chat_history.pop(user.id, None)
        return envelope(ApiResponse.ok(message="Chat history cleared"))

    @fastapi_app.post("/api/anilist/key")
    async def store_api_key(request: Request) -> JSONResponse:
        user = _current_user(request)
        form = _validate(ApiKeyRequest, await _read_json(request))
        if form.store_permanently:
            state.stored_api_keys[user.id] = {
                "encrypted": encrypt_api_key(state.settings, form.api_key),
                "hash": hash_api_key(form.api_key),
            }
            state.session_api_keys.pop(user.id, None)
        else:
            state.stored_api_keys.pop(user.id, None)
            state.session_api_keys[user.id] = form.api_key
        logger.info(
            "Stored API key for user %s (permanent=%s)", user.id, form.store_permanently
        )
        return envelope(ApiResponse.ok({"stored": form.store_permanently}))

    @fastapi_app.delete("/api/anilist/key")
    async def remove_api_key(request: Request) -> JSONResponse:
        user = _current_user(request)
        state.stored_api_keys.pop(user.id, None)
        state.session_api_keys.pop(user.id, None)
        return envelope(ApiResponse.ok({"stored": False}))

    def _api_key_for(user: User) -> str | None:
        session_key = state.session_api_keys.get(user.id)
        if session_key:
            return session_key
        stored = state.stored_api_keys.get(user.id)
        if not stored:
            return None
        try:
            return decrypt_api_key(state.settings, stored["encrypted"])
        except EncryptionError:
            logger.warning("Discarding undecryptable API key for user %s", user.id)
            state.stored_api_keys.pop(user.id, None)
            return None

    @fastapi_app.post("/api/anilist/sync")
    async def sync_profile(request: Request) -> JSONResponse:
        user = _current_user(request)
        form = _validate(SyncRequest, await _read_json(request))
        anilist: AniListClient = state.anilist
        api_key = _api_key_for(user)

        source_user_id = form.user_id
        if form.username:
            source_user_id = await anilist.get_user_id(form.username)
        anime = await anilist.fetch_anime_list(api_key=api_key, user_id=source_user_id)
        for entry in anime:
            entry.user_id = user.id
        state.anime_lists[user.id] = anime
        logger.info("Synced %s anime entries for user %s", len(anime), user.id)

        data: dict[str, Any] = {"synced": len(anime), "sourceUserId": source_user_id}
        if form.username:
            data["sourceUsername"] = form.username
        return envelope(ApiResponse.ok(data))

    @fastapi_app.get("/api/recommendations")
    async def recommendations(request: Request) -> JSONResponse:
        _current_user(request)
        items: list[Recommendation] = []
        return envelope(ApiResponse.ok([item.model_dump(by_alias=True) for item in items]))


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
