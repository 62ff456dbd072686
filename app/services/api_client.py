"""HTTP dispatcher used by every client-side caller."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..config import Settings
from ..models import ApiResponse
from ..utils import extract_access_token, is_no_token_error
from .session import TokenStore

logger = logging.getLogger(__name__)

REFRESH_PATH = "/api/auth/refresh"

NO_RESPONSE_MESSAGE = (
    "No response from server. Please check your connection and ensure the "
    "backend is running."
)
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"
UNEXPECTED_RESPONSE_MESSAGE = "Unexpected response from server"
AUTH_REQUIRED_MESSAGE = "Authentication required. Please log in."
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."

STATUS_MESSAGES: dict[int, str] = {
    403: "Access forbidden. You may not have permission.",
    404: "Route not found. The backend endpoint may not be implemented.",
    500: "Server error. Please check backend logs.",
}

_ENVELOPE_KEYS = frozenset({"success", "data", "error", "message"})


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Return an ``AsyncClient`` pointed at the configured backend.

    The client keeps its own cookie jar so credential cookies set by the
    backend ride along with every later request.
    """

    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        headers={"Content-Type": "application/json"},
        timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
    )


class ApiClient:
    """Decorates requests with credentials and normalises every response.

    A request moves through ``ISSUED`` and then either succeeds, fails, or
    on a recoverable 401 goes through exactly one refresh and one replay.
    The replay's outcome is final.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        token_store: TokenStore,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._tokens = token_store

    @property
    def token_store(self) -> TokenStore:
        return self._tokens

    async def get(
        self, url: str, *, params: Mapping[str, Any] | None = None
    ) -> ApiResponse:
        return await self.request("GET", url, params=params)

    async def post(self, url: str, json: Any = None) -> ApiResponse:
        return await self.request("POST", url, json=json)

    async def put(self, url: str, json: Any = None) -> ApiResponse:
        return await self.request("PUT", url, json=json)

    async def delete(self, url: str) -> ApiResponse:
        return await self.request("DELETE", url)

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> ApiResponse:
        """Issue a request and return the canonical envelope. Never raises."""

        retried = False
        try:
            response = await self._send(method, url, json=json, params=params)
            if (
                response.status_code == 401
                and url != REFRESH_PATH
                and self._is_recoverable(response)
            ):
                retried = True
                if await self.refresh_access_token():
                    logger.info("Replaying %s %s after token refresh", method, url)
                    response = await self._send(method, url, json=json, params=params)
        except (httpx.UnsupportedProtocol, httpx.InvalidURL, TypeError, ValueError) as exc:
            logger.warning("Request setup failed for %s %s: %s", method, url, exc)
            return ApiResponse.fail(str(exc) or UNEXPECTED_ERROR_MESSAGE)
        except httpx.TransportError as exc:
            logger.warning(
                "No response for %s %s (%s)", method, url, exc.__class__.__name__
            )
            return ApiResponse.fail(NO_RESPONSE_MESSAGE)
        except httpx.HTTPError as exc:
            logger.warning(
                "Request %s %s failed (%s): %s", method, url, exc.__class__.__name__, exc
            )
            return ApiResponse.fail(UNEXPECTED_ERROR_MESSAGE)

        if response.is_success:
            try:
                payload = response.json()
            except ValueError:
                if not response.content:
                    return ApiResponse.ok()
                logger.warning("Unexpected non-JSON response for %s %s", method, url)
                return ApiResponse.fail(UNEXPECTED_RESPONSE_MESSAGE)
            self._harvest_token(payload)
            return self._to_envelope(payload)

        return self._error_envelope(method, url, response, retried=retried)

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if json is not None:
            kwargs["json"] = json
        if params:
            kwargs["params"] = dict(params)
        return await self._client.request(method, url, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        token = self._tokens.get()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    def _is_recoverable(response: httpx.Response) -> bool:
        """A 401 is worth a refresh unless the backend says no token was sent."""

        return not is_no_token_error(_error_text(_safe_json(response)))

    async def refresh_access_token(self) -> bool:
        """Mint a new access token from the server-held refresh credential."""

        logger.info("Access token rejected, attempting refresh")
        try:
            response = await self._client.post(REFRESH_PATH, json={})
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc.__class__.__name__)
            self._tokens.clear()
            return False

        payload = _safe_json(response)
        if response.is_success and isinstance(payload, Mapping) and payload.get("success"):
            self._harvest_token(payload)
            return True

        logger.warning("Token refresh rejected with status %s", response.status_code)
        self._tokens.clear()
        return False

    def _harvest_token(self, payload: Any) -> None:
        token = extract_access_token(payload)
        if token:
            self._tokens.set(token)

    @staticmethod
    def _to_envelope(payload: Any) -> ApiResponse:
        if not isinstance(payload, Mapping):
            return ApiResponse.ok(payload)
        if "data" in payload:
            data = payload["data"]
        else:
            remainder = {key: value for key, value in payload.items() if key not in _ENVELOPE_KEYS}
            data = remainder or None
        return ApiResponse(
            success=bool(payload.get("success", True)),
            data=data,
            error=_as_text(payload.get("error")),
            message=_as_text(payload.get("message")),
        )

    def _error_envelope(
        self,
        method: str,
        url: str,
        response: httpx.Response,
        *,
        retried: bool,
    ) -> ApiResponse:
        status = response.status_code
        message = _error_text(_safe_json(response))

        if status == 401:
            if is_no_token_error(message):
                logger.debug("%s %s: not authenticated", method, url)
                return ApiResponse.fail(message or AUTH_REQUIRED_MESSAGE)
            if retried:
                logger.info("%s %s: session expired", method, url)
                return ApiResponse.fail(message or SESSION_EXPIRED_MESSAGE)
            if "/auth/" in url:
                logger.debug("%s %s: authentication required", method, url)
            else:
                logger.warning("%s %s: authentication required", method, url)
            return ApiResponse.fail(message or AUTH_REQUIRED_MESSAGE)

        logger.warning("API error for %s %s: HTTP %s %s", method, url, status, message or "")
        if message:
            return ApiResponse.fail(message)
        default = STATUS_MESSAGES.get(status)
        if default:
            return ApiResponse.fail(default)
        return ApiResponse.fail(f"HTTP {status}: {response.reason_phrase}")


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_text(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    return _as_text(payload.get("error")) or _as_text(payload.get("message"))


def _as_text(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
