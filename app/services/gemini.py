"""Integration helpers for the Google Gemini generative API."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable, Sequence

import httpx

from ..config import Settings
from ..models import Anime, ChatMessage

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 10
TOP_ANIME_LIMIT = 20

GENERATION_CONFIG = {
    "temperature": 0.7,
    "topK": 40,
    "topP": 0.95,
    "maxOutputTokens": 1024,
}

SYSTEM_PROMPT_TEMPLATE = """You are an anime recommendation assistant. You help users discover new anime based on their preferences and viewing history.

User's Anime List (Top Rated):
{anime_list}

Guidelines:
- Provide personalized anime recommendations based on the user's preferences
- Consider genres, themes, and scores from their list
- Explain why you're recommending each anime
- Be friendly, helpful, and enthusiastic about anime
- If the user asks about anime not in their list, provide information and recommendations
- Keep responses concise but informative
- Format recommendations clearly with anime titles and brief descriptions

Remember: The user's anime list and scores reflect their preferences. Use this to make better recommendations."""


class GeminiError(RuntimeError):
    """Raised when a response cannot be generated."""


def build_system_prompt(anime: Sequence[Anime]) -> str:
    """Summarise the user's best-scored titles for the model."""

    top = sorted((entry for entry in anime if entry.score > 0), key=lambda entry: entry.score, reverse=True)
    lines = [
        f"- {entry.title} (Score: {entry.score:g}/100, Status: {entry.status or 'UNKNOWN'})"
        for entry in top[:TOP_ANIME_LIMIT]
    ]
    return SYSTEM_PROMPT_TEMPLATE.format(anime_list="\n".join(lines) or "No anime in list yet.")


def build_contents(
    message: str,
    history: Sequence[ChatMessage] = (),
    anime: Sequence[Anime] = (),
) -> list[dict[str, Any]]:
    contents = [
        {
            "role": "user" if entry.role == "user" else "model",
            "parts": [{"text": entry.content}],
        }
        for entry in list(history)[-HISTORY_WINDOW:]
    ]
    contents.append(
        {
            "role": "user",
            "parts": [{"text": f"{build_system_prompt(anime)}\n\nUser: {message}"}],
        }
    )
    return contents


class GeminiClient:
    """Client responsible for talking to the Gemini REST API."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _endpoint(self, action: str) -> str:
        base = str(self._settings.gemini_api_url).rstrip("/")
        return f"{base}/models/{self._settings.gemini_model}:{action}"

    def _headers(self) -> dict[str, str]:
        api_key = self._settings.gemini_api_key
        if not api_key:
            raise GeminiError("GOOGLE_GEMINI_API_KEY environment variable is not set")
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def _payload(
        self,
        message: str,
        history: Sequence[ChatMessage],
        anime: Sequence[Anime],
    ) -> dict[str, Any]:
        return {
            "contents": build_contents(message, history, anime),
            "generationConfig": dict(GENERATION_CONFIG),
        }

    async def generate(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        anime: Sequence[Anime] = (),
    ) -> str:
        """Return the full response text for ``message``."""

        headers = self._headers()
        try:
            response = await self._client.post(
                self._endpoint("generateContent"),
                json=self._payload(message, history, anime),
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("Gemini request failed: %s", exc.__class__.__name__)
            raise GeminiError(f"Failed to generate response: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise _error_for(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise GeminiError("Failed to generate chat response") from exc
        return _candidate_text(data)

    async def stream(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        anime: Sequence[Anime] = (),
    ) -> AsyncIterator[str]:
        """Yield response text chunks as the model produces them."""

        headers = self._headers()
        try:
            async with self._client.stream(
                "POST",
                self._endpoint("streamGenerateContent"),
                params={"alt": "sse"},
                json=self._payload(message, history, anime),
                headers=headers,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise _error_for(response.status_code, body)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[len("data:"):].strip()
                    if not raw or raw == "[DONE]":
                        continue
                    try:
                        chunk = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed Gemini stream chunk")
                        continue
                    text = _candidate_text(chunk, allow_empty=True)
                    if text:
                        yield text
        except httpx.HTTPError as exc:
            logger.warning("Gemini stream failed: %s", exc.__class__.__name__)
            raise GeminiError(f"Failed to generate response: {exc.__class__.__name__}") from exc

    async def generate_streaming(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        anime: Sequence[Anime] = (),
        *,
        on_chunk: Callable[[str], None] | None = None,
    ) -> str:
        """Stream the response, reporting chunks, and return the concatenation."""

        parts: list[str] = []
        async for chunk in self.stream(message, history, anime):
            parts.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)
        return "".join(parts)


def _candidate_text(data: Any, *, allow_empty: bool = False) -> str:
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not candidates:
        if allow_empty:
            return ""
        raise GeminiError("Failed to generate chat response")
    content = candidates[0].get("content") or {}
    texts = [
        part.get("text", "")
        for part in content.get("parts") or []
        if isinstance(part, dict)
    ]
    return "".join(texts)


def _error_for(status_code: int, body: str) -> GeminiError:
    lowered = body.lower()
    if "api key" in lowered or "api_key" in lowered:
        return GeminiError("Invalid Google Gemini API key")
    if status_code == 429 or "quota" in lowered or "rate limit" in lowered:
        return GeminiError("Gemini API rate limit exceeded. Please try again later.")
    logger.warning("Gemini returned HTTP %s", status_code)
    return GeminiError(f"Failed to generate response: HTTP {status_code}")
