"""Tests for the Gemini response provider."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.models import Anime, ChatMessage
from app.services.gemini import GeminiClient, GeminiError, build_contents, build_system_prompt


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_client(handler, **overrides: Any) -> tuple[GeminiClient, httpx.AsyncClient]:
    base = {"GOOGLE_GEMINI_API_KEY": "gem-key"}
    base.update(overrides)
    settings = Settings(_env_file=None, **base)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiClient(settings, http_client), http_client


def candidate(text: str) -> dict[str, Any]:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def test_system_prompt_lists_top_scored_titles() -> None:
    anime = [
        Anime(anime_id=index, title=f"Show {index}", score=index, status="COMPLETED")
        for index in range(30)
    ]

    prompt = build_system_prompt(anime)

    assert "- Show 29 (Score: 29/100, Status: COMPLETED)" in prompt
    assert "Show 10 " in prompt
    assert "Show 9 " not in prompt
    assert "Show 0 " not in prompt


def test_contents_keep_last_ten_messages() -> None:
    history = [
        ChatMessage(role="user" if index % 2 == 0 else "assistant", content=f"m{index}")
        for index in range(14)
    ]

    contents = build_contents("latest", history)

    assert len(contents) == 11
    assert contents[0]["parts"][0]["text"] == "m4"
    assert {entry["role"] for entry in contents[:-1]} == {"user", "model"}
    assert contents[-1]["parts"][0]["text"].endswith("User: latest")


@pytest.mark.anyio("asyncio")
async def test_generate_returns_candidate_text() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=candidate("Watch Mushishi."))

    client, http_client = build_client(handler)
    async with http_client:
        text = await client.generate("recommend")

    body = json.loads(requests[0].content)
    assert text == "Watch Mushishi."
    assert requests[0].headers["x-goog-api-key"] == "gem-key"
    assert requests[0].url.path.endswith("models/gemini-2.5-flash:generateContent")
    assert body["generationConfig"]["maxOutputTokens"] == 1024


@pytest.mark.anyio("asyncio")
async def test_stream_concatenates_chunks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["alt"] == "sse"
        lines = [
            f"data: {json.dumps(candidate('Watch '))}",
            "",
            f"data: {json.dumps(candidate('Mushishi.'))}",
            "",
        ]
        return httpx.Response(200, text="\n".join(lines))

    client, http_client = build_client(handler)
    chunks: list[str] = []
    async with http_client:
        text = await client.generate_streaming("recommend", on_chunk=chunks.append)

    assert chunks == ["Watch ", "Mushishi."]
    assert text == "Watch Mushishi."


@pytest.mark.anyio("asyncio")
async def test_missing_key_raises() -> None:
    client, http_client = build_client(lambda request: httpx.Response(200), GOOGLE_GEMINI_API_KEY="")
    async with http_client:
        with pytest.raises(GeminiError, match="GOOGLE_GEMINI_API_KEY"):
            await client.generate("hi")


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("status", "body", "message"),
    [
        (400, '{"error": {"message": "API key not valid"}}', "Invalid Google Gemini API key"),
        (429, '{"error": {"message": "Resource exhausted"}}', "Gemini API rate limit exceeded. Please try again later."),
        (503, "overloaded", "Failed to generate response: HTTP 503"),
    ],
)
async def test_error_categories(status: int, body: str, message: str) -> None:
    client, http_client = build_client(lambda request: httpx.Response(status, text=body))
    async with http_client:
        with pytest.raises(GeminiError) as excinfo:
            await client.generate("hi")

    assert str(excinfo.value) == message
