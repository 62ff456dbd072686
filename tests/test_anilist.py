"""Tests for the AniList GraphQL client."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from app.config import Settings
from app.services.anilist import (
    AniListAuthError,
    AniListClient,
    AniListPrivateProfileError,
    AniListRateLimitError,
    AniListUserNotFoundError,
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_client(handler) -> tuple[AniListClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AniListClient(Settings(_env_file=None), http_client), http_client


def media_entry(media_id: int, **overrides: Any) -> dict[str, Any]:
    entry = {
        "id": media_id * 10,
        "mediaId": media_id,
        "status": "COMPLETED",
        "score": 85,
        "progress": 12,
        "media": {
            "id": media_id,
            "title": {"romaji": f"Romaji {media_id}", "english": None, "native": None},
            "description": "desc",
            "format": "TV",
            "status": "FINISHED",
            "episodes": 12,
            "genres": ["Drama"],
            "tags": [{"name": "Iyashikei"}],
            "coverImage": {"large": None, "medium": "medium.jpg"},
            "bannerImage": None,
        },
    }
    entry.update(overrides)
    return entry


@pytest.mark.anyio("asyncio")
async def test_fetch_by_username_resolves_id_then_flattens_entries() -> None:
    queries: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        queries.append(body)
        if "GetUserByName" in body["query"]:
            return httpx.Response(200, json={"data": {"User": {"id": 77, "name": "someone"}}})
        return httpx.Response(
            200,
            json={
                "data": {
                    "MediaListCollection": {
                        "lists": [
                            {"entries": [media_entry(1), media_entry(2, score=0)]},
                            {"entries": [{"media": None}]},
                        ]
                    }
                }
            },
        )

    client, http_client = build_client(handler)
    async with http_client:
        anime = await client.fetch_anime_list(username="someone")

    assert queries[0]["variables"] == {"name": "someone"}
    assert queries[1]["variables"] == {"userId": 77}
    assert [entry.anime_id for entry in anime] == [1, 2]
    first = anime[0]
    assert first.title == "Romaji 1"
    assert first.cover_image == "medium.jpg"
    assert first.tags == ["Iyashikei"]
    assert first.total_episodes == 12


@pytest.mark.anyio("asyncio")
async def test_missing_user_raises_not_found() -> None:
    client, http_client = build_client(
        lambda request: httpx.Response(
            404, json={"data": {"User": None}, "errors": [{"message": "Not Found.", "status": 404}]}
        )
    )
    async with http_client:
        with pytest.raises(AniListUserNotFoundError, match='User "ghost" not found'):
            await client.get_user_id("ghost")


@pytest.mark.anyio("asyncio")
async def test_null_collection_is_private() -> None:
    client, http_client = build_client(
        lambda request: httpx.Response(200, json={"data": {"MediaListCollection": None}})
    )
    async with http_client:
        with pytest.raises(AniListPrivateProfileError, match="private"):
            await client.fetch_anime_list(user_id=5)


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("status", "error"),
    [(401, AniListAuthError), (429, AniListRateLimitError)],
)
async def test_status_errors(status: int, error: type[Exception]) -> None:
    client, http_client = build_client(lambda request: httpx.Response(status, json={}))
    async with http_client:
        with pytest.raises(error):
            await client.fetch_anime_list(user_id=5)


@pytest.mark.anyio("asyncio")
async def test_api_key_is_sent_as_bearer() -> None:
    headers: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        headers.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"data": {"Viewer": {"id": 3, "name": "me"}}})

    client, http_client = build_client(handler)
    async with http_client:
        assert await client.validate_api_key("secret-key") is True

    assert headers == ["Bearer secret-key"]


@pytest.mark.anyio("asyncio")
async def test_invalid_api_key_fails_validation() -> None:
    client, http_client = build_client(lambda request: httpx.Response(401, json={}))
    async with http_client:
        assert await client.validate_api_key("bad") is False
