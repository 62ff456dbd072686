"""Tests for the credential and profile-sync callers."""

from __future__ import annotations

import json

import httpx
import pytest

from app.config import Settings
from app.services.api_client import ApiClient
from app.services.profile_sync import ProfileSyncClient
from app.services.session import TokenStore

BASE_URL = "http://backend.test"
VALID_KEY = "abcdefghij_KLMNOPQRS-tuv"


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def build_client(handler) -> tuple[ProfileSyncClient, httpx.AsyncClient]:
    settings = Settings(_env_file=None, API_URL=BASE_URL)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return ProfileSyncClient(ApiClient(settings, http_client, TokenStore())), http_client


def refuse(request: httpx.Request) -> httpx.Response:
    raise AssertionError("no request expected")


@pytest.mark.anyio("asyncio")
async def test_sync_rejects_both_targets_without_request() -> None:
    client, http_client = build_client(refuse)
    async with http_client:
        outcome = await client.sync_public_profile(username="someone", user_id=5)

    assert outcome.success is False
    assert outcome.error == "Cannot provide both username and userId"


@pytest.mark.anyio("asyncio")
async def test_sync_requires_a_target() -> None:
    client, http_client = build_client(refuse)
    async with http_client:
        outcome = await client.sync_public_profile(username="   ")

    assert outcome.success is False
    assert outcome.error.startswith("Either username or userId must be provided")


@pytest.mark.anyio("asyncio")
async def test_sync_by_username_builds_message() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"success": True, "data": {"synced": 12, "sourceUsername": "someone", "sourceUserId": 77}},
        )

    client, http_client = build_client(handler)
    async with http_client:
        outcome = await client.sync_public_profile(username=" someone ")

    assert bodies == [{"force": True, "username": "someone", "anilistUsername": "someone"}]
    assert outcome.success is True
    assert outcome.synced == 12
    assert outcome.message == "Successfully synced 12 anime entries from someone!"


@pytest.mark.anyio("asyncio")
async def test_sync_by_id_prefers_synced_count() -> None:
    client, http_client = build_client(
        lambda request: httpx.Response(200, json={"success": True, "data": {"syncedCount": 3, "synced": 9}})
    )
    async with http_client:
        outcome = await client.sync_public_profile(user_id=77)

    assert outcome.synced == 3
    assert outcome.message == "Successfully synced 3 anime entries from User ID: 77!"


@pytest.mark.anyio("asyncio")
async def test_sync_errors_pass_through() -> None:
    client, http_client = build_client(
        lambda request: httpx.Response(404, json={"success": False, "error": 'User "ghost" not found'})
    )
    async with http_client:
        outcome = await client.sync_public_profile(username="ghost")

    assert outcome.success is False
    assert outcome.error == 'User "ghost" not found'


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    ("permanent", "message"),
    [(True, "API key stored securely"), (False, "API key saved for this session only")],
)
async def test_store_api_key(permanent: bool, message: str) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "data": {"stored": permanent}})

    client, http_client = build_client(handler)
    async with http_client:
        outcome = await client.store_api_key(VALID_KEY, store_permanently=permanent)

    assert bodies == [{"apiKey": VALID_KEY, "storePermanently": permanent}]
    assert outcome.success is True
    assert outcome.message == message


@pytest.mark.anyio("asyncio")
async def test_store_api_key_validates_locally() -> None:
    client, http_client = build_client(refuse)
    async with http_client:
        outcome = await client.store_api_key("short", store_permanently=True)

    assert outcome.error == "API key must be at least 20 characters"


@pytest.mark.anyio("asyncio")
async def test_remove_api_key() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(200, json={"success": True, "data": {"stored": False}})

    client, http_client = build_client(handler)
    async with http_client:
        outcome = await client.remove_api_key()

    assert methods == ["DELETE"]
    assert outcome.success is True
