"""Client-side callers for linked-account credentials and list syncing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import ValidationError

from ..models import ApiKeyRequest, SyncRequest
from ..utils import first_validation_message
from .api_client import ApiClient

logger = logging.getLogger(__name__)

KEY_PATH = "/api/anilist/key"
SYNC_PATH = "/api/anilist/sync"


@dataclass(slots=True)
class SyncOutcome:
    """Result of a sync or credential call, ready for display."""

    success: bool
    message: str | None = None
    error: str | None = None
    synced: int = 0
    stored: bool | None = None


def _synced_count(data: Mapping[str, Any]) -> int:
    for key in ("syncedCount", "synced"):
        value = data.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return 0


class ProfileSyncClient:
    """Wraps the credential and sync endpoints with local validation."""

    def __init__(self, api_client: ApiClient) -> None:
        self._api = api_client

    async def sync_public_profile(
        self,
        *,
        username: str | None = None,
        user_id: int | None = None,
        force: bool = True,
    ) -> SyncOutcome:
        """Sync a public profile identified by exactly one of username or id."""

        try:
            request = SyncRequest(
                force=force,
                username=username.strip() if isinstance(username, str) and username.strip() else None,
                user_id=user_id,
            )
        except ValidationError as exc:
            return SyncOutcome(success=False, error=first_validation_message(exc))

        response = await self._api.post(SYNC_PATH, request.to_payload())
        if not response.success or not isinstance(response.data, Mapping):
            error = response.error or "Failed to sync profile"
            logger.warning("Profile sync failed: %s", error)
            return SyncOutcome(success=False, error=error)

        data = response.data
        synced = _synced_count(data)
        if response.message:
            message = response.message
        else:
            source = (
                data.get("sourceUsername")
                or (f"User ID: {data['sourceUserId']}" if data.get("sourceUserId") else None)
                or request.username
                or f"User ID: {request.user_id}"
            )
            message = f"Successfully synced {synced} anime entries from {source}!"
        logger.info("Synced %s anime entries", synced)
        return SyncOutcome(success=True, message=message, synced=synced)

    async def store_api_key(self, api_key: str, *, store_permanently: bool) -> SyncOutcome:
        """Store or replace the linked-account credential."""

        try:
            request = ApiKeyRequest(api_key=api_key, store_permanently=store_permanently)
        except ValidationError as exc:
            return SyncOutcome(success=False, error=first_validation_message(exc))

        response = await self._api.post(KEY_PATH, request.to_payload())
        if not response.success:
            return SyncOutcome(success=False, error=response.error or "Failed to store API key")
        stored = store_permanently
        if isinstance(response.data, Mapping) and isinstance(response.data.get("stored"), bool):
            stored = response.data["stored"]
        message = (
            "API key stored securely"
            if stored
            else "API key saved for this session only"
        )
        return SyncOutcome(success=True, message=message, stored=stored)

    async def remove_api_key(self) -> SyncOutcome:
        response = await self._api.delete(KEY_PATH)
        if not response.success:
            return SyncOutcome(success=False, error=response.error or "Failed to remove API key")
        return SyncOutcome(success=True, message="API key removed", stored=False)
