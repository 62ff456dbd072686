"""Utilities for communicating with the AniList GraphQL API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..models import Anime

logger = logging.getLogger(__name__)

USER_ANIME_LIST_QUERY = """
query GetUserAnimeList($userId: Int!) {
  MediaListCollection(userId: $userId, type: ANIME) {
    lists {
      entries {
        id
        mediaId
        status
        score
        progress
        media {
          id
          title { romaji english native }
          description
          format
          status
          episodes
          genres
          tags { name }
          coverImage { large medium }
          bannerImage
        }
      }
    }
  }
}
"""

USER_BY_NAME_QUERY = """
query GetUserByName($name: String!) {
  User(name: $name) {
    id
    name
  }
}
"""

VIEWER_QUERY = """
query GetCurrentUser {
  Viewer {
    id
    name
  }
}
"""


class AniListError(RuntimeError):
    """Base error raised for AniList failures."""


class AniListUserNotFoundError(AniListError):
    pass


class AniListPrivateProfileError(AniListError):
    pass


class AniListAuthError(AniListError):
    pass


class AniListRateLimitError(AniListError):
    pass


class AniListClient:
    """Thin wrapper around the AniList GraphQL endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(self, api_key: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _query(
        self,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(
                str(self._settings.anilist_api_url),
                json={"query": query, "variables": variables or {}},
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as exc:
            logger.warning("AniList request failed: %s", exc.__class__.__name__)
            raise AniListError(f"Failed to reach AniList: {exc.__class__.__name__}") from exc

        if response.status_code == 401:
            raise AniListAuthError("Invalid AniList API key")
        if response.status_code == 429:
            raise AniListRateLimitError(
                "AniList API rate limit exceeded. Please try again later."
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AniListError("Unexpected non-JSON response from AniList") from exc
        if not isinstance(payload, dict):
            raise AniListError("Unexpected AniList response structure")

        data = payload.get("data")
        errors = payload.get("errors") or []
        if response.status_code >= 400 and not isinstance(data, dict):
            message = _first_error_message(errors) or response.text
            if response.status_code == 404:
                raise AniListUserNotFoundError(message or "Not found")
            raise AniListError(f"AniList request failed: {message}")
        if not isinstance(data, dict):
            raise AniListError(_first_error_message(errors) or "AniList returned no data")
        return data

    async def get_viewer(self, api_key: str) -> dict[str, Any]:
        """Return the AniList account the API key belongs to."""

        data = await self._query(VIEWER_QUERY, api_key=api_key)
        viewer = data.get("Viewer")
        if not isinstance(viewer, dict) or "id" not in viewer:
            raise AniListError("Failed to fetch AniList user information")
        return viewer

    async def get_user_id(self, username: str) -> int:
        """Resolve a public username to its numeric AniList id."""

        try:
            data = await self._query(USER_BY_NAME_QUERY, {"name": username})
        except AniListUserNotFoundError as exc:
            raise AniListUserNotFoundError(f'User "{username}" not found') from exc
        user = data.get("User")
        if not isinstance(user, dict) or not isinstance(user.get("id"), int):
            raise AniListUserNotFoundError(f'User "{username}" not found')
        return user["id"]

    async def fetch_anime_list(
        self,
        *,
        api_key: str | None = None,
        user_id: int | None = None,
        username: str | None = None,
    ) -> list[Anime]:
        """Fetch a user's anime list, public or authenticated."""

        target = user_id
        if username and not target:
            target = await self.get_user_id(username)
        if not target and not api_key:
            raise AniListError("Either userId, username, or apiKey must be provided")
        if not target and api_key:
            viewer = await self.get_viewer(api_key)
            target = int(viewer["id"])

        try:
            data = await self._query(
                USER_ANIME_LIST_QUERY, {"userId": target}, api_key=api_key
            )
        except AniListUserNotFoundError as exc:
            raise AniListPrivateProfileError(
                "User profile is private or not found"
            ) from exc
        collection = data.get("MediaListCollection")
        if not isinstance(collection, dict):
            raise AniListPrivateProfileError(
                "User profile is private. An API key may be required to access this profile."
            )

        anime: list[Anime] = []
        for media_list in collection.get("lists") or []:
            if not isinstance(media_list, dict):
                continue
            for entry in media_list.get("entries") or []:
                item = _entry_to_anime(entry)
                if item is not None:
                    anime.append(item)
        logger.info("Fetched %s AniList entries for user %s", len(anime), target)
        return anime

    async def validate_api_key(self, api_key: str) -> bool:
        try:
            await self.get_viewer(api_key)
        except AniListError:
            return False
        return True


def _entry_to_anime(entry: Any) -> Anime | None:
    if not isinstance(entry, dict):
        return None
    media = entry.get("media")
    if not isinstance(media, dict) or not isinstance(media.get("id"), int):
        return None
    title = media.get("title") or {}
    cover = media.get("coverImage") or {}
    tags = [tag["name"] for tag in media.get("tags") or [] if isinstance(tag, dict) and tag.get("name")]
    return Anime(
        anime_id=media["id"],
        title=title.get("romaji") or title.get("english") or title.get("native") or "Unknown",
        title_english=title.get("english"),
        title_native=title.get("native"),
        description=media.get("description"),
        score=entry.get("score") or 0,
        status=entry.get("status"),
        progress=entry.get("progress"),
        total_episodes=media.get("episodes"),
        format=media.get("format"),
        genres=list(media.get("genres") or []),
        tags=tags,
        cover_image=cover.get("large") or cover.get("medium"),
        banner_image=media.get("bannerImage"),
    )


def _first_error_message(errors: Any) -> str | None:
    if isinstance(errors, list):
        for error in errors:
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
    return None
