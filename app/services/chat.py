"""Chat panel state: history, sending and clearing messages."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from pydantic import ValidationError

from ..models import ApiResponse, ChatMessage, ChatRequest
from ..utils import first_validation_message, utcnow
from .api_client import ApiClient

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
HISTORY_PATH = "/api/chat/history"
HISTORY_LIMIT = 50

LOGIN_HINT = "Please log in to use the chat feature."
BACKEND_KEY_HINT = (
    "Backend error: Google Gemini API key may not be configured. "
    "Please check your backend environment variables."
)


def helpful_error(message: str) -> str:
    """Map raw backend errors onto text a chat user can act on."""

    if "401" in message or "Unauthorized" in message or "access token" in message:
        return LOGIN_HINT
    if "Authentication required" in message or "session has expired" in message:
        return LOGIN_HINT
    if "Gemini" in message or "API key" in message:
        return BACKEND_KEY_HINT
    return message


class ChatSession:
    """Conversation log backed by the chat endpoints."""

    def __init__(self, api_client: ApiClient, *, include_anime_context: bool = True) -> None:
        self._api = api_client
        self._include_anime_context = include_anime_context
        self.messages: list[ChatMessage] = []
        self.is_loading = False
        self.error: str | None = None
        self.conversation_id: str | None = None

    async def load_history(self, limit: int = HISTORY_LIMIT) -> bool:
        """Replace the local log with the persisted history."""

        response = await self._api.get(HISTORY_PATH, params={"limit": limit})
        if not response.success or not isinstance(response.data, Mapping):
            if response.error:
                logger.warning("Error loading chat history: %s", response.error)
            return False

        raw_messages = response.data.get("messages")
        if not isinstance(raw_messages, list):
            return False

        loaded: list[ChatMessage] = []
        for entry in raw_messages:
            if not isinstance(entry, Mapping):
                continue
            try:
                loaded.append(ChatMessage.model_validate(dict(entry)))
            except ValidationError as exc:
                logger.warning("Skipping malformed chat message: %s", first_validation_message(exc))
        self.messages = loaded
        return True

    async def send_message(self, content: str) -> ChatMessage | None:
        """Send ``content`` and append the assistant reply (or an error note)."""

        if not content or not content.strip():
            return None

        try:
            request = ChatRequest(
                message=content, include_anime_context=self._include_anime_context
            )
        except ValidationError as exc:
            self.error = first_validation_message(exc)
            return None

        self.messages.append(ChatMessage(role="user", content=request.message))
        self.is_loading = True
        self.error = None
        try:
            response = await self._api.post(CHAT_PATH, request.to_payload())
            reply = self._reply_from(response)
            if reply is None:
                error = response.error or _data_error(response.data)
                if response.success:
                    error = error or "Failed to get response: unexpected response structure"
                raise ChatResponseError(error or "Failed to get response")
        except ChatResponseError as exc:
            message = str(exc)
            logger.warning("Chat error: %s", message)
            self.error = message
            note = ChatMessage(role="system", content=f"Error: {helpful_error(message)}")
            self.messages.append(note)
            return None
        finally:
            self.is_loading = False

        self.messages.append(reply)
        if reply.conversation_id:
            self.conversation_id = reply.conversation_id
        return reply

    @staticmethod
    def _reply_from(response: ApiResponse) -> ChatMessage | None:
        if not response.success or not isinstance(response.data, Mapping):
            return None
        data = response.data
        raw = data.get("message")
        if isinstance(raw, Mapping):
            payload = dict(raw)
            payload.setdefault("role", "assistant")
            try:
                return ChatMessage.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Unrecognised chat reply: %s", first_validation_message(exc))
                return None
        text = data.get("response")
        if isinstance(text, str):
            return ChatMessage(role="assistant", content=text, timestamp=utcnow())
        return None

    async def clear_messages(self) -> None:
        """Clear the persisted history and, regardless of outcome, the local log."""

        response = await self._api.delete(HISTORY_PATH)
        if not response.success:
            logger.warning("Failed to clear chat history: %s", response.error)
        self.messages = []
        self.conversation_id = None


class ChatResponseError(RuntimeError):
    """Raised internally when the chat endpoint yields no usable reply."""


def _data_error(data: Any) -> str | None:
    if isinstance(data, Mapping):
        value = data.get("error")
        if isinstance(value, str) and value:
            return value
    return None
