"""Utility helpers for the AniRec client and stub backend."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError

logger = logging.getLogger(__name__)

# Unix timestamps above this value are treated as milliseconds.
MILLISECOND_THRESHOLD = 1_000_000_000_000

NO_TOKEN_MARKERS: tuple[str, ...] = (
    "No refresh token",
    "No token",
    "Token not found",
    "Not authenticated",
)

_ANGLE_BRACKETS_RE = re.compile(r"[<>]")
_JS_PROTOCOL_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+=", re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_timestamp(value: Any) -> datetime:
    """Turn an ISO string, datetime or Unix timestamp into an aware datetime.

    Numbers are read as seconds unless they exceed
    :data:`MILLISECOND_THRESHOLD`, in which case they are milliseconds.
    Anything that does not resolve to a valid instant becomes the current
    time instead of raising.
    """

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    if isinstance(value, bool):
        logger.warning("Invalid timestamp value, using current time: %r", value)
        return utcnow()

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > MILLISECOND_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            logger.warning("Invalid timestamp value, using current time: %r", value)
            return utcnow()

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Invalid timestamp value, using current time: %r", value)
            return utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    if value is not None:
        logger.warning("Invalid timestamp format, using current time: %r", value)
    return utcnow()


def extract_access_token(payload: Any) -> str | None:
    """Return a fresh access token embedded in any known response layout."""

    if not isinstance(payload, Mapping):
        return None

    data = payload.get("data")
    candidates: list[Any] = []
    if isinstance(data, Mapping):
        tokens = data.get("tokens")
        if isinstance(tokens, Mapping):
            candidates.append(tokens.get("accessToken"))
    tokens = payload.get("tokens")
    if isinstance(tokens, Mapping):
        candidates.append(tokens.get("accessToken"))
    if isinstance(data, Mapping):
        candidates.append(data.get("accessToken"))
    candidates.append(payload.get("accessToken"))

    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def is_no_token_error(message: str | None) -> bool:
    """Return ``True`` when an error means "never logged in" rather than expired."""

    if not message:
        return False
    return any(marker in message for marker in NO_TOKEN_MARKERS)


def first_validation_message(exc: ValidationError) -> str:
    """Return the message of the first violated validation rule."""

    errors = exc.errors()
    if not errors:
        return "Validation error"
    first = errors[0]
    ctx = first.get("ctx") or {}
    original = ctx.get("error")
    if isinstance(original, Exception) and str(original):
        return str(original)
    message = str(first.get("msg") or "Validation error")
    for prefix in ("Value error, ", "Assertion failed, "):
        if message.startswith(prefix):
            return message[len(prefix):]
    return message


def sanitize_string(value: str) -> str:
    """Strip markup fragments commonly used for script injection."""

    value = _ANGLE_BRACKETS_RE.sub("", value)
    value = _JS_PROTOCOL_RE.sub("", value)
    value = _EVENT_HANDLER_RE.sub("", value)
    return value.strip()
