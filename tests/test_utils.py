"""Tests for shared utility helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.models import SignupRequest
from app.utils import (
    coerce_timestamp,
    extract_access_token,
    first_validation_message,
    is_no_token_error,
    sanitize_string,
    utcnow,
)


def test_seconds_and_milliseconds_resolve_to_same_instant() -> None:
    """Unix timestamps are accepted in either seconds or milliseconds."""

    seconds = coerce_timestamp(1_700_000_000)
    millis = coerce_timestamp(1_700_000_000_000)

    assert seconds == millis
    assert seconds == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "value",
    ["2024-03-01T12:00:00Z", "2024-03-01T12:00:00+00:00", "2024-03-01T12:00:00"],
)
def test_iso_strings_are_parsed_as_utc(value: str) -> None:
    assert coerce_timestamp(value) == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["not a date", "", None, True, {"at": 1}, float("nan")])
def test_invalid_timestamps_fall_back_to_now(value: object) -> None:
    """Unparseable values become the current time rather than raising."""

    before = utcnow()
    result = coerce_timestamp(value)

    assert before - timedelta(seconds=1) <= result <= utcnow() + timedelta(seconds=1)


def test_naive_datetime_gets_utc() -> None:
    result = coerce_timestamp(datetime(2024, 1, 1, 8, 30))

    assert result.tzinfo == timezone.utc


@pytest.mark.parametrize(
    "payload",
    [
        {"success": True, "data": {"tokens": {"accessToken": "abc"}}},
        {"tokens": {"accessToken": "abc"}},
        {"data": {"accessToken": "abc"}},
        {"accessToken": "abc"},
    ],
)
def test_extract_access_token_from_known_layouts(payload: dict) -> None:
    assert extract_access_token(payload) == "abc"


def test_extract_access_token_ignores_unknown_layouts() -> None:
    assert extract_access_token({"data": {"token": "abc"}}) is None
    assert extract_access_token(["accessToken"]) is None
    assert extract_access_token({"accessToken": ""}) is None


def test_no_token_errors_are_recognised() -> None:
    """Only the "never logged in" family counts as a no-token error."""

    assert is_no_token_error("No refresh token")
    assert is_no_token_error("Not authenticated")
    assert not is_no_token_error("Invalid or expired token")
    assert not is_no_token_error(None)


def test_first_validation_message_returns_first_rule() -> None:
    """Only the first violated rule's text is surfaced."""

    with pytest.raises(ValidationError) as excinfo:
        SignupRequest(email="bad", username="x", password="short")

    assert first_validation_message(excinfo.value) == "Invalid email address"


def test_sanitize_string_strips_markup() -> None:
    assert sanitize_string("  <b onclick=alert(1)>hi</b> javascript:x ") == "b alert(1)hi/b x"
