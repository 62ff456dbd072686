"""Tests for the access-token store and its file mirror."""

from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from app.config import Settings
from app.services.session import TokenStore


def test_memory_only_store_round_trip() -> None:
    store = TokenStore()

    assert store.get() is None
    assert not store
    store.set("abc")
    assert store.get() == "abc"
    store.set("")
    assert store.get() is None


def test_mirror_written_and_removed(tmp_path: Path) -> None:
    """Setting a token writes the mirror and clearing it deletes the file."""

    mirror = tmp_path / "session" / "token"
    store = TokenStore(mirror)

    store.set("abc")
    assert mirror.read_text(encoding="utf-8") == "abc"

    store.clear()
    assert not mirror.exists()
    assert store.get() is None


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions only")
def test_mirror_is_owner_only(tmp_path: Path) -> None:
    mirror = tmp_path / "token"
    TokenStore(mirror).set("abc")

    assert stat.S_IMODE(os.stat(mirror).st_mode) == 0o600


def test_new_store_restores_from_mirror(tmp_path: Path) -> None:
    mirror = tmp_path / "token"
    TokenStore(mirror).set("persisted")

    restored = TokenStore(mirror)

    assert restored.get() == "persisted"


def test_memory_value_wins_over_mirror(tmp_path: Path) -> None:
    """The in-memory slot is authoritative once populated."""

    mirror = tmp_path / "token"
    store = TokenStore(mirror)
    store.set("fresh")
    mirror.write_text("stale", encoding="utf-8")

    assert store.get() == "fresh"


def test_from_settings_uses_configured_file(tmp_path: Path) -> None:
    settings = Settings(_env_file=None, SESSION_TOKEN_FILE=str(tmp_path / "token"))

    assert TokenStore.from_settings(settings).mirror_path == tmp_path / "token"
