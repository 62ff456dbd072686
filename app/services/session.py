"""Bearer-token storage shared by the dispatcher and the session manager."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..config import Settings

logger = logging.getLogger(__name__)


class TokenStore:
    """Single authoritative slot for the current access token.

    The in-memory value always wins. When ``mirror_path`` is given the
    token is also written to that file so a restarted client can pick the
    session back up. The mirror is only read while the memory slot is
    empty and is removed as soon as the token is cleared. It otherwise
    outlives the process, so a client that must not resume later calls
    :meth:`discard_mirror` (or closes its session manager with
    ``discard_mirror=True``) before exiting.

    Only :class:`~app.services.auth.SessionManager` and the dispatcher's
    token-harvesting step write to the store. Everything else reads.
    """

    def __init__(self, mirror_path: str | os.PathLike[str] | None = None) -> None:
        self._token: str | None = None
        self._mirror = Path(mirror_path) if mirror_path else None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenStore":
        return cls(settings.session_token_file)

    @property
    def mirror_path(self) -> Path | None:
        return self._mirror

    def get(self) -> str | None:
        """Return the current token, restoring it from the mirror if needed."""

        if self._token:
            return self._token
        restored = self._read_mirror()
        if restored:
            self._token = restored
        return self._token

    def set(self, token: str | None) -> None:
        """Replace the current token. ``None`` or an empty string clears it."""

        if not token:
            self.clear()
            return
        changed = token != self._token
        self._token = token
        self._write_mirror(token)
        if changed:
            logger.info("Access token stored")

    def clear(self) -> None:
        had_token = self._token is not None
        self._token = None
        self._remove_mirror()
        if had_token:
            logger.info("Access token cleared")

    def discard_mirror(self) -> None:
        """Delete the mirror file while keeping the in-memory token."""

        self._remove_mirror()

    def __bool__(self) -> bool:
        return self.get() is not None

    def _read_mirror(self) -> str | None:
        if self._mirror is None:
            return None
        try:
            value = self._mirror.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unable to read session token mirror: %s", exc)
            return None
        return value or None

    def _write_mirror(self, token: str) -> None:
        if self._mirror is None:
            return
        try:
            self._mirror.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._mirror, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(token)
        except OSError as exc:
            logger.warning("Unable to write session token mirror: %s", exc)

    def _remove_mirror(self) -> None:
        if self._mirror is None:
            return
        try:
            self._mirror.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Unable to remove session token mirror: %s", exc)
