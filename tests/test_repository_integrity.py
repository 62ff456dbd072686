"""Repository-level integrity checks."""

from __future__ import annotations

import re
from pathlib import Path

CONFLICT_PATTERN = re.compile(r"^(<<<<<<<|=======|>>>>>>>)", re.MULTILINE)
IGNORED_PARTS = {".git", "__pycache__", ".mypy_cache", ".pytest_cache", ".venv"}
TEXT_SUFFIXES = {".py", ".md", ".toml", ".txt", ".cfg", ".ini"}

REPO_ROOT = Path(__file__).resolve().parents[1]


def _text_files() -> list[Path]:
    return [
        path
        for path in REPO_ROOT.rglob("*")
        if path.is_file()
        and path.suffix in TEXT_SUFFIXES
        and not any(part in IGNORED_PARTS for part in path.parts)
    ]


def test_repository_has_no_merge_conflict_markers() -> None:
    """Ensure no files in the repo still contain git conflict markers."""

    offending_files = [
        path.relative_to(REPO_ROOT)
        for path in _text_files()
        if CONFLICT_PATTERN.search(path.read_text(encoding="utf-8", errors="ignore"))
    ]

    assert not offending_files, (
        "The following files still contain git conflict markers: "
        + ", ".join(str(path) for path in offending_files)
    )


def test_no_env_file_with_secrets_is_committed() -> None:
    """Secrets such as JWT_SECRET belong in the environment, not the tree."""

    assert not (REPO_ROOT / ".env").exists()


def test_packages_have_init_modules() -> None:
    for package in ("app", "app/services", "anirec"):
        assert (REPO_ROOT / package / "__init__.py").is_file(), package
