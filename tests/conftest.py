"""
Pytest configuration and fixtures for content repository tests.
"""

from __future__ import annotations

import io
import os
import zipfile
from pathlib import Path
from typing import Callable, Generator, Sequence
from unittest.mock import patch

import pytest

from contentrepo.config import Settings, clear_settings_cache
from contentrepo.repository import ContentRepository

GRACE_PERIOD_MS = 1000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, millis: float) -> None:
        self.now += millis


ZipEntries = Sequence[tuple[str, bytes | None]]


def build_zip(entries: ZipEntries) -> bytes:
    """Build a zip archive in memory. A None payload makes a directory entry."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, payload in entries:
            if payload is None:
                zf.writestr(name if name.endswith("/") else name + "/", b"")
            else:
                zf.writestr(name, payload)
    return buffer.getvalue()


def staged_files(root: Path) -> list[Path]:
    """Staging files left in a repository root."""
    return sorted(root.glob("content*.tmp"))


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def repo_root(temp_dir: Path) -> Path:
    """Root directory for a repository (not created yet)."""
    return temp_dir / "content"


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a controllable clock for grace period tests."""
    return FakeClock()


@pytest.fixture
def repository(repo_root: Path, fake_clock: FakeClock) -> ContentRepository:
    """Repository that removes content as soon as its last reference goes."""
    return ContentRepository(repo_root, obsolescence_timeout_ms=GRACE_PERIOD_MS, clock=fake_clock)


@pytest.fixture
def deferring_repository(repo_root: Path, fake_clock: FakeClock) -> ContentRepository:
    """Repository that leaves released content to the cleanup pass."""
    return ContentRepository(
        repo_root,
        obsolescence_timeout_ms=GRACE_PERIOD_MS,
        clock=fake_clock,
        defer_removal=True,
    )


@pytest.fixture
def make_zip() -> Callable[[ZipEntries], bytes]:
    """Provide the in-memory zip builder."""
    return build_zip


@pytest.fixture
def mock_env_vars(temp_dir: Path) -> Generator[dict[str, str], None, None]:
    """Provide environment variables for settings tests."""
    env_vars = {
        "REPO_ROOT": str(temp_dir / "env-content"),
        "OBSOLESCENCE_TIMEOUT_MS": "2500",
        "BUFFER_SIZE": "4096",
        "DEFER_REMOVAL": "true",
        "LOG_LEVEL": "WARNING",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Generator[Settings, None, None]:
    """Provide a Settings instance built from the mock environment."""
    from contentrepo.config import get_settings

    yield get_settings()
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
