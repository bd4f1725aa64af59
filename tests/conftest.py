"""Shared fixtures for git pull agent tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from git_pull_agent.config import Settings, get_settings
from git_pull_agent.runner import CommandResult
from git_pull_agent.runtime import get_runtime_locator


@pytest.fixture(autouse=True)
def _clear_caches():
    """Settings and the runtime locator are process-wide caches."""
    get_settings.cache_clear()
    get_runtime_locator.cache_clear()
    yield
    get_settings.cache_clear()
    get_runtime_locator.cache_clear()


@pytest.fixture
def app_dir(tmp_path: Path) -> Path:
    path = tmp_path / "app"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(app_dir: Path):
    """Build isolated Settings (no .env loading) pointing at a temp app dir."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "_env_file": None,
            "app_dir": str(app_dir),
            "npm_path": "",
            "nvm_dir": str(app_dir.parent / "no-nvm"),
            "status_sink_url": "",
            "version_sync_url": "",
            "dead_letter_path": "",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def mock_reporter() -> AsyncMock:
    """A StatusReporter double that records pushes."""
    reporter = AsyncMock()
    reporter.publish = AsyncMock(return_value=True)
    reporter.sync_installed_version = AsyncMock(return_value=True)
    reporter.version_sync_enabled = True
    reporter.enabled = True
    reporter.dead_letters = []
    return reporter


class GatedRunner:
    """Blocks every command until released or cancelled; tracks concurrency."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def __call__(self, argv, cwd, *, timeout=None, cancel_token=None) -> CommandResult:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        released = asyncio.ensure_future(self.release.wait())
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({released, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            released.cancel()
            cancelled.cancel()
            self.active -= 1
        cancel_token.raise_if_cancelled()
        return CommandResult(argv=tuple(argv), stdout="", stderr="")


@pytest.fixture
def gated_runner() -> GatedRunner:
    return GatedRunner()
