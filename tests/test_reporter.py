"""Unit tests for StatusReporter.

All HTTP interactions are mocked via patching httpx.AsyncClient. No
network access needed.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from git_pull_agent.models import LogEntry, LogLevel, RunStatus
from git_pull_agent.reporter import MAX_DEAD_LETTERS, StatusReporter

SINK_URL = "https://sink.example.com/functions/v1/update-status"
SYNC_URL = "https://sink.example.com/functions/v1/sync-installed-version"
API_KEY = "anon-key-abc123"
SECRET = "shared-update-secret"

LOGS = [LogEntry("Pulling latest changes...", LogLevel.INFO, "2026-01-01T00:00:00+00:00")]


def _mock_client(status_code: int = 200, side_effect: Exception | None = None) -> AsyncMock:
    """Build an httpx.AsyncClient stand-in usable as an async context manager."""
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.text = "" if status_code < 300 else "internal error"

    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post = AsyncMock(side_effect=side_effect)
    else:
        mock_client.post = AsyncMock(return_value=mock_response)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


@pytest.fixture()
def reporter() -> StatusReporter:
    return StatusReporter(
        sink_url=SINK_URL,
        api_key=API_KEY,
        shared_secret=SECRET,
        version_sync_url=SYNC_URL,
    )


# =====================================================================
# publish()
# =====================================================================


class TestPublish:
    async def test_running_payload(self, reporter: StatusReporter) -> None:
        mock_client = _mock_client()
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            ok = await reporter.publish("upd-1", RunStatus.RUNNING, 20, "Pulling...", LOGS)

        assert ok is True
        call = mock_client.post.call_args
        assert call.args[0] == SINK_URL
        payload = call.kwargs["json"]
        assert payload["updateId"] == "upd-1"
        assert payload["status"] == "running"
        assert payload["progress"] == 20
        assert payload["currentStep"] == "Pulling..."
        assert payload["logs"] == [LOGS[0].to_dict()]
        assert payload["error"] is None
        assert "updatedAt" in payload
        assert "completedAt" not in payload

    @pytest.mark.parametrize("status", [RunStatus.COMPLETED, RunStatus.FAILED])
    async def test_terminal_payload_has_completed_at(self, reporter, status) -> None:
        mock_client = _mock_client()
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            await reporter.publish("upd-1", status, 100, "Done", LOGS, error="x")

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["status"] == status.value
        assert payload["completedAt"] == payload["updatedAt"]
        assert payload["error"] == "x"

    async def test_headers(self, reporter: StatusReporter) -> None:
        mock_client = _mock_client()
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            await reporter.publish("upd-1", RunStatus.RUNNING, 0, "Starting", [])

        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["Content-Type"] == "application/json"
        assert headers["apikey"] == API_KEY
        assert headers["Authorization"] == f"Bearer {API_KEY}"
        assert headers["X-Update-Secret"] == SECRET

    async def test_headers_without_credentials(self) -> None:
        mock_client = _mock_client()
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            await StatusReporter(sink_url=SINK_URL).publish(
                "upd-1", RunStatus.RUNNING, 0, "Starting", []
            )

        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers == {"Content-Type": "application/json"}

    async def test_no_sink_url_is_noop(self) -> None:
        with patch("git_pull_agent.reporter.httpx.AsyncClient") as client_cls:
            ok = await StatusReporter().publish("upd-1", RunStatus.RUNNING, 0, "Starting", [])

        assert ok is False
        client_cls.assert_not_called()

    async def test_no_update_id_is_noop(self, reporter: StatusReporter) -> None:
        with patch("git_pull_agent.reporter.httpx.AsyncClient") as client_cls:
            ok = await reporter.publish(None, RunStatus.RUNNING, 0, "Starting", [])

        assert ok is False
        client_cls.assert_not_called()
        assert reporter.dead_letters == []


# =====================================================================
# Failures and dead letters
# =====================================================================


class TestDeadLetters:
    async def test_rejected_response(self, reporter: StatusReporter) -> None:
        with patch(
            "git_pull_agent.reporter.httpx.AsyncClient", return_value=_mock_client(500)
        ):
            ok = await reporter.publish("upd-1", RunStatus.RUNNING, 5, "Backing up...", [])

        assert ok is False
        [letter] = reporter.dead_letters
        assert letter["kind"] == "status"
        assert letter["reason"] == "HTTP 500"
        assert letter["payload"]["updateId"] == "upd-1"

    async def test_connection_error_does_not_raise(self, reporter: StatusReporter) -> None:
        mock_client = _mock_client(side_effect=httpx.ConnectError("connection refused"))
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            ok = await reporter.publish("upd-1", RunStatus.RUNNING, 5, "Backing up...", [])

        assert ok is False
        assert "connection refused" in reporter.dead_letters[0]["reason"]

    async def test_dead_letters_are_appended_to_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "dead-letters.jsonl"
        reporter = StatusReporter(sink_url=SINK_URL, dead_letter_path=path)
        mock_client = _mock_client(side_effect=httpx.ReadTimeout("timed out"))

        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            await reporter.publish("upd-1", RunStatus.RUNNING, 5, "one", [])
            await reporter.publish("upd-1", RunStatus.FAILED, 5, "two", [], error="boom")

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["payload"]["error"] == "boom"

    async def test_dead_letter_file_error_is_not_raised(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        reporter = StatusReporter(sink_url=SINK_URL, dead_letter_path=blocker / "letters.jsonl")

        with patch(
            "git_pull_agent.reporter.httpx.AsyncClient", return_value=_mock_client(503)
        ):
            ok = await reporter.publish("upd-1", RunStatus.RUNNING, 5, "one", [])

        assert ok is False
        assert len(reporter.dead_letters) == 1

    async def test_in_memory_dead_letters_are_bounded(self, reporter: StatusReporter) -> None:
        with patch(
            "git_pull_agent.reporter.httpx.AsyncClient", return_value=_mock_client(502)
        ):
            for i in range(MAX_DEAD_LETTERS + 5):
                await reporter.publish("upd-1", RunStatus.RUNNING, 0, f"step {i}", [])

        letters = reporter.dead_letters
        assert len(letters) == MAX_DEAD_LETTERS
        assert letters[-1]["payload"]["currentStep"] == f"step {MAX_DEAD_LETTERS + 4}"


# =====================================================================
# sync_installed_version()
# =====================================================================


class TestVersionSync:
    async def test_posts_commit_sha(self, reporter: StatusReporter) -> None:
        mock_client = _mock_client()
        with patch("git_pull_agent.reporter.httpx.AsyncClient", return_value=mock_client):
            ok = await reporter.sync_installed_version("0123456789abcdef")

        assert ok is True
        call = mock_client.post.call_args
        assert call.args[0] == SYNC_URL
        assert call.kwargs["json"] == {"commitSha": "0123456789abcdef"}

    async def test_not_configured(self) -> None:
        reporter = StatusReporter(sink_url=SINK_URL)
        with patch("git_pull_agent.reporter.httpx.AsyncClient") as client_cls:
            ok = await reporter.sync_installed_version("0123456")

        assert ok is False
        assert reporter.version_sync_enabled is False
        client_cls.assert_not_called()

    async def test_failure_returns_false(self, reporter: StatusReporter) -> None:
        with patch(
            "git_pull_agent.reporter.httpx.AsyncClient", return_value=_mock_client(404)
        ):
            ok = await reporter.sync_installed_version("0123456")

        assert ok is False
        assert reporter.dead_letters[0]["kind"] == "version_sync"


class TestFromSettings:
    def test_from_settings(self, make_settings) -> None:
        settings = make_settings(
            status_sink_url=SINK_URL,
            status_sink_api_key=API_KEY,
            update_secret=SECRET,
            version_sync_url=SYNC_URL,
        )
        reporter = StatusReporter.from_settings(settings)

        assert reporter.enabled is True
        assert reporter.version_sync_enabled is True
        assert reporter._headers()["X-Update-Secret"] == SECRET


class TestMalformedUrls:
    """A badly configured endpoint is dead-lettered like an unreachable one."""

    async def test_invalid_sink_port(self) -> None:
        reporter = StatusReporter(sink_url="http://sink.example.com:notaport/update")

        ok = await reporter.publish("upd-1", RunStatus.RUNNING, 0, "Starting", [])

        assert ok is False
        [letter] = reporter.dead_letters
        assert letter["kind"] == "status"
        assert "notaport" in letter["reason"]

    async def test_invalid_version_sync_port(self) -> None:
        reporter = StatusReporter(version_sync_url="http://sink.example.com:notaport/sync")

        ok = await reporter.sync_installed_version("0123456")

        assert ok is False
        assert reporter.dead_letters[0]["kind"] == "version_sync"
