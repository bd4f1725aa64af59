"""Outbound status reporting to the status sink.

Every push is best-effort: transport errors and rejected responses are
logged locally and recorded as dead letters, never raised to the
pipeline. Pushes carry no sequence number, so the sink may observe them
out of order.
"""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import httpx

from git_pull_agent.config import Settings
from git_pull_agent.logging import get_logger
from git_pull_agent.models import LogEntry, RunStatus, now_iso

log = get_logger("git_pull_agent.reporter")

MAX_DEAD_LETTERS = 100


class StatusReporter:
    """Pushes run progress, logs and errors to the status sink."""

    def __init__(
        self,
        sink_url: str = "",
        api_key: str = "",
        shared_secret: str = "",
        version_sync_url: str = "",
        dead_letter_path: str | Path | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._sink_url = sink_url.strip()
        self._api_key = api_key
        self._shared_secret = shared_secret
        self._version_sync_url = version_sync_url.strip()
        self._dead_letter_path = Path(dead_letter_path) if dead_letter_path else None
        self._timeout = timeout
        self._dead_letters: deque[dict[str, Any]] = deque(maxlen=MAX_DEAD_LETTERS)

    @classmethod
    def from_settings(cls, settings: Settings) -> StatusReporter:
        return cls(
            sink_url=settings.status_sink_url,
            api_key=settings.status_sink_api_key.get_secret_value(),
            shared_secret=settings.update_secret.get_secret_value(),
            version_sync_url=settings.version_sync_url,
            dead_letter_path=settings.dead_letter_path or None,
            timeout=settings.status_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._sink_url)

    @property
    def version_sync_enabled(self) -> bool:
        return bool(self._version_sync_url)

    @property
    def dead_letters(self) -> list[dict[str, Any]]:
        """Status pushes that could not be delivered, oldest first."""
        return list(self._dead_letters)

    # ------------------------------------------------------------------
    # Status pushes
    # ------------------------------------------------------------------

    async def publish(
        self,
        update_id: str | None,
        status: RunStatus,
        progress: int,
        current_step: str,
        logs: Sequence[LogEntry],
        error: str | None = None,
    ) -> bool:
        """Push one status change. Returns True if the sink accepted it."""
        if not self._sink_url or not update_id:
            log.debug("status_publish_skipped", update_id=update_id, status=status.value)
            return False

        payload: dict[str, Any] = {
            "updateId": update_id,
            "status": status.value,
            "progress": progress,
            "currentStep": current_step,
            "logs": [entry.to_dict() for entry in logs],
            "error": error,
            "updatedAt": now_iso(),
        }
        if status is not RunStatus.RUNNING:
            payload["completedAt"] = payload["updatedAt"]

        return await self._post(self._sink_url, payload, kind="status")

    async def sync_installed_version(self, commit_sha: str) -> bool:
        """Report the newly installed commit SHA to the version-sync endpoint."""
        if not self._version_sync_url:
            log.info("version_sync_not_configured")
            return False
        if not commit_sha:
            return False
        return await self._post(
            self._version_sync_url,
            {"commitSha": commit_sha},
            kind="version_sync",
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._shared_secret:
            headers["X-Update-Secret"] = self._shared_secret
        return headers

    async def _post(self, url: str, payload: dict[str, Any], kind: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("status_push_failed", kind=kind, error=str(exc))
            self._record_dead_letter(kind, payload, str(exc))
            return False

        if 200 <= resp.status_code < 300:
            log.debug("status_push_sent", kind=kind, status=payload.get("status"))
            return True

        log.warning(
            "status_push_rejected",
            kind=kind,
            status_code=resp.status_code,
            body=resp.text[:200],
        )
        self._record_dead_letter(kind, payload, f"HTTP {resp.status_code}")
        return False

    def _record_dead_letter(self, kind: str, payload: dict[str, Any], reason: str) -> None:
        letter = {"kind": kind, "reason": reason, "failedAt": now_iso(), "payload": payload}
        self._dead_letters.append(letter)
        if self._dead_letter_path is None:
            return
        try:
            self._dead_letter_path.parent.mkdir(parents=True, exist_ok=True)
            with self._dead_letter_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(letter, sort_keys=True) + "\n")
        except OSError:
            log.exception("dead_letter_write_failed", path=str(self._dead_letter_path))
