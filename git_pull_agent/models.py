"""Data models for the git pull agent.

All models are plain dataclasses with ``to_dict``/``from_dict`` for the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ------------------------------------------------------------------
# Trigger
# ------------------------------------------------------------------


@dataclass
class UpdateTrigger:
    """An inbound request to start one pipeline run."""

    update_id: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_dict(cls, data: Any) -> UpdateTrigger:
        """Build a trigger from a parsed request body.

        Anything that is not a JSON object with a non-empty string
        ``updateId`` yields a trigger without an id.
        """
        if not isinstance(data, dict):
            return cls()
        update_id = data.get("updateId")
        if not isinstance(update_id, str) or not update_id.strip():
            return cls()
        return cls(update_id=update_id.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "updateId": self.update_id,
            "receivedAt": self.received_at.isoformat(),
        }


# ------------------------------------------------------------------
# Logs
# ------------------------------------------------------------------


class LogLevel(Enum):
    """Severity of a run log entry, as understood by the status sink."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    """A single append-only run log line."""

    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "level": self.level.value,
        }


# ------------------------------------------------------------------
# Stages
# ------------------------------------------------------------------


class StageKind(Enum):
    """How the pipeline driver executes a stage."""

    BACKUP_CONFIG = "backup_config"
    RESTORE_CONFIG = "restore_config"
    COMMAND = "command"
    READ_COMMIT = "read_commit"
    SYNC_VERSION = "sync_version"
    VERIFY_DEPENDENCY = "verify_dependency"
    CLEANUP_BACKUP = "cleanup_backup"


@dataclass(frozen=True)
class Stage:
    """One weighted step of the update pipeline."""

    name: str
    label: str
    weight: int
    kind: StageKind = StageKind.COMMAND
    argv: tuple[str, ...] = ()
    timeout: float | None = None
    corrective_argv: tuple[str, ...] = ()
    best_effort: bool = False
    rollback_on_failure: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "weight": self.weight,
            "kind": self.kind.value,
            "argv": list(self.argv),
        }


# ------------------------------------------------------------------
# Pipeline run
# ------------------------------------------------------------------


class RunStatus(Enum):
    """Status of a pipeline run as pushed to the status sink."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PipelineRun:
    """Mutable state of one pipeline run, owned by the pipeline driver."""

    stages: list[Stage]
    update_id: str | None = None
    current_stage_index: int = 0
    progress: int = 0
    status: RunStatus = RunStatus.RUNNING
    logs: list[LogEntry] = field(default_factory=list)
    error: str | None = None
    commit_sha: str | None = None
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None

    @property
    def current_stage(self) -> Stage | None:
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    @property
    def finished(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def add_log(self, message: str, level: LogLevel = LogLevel.INFO) -> LogEntry:
        entry = LogEntry(message=message, level=level)
        self.logs.append(entry)
        return entry

    def advance_progress(self, value: int) -> int:
        """Raise progress to *value*; progress never goes down or past 100."""
        self.progress = max(self.progress, min(100, value))
        return self.progress

    def to_dict(self) -> dict[str, Any]:
        stage = self.current_stage
        return {
            "updateId": self.update_id,
            "status": self.status.value,
            "progress": self.progress,
            "currentStage": stage.name if stage else None,
            "currentStageIndex": self.current_stage_index,
            "stages": [s.name for s in self.stages],
            "logs": [entry.to_dict() for entry in self.logs],
            "error": self.error,
            "commitSha": self.commit_sha,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


# ------------------------------------------------------------------
# Config backup / runtime
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigBackup:
    """Point-in-time copy of the live config file."""

    original_path: Path
    backup_path: Path
    created: bool = False

    @property
    def exists(self) -> bool:
        """True while the copy made by this run is still on disk."""
        return self.created and self.backup_path.is_file()


@dataclass(frozen=True)
class RuntimeDescriptor:
    """Resolved package-manager executable for the rebuild stages."""

    resolved_executable_path: str
    is_generic_fallback: bool = False
    source: str = "generic"

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.resolved_executable_path,
            "isGenericFallback": self.is_generic_fallback,
            "source": self.source,
        }
