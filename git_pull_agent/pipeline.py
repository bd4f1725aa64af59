"""Update pipeline: drives one run through the stage list.

Lifecycle of a run:
1. Publish cumulative progress and log entry for each stage, in order
2. Back up ``.env`` before the pull, restore it right after
3. Run every command stage through the process runner
4. Self-heal the version sync (warn) and critical dependency (reinstall)
5. On any other failure restore ``.env``, publish ``failed`` and stop
6. On success publish 100% ``completed`` and drop any leftover backup
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import Any

from git_pull_agent.backup import create_backup, discard_backup, restore_backup
from git_pull_agent.logging import get_logger
from git_pull_agent.models import (
    ConfigBackup,
    LogLevel,
    PipelineRun,
    RunStatus,
    Stage,
    StageKind,
    now_iso,
)
from git_pull_agent.reporter import StatusReporter
from git_pull_agent.runner import (
    CancellationToken,
    CommandCancelled,
    CommandError,
    CommandResult,
    run_command,
    tail,
)

log = get_logger("git_pull_agent.pipeline")

Runner = Callable[..., Awaitable[CommandResult]]


class UpdatePipeline:
    """State machine for a single update run (Running -> Completed | Failed)."""

    def __init__(
        self,
        app_dir: str | Path,
        stages: Sequence[Stage],
        reporter: StatusReporter,
        *,
        update_id: str | None = None,
        config_path: str | Path | None = None,
        backup_path: str | Path | None = None,
        cancel_token: CancellationToken | None = None,
        runner: Runner = run_command,
    ) -> None:
        self._app_dir = Path(app_dir)
        self._config_path = Path(config_path) if config_path else self._app_dir / ".env"
        self._backup_path = Path(backup_path) if backup_path else None
        self._reporter = reporter
        self._cancel_token = cancel_token or CancellationToken()
        self._runner = runner
        self._backup: ConfigBackup | None = None
        self._log = log.bind(update_id=update_id)
        self.run = PipelineRun(stages=list(stages), update_id=update_id)

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def backup(self) -> ConfigBackup | None:
        return self._backup

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def execute(self) -> PipelineRun:
        """Run every stage in order and return the finished run."""
        run = self.run
        self._add_log("Starting update process...")
        self._log.info("pipeline_started", stages=len(run.stages), app_dir=str(self._app_dir))

        try:
            for index, stage in enumerate(run.stages):
                self._cancel_token.raise_if_cancelled()
                run.current_stage_index = index
                run.advance_progress(sum(s.weight for s in run.stages[:index]))
                await self._publish(stage.label)
                self._add_log(stage.label)
                self._log.info(
                    "pipeline_stage_started",
                    stage=stage.name,
                    index=index,
                    progress=run.progress,
                )
                await self._execute_stage(stage)
        except CommandError as exc:
            await self._fail(exc.message, exc.stderr)
            return run
        except asyncio.CancelledError:
            self._log.warning("pipeline_task_cancelled")
            self._rollback()
            raise
        except Exception as exc:
            self._log.exception("pipeline_unexpected_error")
            await self._fail(f"Unexpected error: {exc}")
            return run

        await self._complete()
        return run

    async def _execute_stage(self, stage: Stage) -> None:
        handlers: dict[StageKind, Callable[[Stage], Awaitable[None]]] = {
            StageKind.BACKUP_CONFIG: self._backup_config,
            StageKind.RESTORE_CONFIG: self._restore_config,
            StageKind.COMMAND: self._command,
            StageKind.READ_COMMIT: self._read_commit,
            StageKind.SYNC_VERSION: self._sync_version,
            StageKind.VERIFY_DEPENDENCY: self._verify_dependency,
            StageKind.CLEANUP_BACKUP: self._cleanup_backup,
        }
        await handlers[stage.kind](stage)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _backup_config(self, stage: Stage) -> None:
        try:
            self._backup = create_backup(self._config_path, self._backup_path)
        except OSError as exc:
            raise CommandError(f"Could not back up {self._config_path.name}: {exc}") from exc
        if self._backup.exists:
            self._add_log(f"{self._config_path.name} backed up", LogLevel.SUCCESS)
        else:
            self._add_log(f"No {self._config_path.name} found, skipping backup")

    async def _restore_config(self, stage: Stage) -> None:
        try:
            restored = restore_backup(self._backup)
        except OSError as exc:
            raise CommandError(f"Could not restore {self._config_path.name}: {exc}") from exc
        if restored:
            self._add_log(f"{self._config_path.name} restored", LogLevel.SUCCESS)

    async def _command(self, stage: Stage) -> None:
        await self._run_argv(stage, stage.argv)

    async def _read_commit(self, stage: Stage) -> None:
        result = await self._run_argv(stage, stage.argv, record_output=False)
        sha = result.stdout.strip()
        self.run.commit_sha = sha or None
        if sha:
            self._add_log(f"Current commit: {sha[:7]}", LogLevel.SUCCESS)

    async def _sync_version(self, stage: Stage) -> None:
        if not self._reporter.version_sync_enabled:
            self._add_log("Version sync not configured, skipping")
            return
        if not self.run.commit_sha:
            self._add_log("No commit SHA to sync, skipping", LogLevel.WARNING)
            return
        if await self._reporter.sync_installed_version(self.run.commit_sha):
            self._add_log("Installed version synced", LogLevel.SUCCESS)
        else:
            self._add_log("Could not sync installed version, continuing", LogLevel.WARNING)

    async def _verify_dependency(self, stage: Stage) -> None:
        try:
            await self._run_argv(stage, stage.argv, record_output=False)
        except CommandCancelled:
            raise
        except CommandError as exc:
            if not stage.corrective_argv:
                raise
            self._add_log(
                f"Dependency check failed ({exc.message}), reinstalling",
                LogLevel.WARNING,
            )
            self._log.warning("pipeline_dependency_missing", stage=stage.name)
            await self._run_argv(stage, stage.corrective_argv)
            self._add_log("Corrective install finished", LogLevel.SUCCESS)
            return
        self._add_log("Critical dependency present", LogLevel.SUCCESS)

    async def _cleanup_backup(self, stage: Stage) -> None:
        if self._discard_backup():
            self._add_log("Leftover backup removed")

    async def _run_argv(
        self,
        stage: Stage,
        argv: Sequence[str],
        record_output: bool = True,
    ) -> CommandResult:
        result = await self._runner(
            argv,
            self._app_dir,
            timeout=stage.timeout,
            cancel_token=self._cancel_token,
        )
        if record_output and result.stdout.strip():
            self._add_log(tail(result.stdout), LogLevel.SUCCESS)
        if result.stderr.strip():
            # Many tools write progress to stderr on success
            self._add_log(tail(result.stderr), LogLevel.WARNING)
        return result

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _fail(self, message: str, stderr: str = "") -> None:
        run = self.run
        run.status = RunStatus.FAILED
        run.error = message
        run.completed_at = now_iso()

        stage = run.current_stage
        if stage is None or stage.rollback_on_failure:
            self._rollback()

        self._add_log(f"Update failed: {message}", LogLevel.ERROR)
        if stderr:
            self._add_log(stderr, LogLevel.ERROR)
        self._log.error(
            "pipeline_failed",
            stage=stage.name if stage else None,
            error=message,
        )
        await self._publish("Update failed", error=message)

    def _rollback(self) -> None:
        """Put the pre-run config back. Never raises."""
        if self._backup is None or not self._backup.exists:
            return
        try:
            restore_backup(self._backup)
        except OSError as exc:
            self._add_log(f"Could not restore {self._config_path.name}: {exc}", LogLevel.ERROR)
            self._log.error("pipeline_rollback_failed", error=str(exc))
            return
        self._add_log(f"{self._config_path.name} restored from backup", LogLevel.WARNING)

    async def _complete(self) -> None:
        run = self.run
        run.status = RunStatus.COMPLETED
        run.advance_progress(100)
        run.completed_at = now_iso()
        self._discard_backup()
        self._add_log("Update completed successfully!", LogLevel.SUCCESS)
        self._log.info("pipeline_completed", commit_sha=run.commit_sha)
        await self._publish("Update completed")

    def _discard_backup(self) -> bool:
        try:
            return discard_backup(self._backup)
        except OSError as exc:
            self._add_log(f"Could not remove backup: {exc}", LogLevel.WARNING)
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _publish(self, current_step: str, error: str | None = None) -> None:
        run = self.run
        await self._reporter.publish(
            run.update_id,
            run.status,
            run.progress,
            current_step,
            run.logs,
            error,
        )

    def _add_log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        self.run.add_log(message, level)
        fields: dict[str, Any] = {"message": message, "level": level.value}
        if level is LogLevel.ERROR:
            self._log.error("pipeline_log", **fields)
        elif level is LogLevel.WARNING:
            self._log.warning("pipeline_log", **fields)
        else:
            self._log.info("pipeline_log", **fields)
