"""Update executor: owns background runs for one working directory.

Each trigger becomes an asyncio task that waits on a single-run lock, so
runs against the same checkout never overlap: a trigger arriving while a
run is in progress is queued behind it. The running pipeline can be
cancelled through its cancellation token.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from git_pull_agent.config import Settings
from git_pull_agent.logging import get_logger
from git_pull_agent.models import PipelineRun, RuntimeDescriptor, Stage, UpdateTrigger
from git_pull_agent.pipeline import Runner, UpdatePipeline
from git_pull_agent.reporter import StatusReporter
from git_pull_agent.runner import CancellationToken, run_command
from git_pull_agent.runtime import RuntimeLocator, get_runtime_locator
from git_pull_agent.stages import stages_from_settings

log = get_logger("git_pull_agent.executor")

StageFactory = Callable[[RuntimeDescriptor], Sequence[Stage]]


class UpdateExecutor:
    """Starts pipeline runs in the background, one at a time."""

    def __init__(
        self,
        settings: Settings,
        reporter: StatusReporter | None = None,
        locator: RuntimeLocator | None = None,
        stage_factory: StageFactory | None = None,
        runner: Runner = run_command,
    ) -> None:
        self._settings = settings
        self._app_dir = settings.app_path
        self._reporter = reporter or StatusReporter.from_settings(settings)
        self._locator = locator or get_runtime_locator()
        self._stage_factory = stage_factory or (
            lambda runtime: stages_from_settings(settings, runtime.resolved_executable_path)
        )
        self._runner = runner
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[PipelineRun | None]] = set()
        self._queued = 0
        self._current: UpdatePipeline | None = None
        self._last_run: PipelineRun | None = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Public status surface
    # ------------------------------------------------------------------

    @property
    def app_dir(self) -> Path:
        return self._app_dir

    @property
    def reporter(self) -> StatusReporter:
        return self._reporter

    @property
    def state(self) -> str:
        return "running" if self._current is not None else "idle"

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def queued(self) -> int:
        return self._queued

    @property
    def current_run(self) -> PipelineRun | None:
        return self._current.run if self._current is not None else None

    @property
    def last_run(self) -> PipelineRun | None:
        return self._last_run

    def runtime(self) -> RuntimeDescriptor:
        return self._locator.resolve()

    def status_snapshot(self) -> dict[str, Any]:
        """Return executor status fields for API responses."""
        current = self.current_run
        last = self._last_run
        return {
            "state": self.state,
            "queued": self._queued,
            "currentRun": current.to_dict() if current else None,
            "lastRun": last.to_dict() if last else None,
            "runtime": self.runtime().to_dict(),
            "deadLetters": len(self._reporter.dead_letters),
        }

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def trigger(self, trigger: UpdateTrigger) -> asyncio.Task[PipelineRun | None]:
        """Schedule a run and return its task without waiting for it."""
        self._queued += 1
        task = asyncio.create_task(
            self._run(trigger),
            name=f"git-pull-{trigger.update_id or 'anonymous'}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        log.info(
            "update_triggered",
            update_id=trigger.update_id,
            queued=self._queued,
            busy=self.is_busy,
        )
        return task

    def cancel(self, reason: str = "cancelled by operator") -> bool:
        """Cancel the running pipeline. Returns False if nothing is running."""
        if self._current is None:
            return False
        self._current.cancel_token.cancel(reason)
        log.warning("update_cancel_requested", update_id=self._current.run.update_id, reason=reason)
        return True

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel the running pipeline and wait for background tasks to finish."""
        self._shutting_down = True
        self.cancel("service shutting down")
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, trigger: UpdateTrigger) -> PipelineRun | None:
        acquired = False
        try:
            async with self._lock:
                acquired = True
                self._queued -= 1
                if self._shutting_down:
                    log.warning("update_skipped_shutdown", update_id=trigger.update_id)
                    return None
                pipeline = UpdatePipeline(
                    app_dir=self._app_dir,
                    stages=self._stage_factory(self.runtime()),
                    reporter=self._reporter,
                    update_id=trigger.update_id,
                    config_path=self._settings.env_file_path,
                    cancel_token=CancellationToken(),
                    runner=self._runner,
                )
                self._current = pipeline
                try:
                    return await pipeline.execute()
                finally:
                    self._current = None
                    self._last_run = pipeline.run
        finally:
            if not acquired:
                self._queued -= 1

    def _on_task_done(self, task: asyncio.Task[PipelineRun | None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.warning("update_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            log.error("update_task_crashed", task=task.get_name(), error=str(exc))
            return
        run = task.result()
        if run is None:
            return
        if run.error:
            log.error(
                "update_finished",
                update_id=run.update_id,
                status=run.status.value,
                error=run.error,
            )
        else:
            log.info("update_finished", update_id=run.update_id, status=run.status.value)
