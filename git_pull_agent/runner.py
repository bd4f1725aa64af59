"""Process runner for pipeline stages.

Commands are executed from an explicit argument list (never through a
shell) on the event loop's subprocess machinery, so a long build only
suspends the task that owns the pipeline run.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from git_pull_agent.logging import get_logger

log = get_logger("git_pull_agent.runner")

OUTPUT_TAIL_CHARS = 2000
KILL_GRACE_SECONDS = 5.0


def tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    """Return the last *limit* characters of *text*, stripped."""
    text = text.strip()
    return text[-limit:] if len(text) > limit else text


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(argv)


class CommandError(Exception):
    """A command exited non-zero, could not start, or timed out."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.stderr = stderr


class CommandCancelled(CommandError):
    """A command was killed because its run was cancelled."""


class CancellationToken:
    """Cooperative cancellation flag shared by one pipeline run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CommandCancelled(f"Update cancelled: {self._reason}")


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a successful command."""

    argv: tuple[str, ...]
    stdout: str
    stderr: str
    returncode: int = 0


async def run_command(
    argv: Sequence[str],
    cwd: str | Path,
    *,
    timeout: float | None = None,
    cancel_token: CancellationToken | None = None,
) -> CommandResult:
    """Run *argv* in *cwd* and return its output.

    Raises ``CommandError`` on non-zero exit, start failure or timeout, and
    ``CommandCancelled`` if *cancel_token* fires while the command runs.
    """
    if not argv:
        raise CommandError("Empty command")
    command = format_argv(argv)
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    log.debug("command_started", command=command, cwd=str(cwd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            start_new_session=True,
        )
    except OSError as exc:
        log.warning("command_start_failed", command=command, error=str(exc))
        raise CommandError(f"Unable to start {command}: {exc}") from exc

    communicate = asyncio.ensure_future(proc.communicate())
    waiters: set[asyncio.Future[object]] = {communicate}
    cancel_wait: asyncio.Future[None] | None = None
    if cancel_token is not None:
        cancel_wait = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_wait)

    try:
        done, _pending = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if communicate not in done:
            _kill(proc)
            try:
                stdout_b, stderr_b = await asyncio.wait_for(communicate, KILL_GRACE_SECONDS)
            except TimeoutError:
                stdout_b, stderr_b = b"", b""
            stderr = tail(stderr_b.decode(errors="replace"))
            if cancel_token is not None and cancel_token.cancelled:
                log.warning("command_cancelled", command=command)
                raise CommandCancelled(f"Update cancelled: {cancel_token.reason}", stderr)
            log.warning("command_timed_out", command=command, timeout=timeout)
            raise CommandError(f"Command timed out after {timeout:g}s: {command}", stderr)
        stdout_b, stderr_b = communicate.result()
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if not communicate.done():
            _kill(proc)
            communicate.cancel()

    stdout = stdout_b.decode(errors="replace")
    stderr = stderr_b.decode(errors="replace")
    if proc.returncode != 0:
        log.warning(
            "command_failed",
            command=command,
            returncode=proc.returncode,
            stderr=tail(stderr, 500),
        )
        raise CommandError(
            f"Command failed (exit {proc.returncode}): {command}",
            tail(stderr),
        )

    log.debug("command_succeeded", command=command)
    return CommandResult(argv=tuple(argv), stdout=stdout, stderr=stderr)


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the command and everything it spawned (it leads its own session)."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
