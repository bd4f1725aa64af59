"""The fixed, ordered stage set of an update run."""

from __future__ import annotations

from git_pull_agent.config import Settings
from git_pull_agent.models import Stage, StageKind

BACKUP_ENV = "backup-env"
STASH_CHANGES = "stash-changes"
PULL = "pull"
RESTORE_ENV = "restore-env"
READ_COMMIT_SHA = "read-commit-sha"
SYNC_VERSION = "sync-version"
CLEAN_ARTIFACTS = "clean-artifacts"
INSTALL_DEPENDENCIES = "install-dependencies"
VERIFY_CRITICAL_DEPENDENCY = "verify-critical-dependency"
BUILD = "build"
CLEANUP_BACKUP = "cleanup-backup"


def build_stages(
    npm: str,
    *,
    remote: str = "origin",
    branch: str = "main",
    critical_dependency: str = "vite",
    command_timeout: float = 300,
    install_timeout: float = 1200,
) -> list[Stage]:
    """Return the update stages in execution order. Weights sum to 100."""
    return [
        Stage(BACKUP_ENV, "Backing up configuration...", 5, StageKind.BACKUP_CONFIG),
        Stage(
            STASH_CHANGES,
            "Stashing local changes...",
            5,
            argv=("git", "stash"),
            timeout=command_timeout,
        ),
        Stage(
            PULL,
            "Pulling latest changes...",
            15,
            argv=("git", "pull", remote, branch),
            timeout=command_timeout,
        ),
        Stage(RESTORE_ENV, "Restoring configuration...", 5, StageKind.RESTORE_CONFIG),
        Stage(
            READ_COMMIT_SHA,
            "Reading commit SHA...",
            5,
            StageKind.READ_COMMIT,
            argv=("git", "rev-parse", "HEAD"),
            timeout=command_timeout,
        ),
        Stage(
            SYNC_VERSION,
            "Syncing installed version...",
            5,
            StageKind.SYNC_VERSION,
            best_effort=True,
        ),
        Stage(
            CLEAN_ARTIFACTS,
            "Cleaning build artifacts...",
            5,
            argv=("rm", "-rf", "dist", "node_modules/.vite"),
            timeout=command_timeout,
        ),
        Stage(
            INSTALL_DEPENDENCIES,
            "Installing dependencies...",
            25,
            argv=(npm, "install", "--no-audit", "--no-fund"),
            timeout=install_timeout,
        ),
        Stage(
            VERIFY_CRITICAL_DEPENDENCY,
            f"Verifying {critical_dependency}...",
            5,
            StageKind.VERIFY_DEPENDENCY,
            argv=(npm, "ls", critical_dependency),
            timeout=command_timeout,
            corrective_argv=(npm, "install", "--no-save", critical_dependency),
        ),
        Stage(
            BUILD,
            "Building application...",
            20,
            argv=(npm, "run", "build"),
            timeout=install_timeout,
        ),
        Stage(CLEANUP_BACKUP, "Finalizing...", 5, StageKind.CLEANUP_BACKUP),
    ]


def stages_from_settings(settings: Settings, npm: str) -> list[Stage]:
    return build_stages(
        npm,
        remote=settings.git_remote,
        branch=settings.git_branch,
        critical_dependency=settings.critical_dependency,
        command_timeout=settings.command_timeout_seconds,
        install_timeout=settings.install_timeout_seconds,
    )
