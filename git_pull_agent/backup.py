"""Backup and restore of the managed app's local config file.

``git pull`` can overwrite the live ``.env``; the pipeline copies it aside
before fetching and copies it back afterwards (or during rollback). Restore
always goes backup -> original and deletes the backup, so it is safe to call
any number of times.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from git_pull_agent.logging import get_logger
from git_pull_agent.models import ConfigBackup

log = get_logger("git_pull_agent.backup")

BACKUP_SUFFIX = ".backup"


def default_backup_path(config_path: Path) -> Path:
    return config_path.with_name(config_path.name + BACKUP_SUFFIX)


def create_backup(config_path: str | Path, backup_path: str | Path | None = None) -> ConfigBackup:
    """Copy the config file aside if it exists.

    A missing config file is not an error: the returned backup does not
    exist. A backup file already on disk from an earlier run is left alone
    and never treated as this run's copy.
    """
    original = Path(config_path)
    target = Path(backup_path) if backup_path is not None else default_backup_path(original)
    if not original.is_file():
        if target.is_file():
            log.warning("config_backup_stale", backup=str(target))
        log.info("config_backup_skipped", path=str(original))
        return ConfigBackup(original_path=original, backup_path=target)

    shutil.copy2(original, target)
    log.info("config_backup_created", path=str(original), backup=str(target))
    return ConfigBackup(original_path=original, backup_path=target, created=True)


def restore_backup(backup: ConfigBackup | None) -> bool:
    """Copy the backup over the live file and delete the backup.

    Returns False (and does nothing) when there is no backup on disk.
    """
    if backup is None or not backup.exists:
        return False

    tmp_path = backup.original_path.with_name(backup.original_path.name + ".restore.tmp")
    shutil.copy2(backup.backup_path, tmp_path)
    tmp_path.replace(backup.original_path)
    backup.backup_path.unlink(missing_ok=True)
    log.info("config_backup_restored", path=str(backup.original_path))
    return True


def discard_backup(backup: ConfigBackup | None) -> bool:
    """Delete a leftover backup file, if any."""
    if backup is None or not backup.exists:
        return False
    backup.backup_path.unlink(missing_ok=True)
    log.info("config_backup_discarded", backup=str(backup.backup_path))
    return True
