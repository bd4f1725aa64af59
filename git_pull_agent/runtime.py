"""Runtime locator: finds the npm executable used by the rebuild stages.

Resolution is a declarative list of probes evaluated in priority order:

1. Explicit ``NPM_PATH`` override (only if the file exists)
2. nvm installs of the preferred Node major, highest version first
3. nvm installs of the older fallback major
4. Fixed install locations (nvm ``current`` symlink, system paths)
5. ``PATH`` lookup
6. Bare ``npm`` marked as a generic fallback

The result is resolved once and cached for the lifetime of the process.
"""

from __future__ import annotations

import re
import shutil
from collections.abc import Callable, Iterable, Sequence
from functools import lru_cache
from pathlib import Path

from git_pull_agent.config import get_settings
from git_pull_agent.logging import get_logger
from git_pull_agent.models import RuntimeDescriptor

log = get_logger("git_pull_agent.runtime")

GENERIC_COMMAND = "npm"

SYSTEM_NPM_PATHS: tuple[str, ...] = (
    "/usr/local/bin/npm",
    "/usr/bin/npm",
    "/opt/homebrew/bin/npm",
)

_NODE_VERSION_RE = re.compile(r"^v?(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)$")

Probe = Callable[[], str | None]


def parse_node_version(name: str) -> tuple[int, int, int] | None:
    """Parse an nvm version directory name (``v20.11.1``) into a tuple."""
    m = _NODE_VERSION_RE.match(name.strip())
    if m is None:
        return None
    return int(m.group("major")), int(m.group("minor")), int(m.group("patch"))


class OverrideProbe:
    """Explicit executable path from configuration."""

    name = "override"

    def __init__(self, path: str) -> None:
        self._path = path

    def __call__(self) -> str | None:
        if not self._path:
            return None
        candidate = Path(self._path).expanduser()
        return str(candidate) if candidate.is_file() else None


class VersionManagerProbe:
    """Scan ``<nvm_dir>/versions/node`` for installs of one major version."""

    def __init__(self, nvm_dir: str | Path, major: int, executable: str = "npm") -> None:
        self._versions_dir = Path(nvm_dir).expanduser() / "versions" / "node"
        self._major = major
        self._executable = executable
        self.name = f"nvm-v{major}"

    def __call__(self) -> str | None:
        if not self._versions_dir.is_dir():
            return None
        installs: list[tuple[tuple[int, int, int], Path]] = []
        for entry in self._versions_dir.iterdir():
            version = parse_node_version(entry.name)
            if version is None or version[0] != self._major:
                continue
            installs.append((version, entry))
        for _version, entry in sorted(installs, key=lambda item: item[0], reverse=True):
            candidate = entry / "bin" / self._executable
            if candidate.is_file():
                return str(candidate)
        return None


class FixedPathProbe:
    """Try a fixed, ordered list of install locations."""

    name = "fixed"

    def __init__(self, paths: Iterable[str | Path]) -> None:
        self._paths = [Path(p).expanduser() for p in paths]

    def __call__(self) -> str | None:
        for candidate in self._paths:
            if candidate.is_file():
                return str(candidate)
        return None


class PathLookupProbe:
    """Look the executable up on ``PATH``."""

    name = "path"

    def __init__(self, executable: str = GENERIC_COMMAND) -> None:
        self._executable = executable

    def __call__(self) -> str | None:
        return shutil.which(self._executable)


def default_probes(
    npm_path: str,
    nvm_dir: str,
    major: int,
    fallback_major: int,
) -> list[Probe]:
    """Build the standard probe chain."""
    nvm_root = Path(nvm_dir).expanduser()
    return [
        OverrideProbe(npm_path),
        VersionManagerProbe(nvm_root, major),
        VersionManagerProbe(nvm_root, fallback_major),
        FixedPathProbe([nvm_root / "current" / "bin" / "npm", *SYSTEM_NPM_PATHS]),
        PathLookupProbe(GENERIC_COMMAND),
    ]


class RuntimeLocator:
    """Resolves the npm executable once and remembers the answer."""

    def __init__(self, probes: Sequence[Probe]) -> None:
        self._probes = list(probes)
        self._resolved: RuntimeDescriptor | None = None

    @property
    def resolved(self) -> RuntimeDescriptor | None:
        return self._resolved

    def resolve(self) -> RuntimeDescriptor:
        """Return the cached descriptor, resolving it on first use."""
        if self._resolved is None:
            self._resolved = self._resolve()
        return self._resolved

    def _resolve(self) -> RuntimeDescriptor:
        for probe in self._probes:
            source = getattr(probe, "name", type(probe).__name__)
            try:
                path = probe()
            except OSError as exc:
                log.debug("runtime_probe_failed", probe=source, error=str(exc))
                continue
            if path:
                log.info("runtime_resolved", probe=source, path=path)
                return RuntimeDescriptor(resolved_executable_path=path, source=source)

        log.warning("runtime_generic_fallback", command=GENERIC_COMMAND)
        return RuntimeDescriptor(
            resolved_executable_path=GENERIC_COMMAND,
            is_generic_fallback=True,
            source="generic",
        )


@lru_cache
def get_runtime_locator() -> RuntimeLocator:
    """Get the process-wide locator built from settings."""
    settings = get_settings()
    return RuntimeLocator(
        default_probes(
            npm_path=settings.npm_path,
            nvm_dir=settings.nvm_dir,
            major=settings.node_major_version,
            fallback_major=settings.node_fallback_major_version,
        )
    )
