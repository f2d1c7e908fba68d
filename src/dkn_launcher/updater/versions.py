"""Locally recorded compute node version.

The install directory holds a one-line tracker file with the version of
the binary that was last installed *and* successfully launched.
"""

from __future__ import annotations

from pathlib import Path

from dkn_launcher import constants
from dkn_launcher.errors import LauncherIOError
from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.updater.versions")


class VersionTracker:
    """Reads and writes the version tracker file of an install directory."""

    def __init__(self, filename: str = constants.VERSION_TRACKER_FILENAME) -> None:
        self._filename = filename

    def path(self, directory: Path) -> Path:
        return Path(directory) / self._filename

    def read(self, directory: Path) -> str | None:
        """Return the recorded version, or ``None`` if there is none."""
        try:
            return self.path(directory).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def write(self, directory: Path, version: str) -> Path:
        """Replace the tracker's content with exactly *version*."""
        path = self.path(directory)
        try:
            path.write_text(version, encoding="utf-8")
        except OSError as exc:
            raise LauncherIOError(f"could not write version to {path}: {exc}") from exc
        log.debug("version_recorded", path=str(path), version=version)
        return path

    def requires_update(self, directory: Path, latest_version: str, binary_name: str) -> bool:
        """True if the recorded version is stale or the binary has gone missing."""
        recorded = self.read(directory)
        binary_missing = not (Path(directory) / binary_name).exists()
        return recorded != latest_version or binary_missing
