"""Update flows for the compute node and the launcher.

Used by the ``update`` and ``specific`` commands directly, and by the
supervisor's periodic checks.  The supervisor runs its own ordering for
compute node updates (stop, install, relaunch, then record) and only
borrows :func:`check_for_compute_update` from here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

from dkn_launcher import constants
from dkn_launcher.errors import LauncherError, LauncherIOError
from dkn_launcher.logging import get_logger
from dkn_launcher.updater.installer import Installer
from dkn_launcher.updater.releases import (
    PlatformLabel,
    Release,
    ReleaseResolver,
    Repository,
    resolve_asset,
)
from dkn_launcher.updater.self_replace import self_replace
from dkn_launcher.updater.versions import VersionTracker

log = get_logger("dkn_launcher.updater.manager")


def compute_binary_name(label: PlatformLabel | None = None) -> str:
    """Filename of the always-latest compute node binary for this platform."""
    label = label or PlatformLabel.from_host()
    return f"{constants.COMPUTE_LATEST_FILENAME}{label.ext}"


async def check_for_compute_update(
    resolver: ReleaseResolver,
    tracker: VersionTracker,
    exe_dir: Path,
    binary_name: str,
) -> tuple[Release, bool]:
    """Return the latest compute node release and whether it must be installed."""
    latest = await resolver.latest(Repository.COMPUTE_NODE)
    return latest, tracker.requires_update(exe_dir, latest.version, binary_name)


async def check_for_launcher_update(
    resolver: ReleaseResolver,
    current_version: str,
) -> tuple[Release, bool]:
    """Return the latest launcher release and whether it differs from *current_version*."""
    latest = await resolver.latest(Repository.LAUNCHER)
    return latest, latest.version != current_version


async def update_compute(
    resolver: ReleaseResolver,
    installer: Installer,
    tracker: VersionTracker,
    exe_dir: Path,
    binary_name: str | None = None,
) -> bool:
    """Install the latest compute node if needed.  Returns True if it installed.

    Only safe while the node is not running; the supervisor has its own
    flow for a live node.
    """
    binary_name = binary_name or compute_binary_name()
    latest, required = await check_for_compute_update(resolver, tracker, exe_dir, binary_name)
    if not required:
        log.info("compute_up_to_date", version=latest.version)
        return False

    log.info("compute_updating", version=latest.version)
    asset = resolve_asset(latest)
    await installer.install(asset, exe_dir, binary_name, show_progress=True)
    tracker.write(exe_dir, latest.version)
    return True


async def download_specific_release(
    resolver: ReleaseResolver,
    installer: Installer,
    exe_dir: Path,
    tag: str,
) -> Path:
    """Download compute node *tag* under its versioned filename.

    An already downloaded file is reused.

    Raises:
        LauncherIOError: if *exe_dir* is not a directory.
        NotFoundError: if no release has that tag.
    """
    exe_dir = Path(exe_dir)
    if not exe_dir.is_dir():
        raise LauncherIOError(f"{exe_dir} must be a directory")

    release = await resolver.find_by_tag(Repository.COMPUTE_NODE, tag)
    filename = release.to_filename()
    dest_path = exe_dir / filename
    if dest_path.exists():
        log.info("specific_release_cached", version=release.version, path=str(dest_path))
        return dest_path

    log.info("specific_release_downloading", version=release.version)
    return await installer.install(resolve_asset(release), exe_dir, filename, show_progress=True)


class LauncherUpdater:
    """Replaces the running launcher binary with the latest release."""

    def __init__(
        self,
        resolver: ReleaseResolver,
        installer: Installer,
        current_version: str,
        executable: Path,
        replacer: Callable[[Path, Path], None] = self_replace,
    ) -> None:
        self._resolver = resolver
        self._installer = installer
        self._current_version = current_version
        self._executable = Path(executable)
        self._replacer = replacer

    @property
    def current_version(self) -> str:
        """Version on disk; differs from the running one after an update."""
        return self._current_version

    async def update(self) -> bool:
        """Install the latest launcher over the executable.  Returns True if replaced.

        The release is downloaded to a temporary file next to the executable,
        never onto the executable itself, and that file is removed afterwards.
        """
        latest, required = await check_for_launcher_update(self._resolver, self._current_version)
        if not required:
            log.info("launcher_up_to_date", version=latest.version)
            return False

        log.info("launcher_updating", current=self._current_version, version=latest.version)
        asset = resolve_asset(latest)
        label = PlatformLabel.from_host()
        tmp_path = await self._installer.install(
            asset,
            self._executable.parent,
            f"{constants.LAUNCHER_TMP_FILENAME}{label.ext}",
        )
        try:
            # copying the binary blocks, run it in a worker thread
            await asyncio.to_thread(self._replacer, tmp_path, self._executable)
        finally:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                log.warning("launcher_tmp_cleanup_failed", path=str(tmp_path), error=str(exc))

        self._current_version = latest.version
        log.info("launcher_updated", version=latest.version)
        return True


async def update_all(
    resolver: ReleaseResolver,
    installer: Installer,
    tracker: VersionTracker,
    exe_dir: Path,
    launcher: LauncherUpdater | None = None,
) -> None:
    """Update the compute node, then the launcher.  Failures are logged only."""
    log.debug("compute_version_check")
    try:
        await update_compute(resolver, installer, tracker, exe_dir)
    except LauncherError as exc:
        log.error("compute_update_failed", error=str(exc))

    if launcher is None:
        log.debug("launcher_update_skipped", reason="not a frozen executable")
        return

    log.debug("launcher_version_check")
    try:
        await launcher.update()
    except LauncherError as exc:
        log.error("launcher_update_failed", error=str(exc))
