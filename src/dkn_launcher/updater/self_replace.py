"""Replace the running launcher executable on disk.

On POSIX an executing file can be renamed over, so the new binary is
copied next to the target and ``os.replace``d onto it.  Windows refuses to
overwrite a running image but allows renaming it, so the old image is
moved aside to ``<name>.old`` first and cleaned up on the next start.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import sys
import tempfile
from pathlib import Path

from dkn_launcher import constants
from dkn_launcher.errors import LauncherIOError
from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.updater.self_replace")

OLD_SUFFIX = ".old"


def current_executable() -> Path | None:
    """Path of the running launcher binary, or ``None`` when not frozen.

    Only frozen builds (PyInstaller and friends) are self-updated; running
    from a source checkout or a virtualenv never replaces the interpreter.
    """
    if not getattr(sys, "frozen", False):
        return None
    return Path(sys.executable).resolve()


def self_replace(new_binary: Path, target: Path | None = None) -> None:
    """Swap the bytes of *target* (default: the running executable) for *new_binary*.

    The change takes effect on the next launch.  *new_binary* is left in
    place; the caller removes it.

    Raises:
        LauncherIOError: if the target is unknown or any file operation fails.
    """
    if target is None:
        target = current_executable()
    if target is None:
        raise LauncherIOError("not running from a frozen executable, nothing to replace")

    new_binary = Path(new_binary)
    target = Path(target)
    try:
        if os.name == "nt":
            _replace_windows(new_binary, target)
        else:
            _replace_posix(new_binary, target)
    except OSError as exc:
        raise LauncherIOError(f"could not replace {target}: {exc}") from exc

    log.info("self_replace_complete", target=str(target))


def _replace_posix(new_binary: Path, target: Path) -> None:
    mode = target.stat().st_mode & 0o777 if target.exists() else 0o755
    fd, tmp_name = tempfile.mkstemp(prefix=constants.TMP_DOWNLOAD_PREFIX, dir=target.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copyfile(new_binary, tmp_path)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


def _replace_windows(new_binary: Path, target: Path) -> None:
    old_path = target.with_name(target.name + OLD_SUFFIX)
    with contextlib.suppress(FileNotFoundError):
        old_path.unlink()
    os.replace(target, old_path)
    try:
        shutil.copyfile(new_binary, target)
    except BaseException:
        # put the running image back so the next launch still works
        os.replace(old_path, target)
        raise


def cleanup_stale_binary(target: Path | None = None) -> bool:
    """Remove the ``<name>.old`` image left behind by a Windows self-replace.

    Returns True if a stale image was removed.
    """
    if target is None:
        target = current_executable()
    if target is None:
        return False
    old_path = Path(target).with_name(Path(target).name + OLD_SUFFIX)
    try:
        old_path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.debug("stale_binary_cleanup_failed", path=str(old_path), error=str(exc))
        return False
    log.debug("stale_binary_removed", path=str(old_path))
    return True
