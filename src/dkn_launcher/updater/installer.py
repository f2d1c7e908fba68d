"""Atomic installation of release assets.

The asset is streamed into a private temporary file inside the
destination directory and only renamed over the destination once the
download completed.  The rename stays on one filesystem, so readers see
either the old file or the new one, never a partial write.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import tempfile
from pathlib import Path
from typing import BinaryIO

import httpx

from dkn_launcher import constants
from dkn_launcher.errors import LauncherIOError, NetworkError
from dkn_launcher.logging import get_logger
from dkn_launcher.updater.releases import Asset

log = get_logger("dkn_launcher.updater.installer")

# rwx for owner, group and others
EXECUTABLE_MODE = 0o777

_UNKNOWN_LENGTH_STEP = 1024 * 1024


class _ProgressReporter:
    """Logs download progress every 10% (or every MiB without a length)."""

    def __init__(self, name: str, total: int | None) -> None:
        self._name = name
        self._total = total or None
        self._received = 0
        self._next_mark = 10 if self._total else _UNKNOWN_LENGTH_STEP

    def advance(self, count: int) -> None:
        self._received += count
        if self._total:
            percent = self._received * 100 // self._total
            if percent >= self._next_mark:
                log.info("download_progress", asset=self._name, percent=min(percent, 100))
                self._next_mark = (percent // 10 + 1) * 10
        elif self._received >= self._next_mark:
            log.info("download_progress", asset=self._name, received_bytes=self._received)
            self._next_mark += _UNKNOWN_LENGTH_STEP


class Installer:
    """Downloads assets and installs them as executables."""

    def __init__(
        self,
        timeout: float = constants.DOWNLOAD_TIMEOUT_SECONDS,
        chunk_size: int = constants.DOWNLOAD_CHUNK_SIZE,
        github_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._github_token = github_token
        self._transport = transport

    async def install(
        self,
        asset: Asset,
        dest_dir: Path,
        dest_name: str,
        show_progress: bool = False,
    ) -> Path:
        """Download *asset* to ``dest_dir / dest_name`` and make it executable.

        If anything fails before the rename, the destination is left exactly
        as it was (absent, or the previous binary).

        Raises:
            LauncherIOError: *dest_dir* is not a directory, or a local file
                operation failed.
            NetworkError: the download failed.
        """
        dest_dir = Path(dest_dir)
        if not dest_dir.is_dir():
            raise LauncherIOError(f"destination directory {dest_dir} does not exist")
        dest_path = dest_dir / dest_name

        log.info(
            "download_started",
            asset=asset.name,
            url=asset.download_url,
            dest=str(dest_path),
        )

        try:
            fd, tmp_name = tempfile.mkstemp(prefix=constants.TMP_DOWNLOAD_PREFIX, dir=dest_dir)
        except OSError as exc:
            raise LauncherIOError(f"could not create temporary file in {dest_dir}: {exc}") from exc
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "wb") as fh:
                await self._download(asset, fh, show_progress)
                fh.flush()
                # fsync and rename can stall on slow disks, keep them off the event loop
                await asyncio.to_thread(os.fsync, fh.fileno())
            await asyncio.to_thread(os.replace, tmp_path, dest_path)
        except BaseException as exc:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            if isinstance(exc, httpx.HTTPError):
                log.warning("download_failed", asset=asset.name, error=str(exc))
                raise NetworkError(f"could not download {asset.name}: {exc}") from exc
            if isinstance(exc, OSError):
                raise LauncherIOError(f"could not install {asset.name}: {exc}") from exc
            raise

        try:
            os.chmod(dest_path, EXECUTABLE_MODE)
        except OSError as exc:
            raise LauncherIOError(f"could not set permissions on {dest_path}: {exc}") from exc

        log.info("download_complete", asset=asset.name, dest=str(dest_path))
        return dest_path

    async def _download(self, asset: Asset, fh: BinaryIO, show_progress: bool) -> None:
        headers = {"Accept": "application/octet-stream"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"

        async with httpx.AsyncClient(
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            async with client.stream("GET", asset.download_url, headers=headers) as resp:
                resp.raise_for_status()
                length = resp.headers.get("Content-Length")
                progress = (
                    _ProgressReporter(asset.name, int(length) if length else asset.size)
                    if show_progress
                    else None
                )
                async for chunk in resp.aiter_bytes(self._chunk_size):
                    fh.write(chunk)
                    if progress is not None:
                        progress.advance(len(chunk))
