"""Compute node supervisor.

Lifecycle::

    STARTING -> RUNNING <-> NO_MAIN_PROCESS -> TERMINATING -> STOPPED

1. STARTING: ensure the Ollama companion if required, pull the models it
   is missing, spawn the node.
2. RUNNING: one loop waits on node exit, cancellation and two timers.
   The compute node timer stops the node, installs the new binary,
   relaunches it and only then records the version.  The launcher timer
   replaces the launcher's own binary and never touches the node.
3. NO_MAIN_PROCESS: a relaunch failed; the next compute node tick
   retries.
4. TERMINATING: stop the node and, only if the supervisor started it,
   the companion.

Update jobs run as tasks beside the wait so that a slow download never
delays noticing a node exit or a termination signal.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dkn_launcher import __version__, constants
from dkn_launcher.errors import LauncherError, ProcessError
from dkn_launcher.logging import get_logger
from dkn_launcher.process.companion import CompanionProcess, CompanionProcessManager
from dkn_launcher.process.signals import CancellationToken
from dkn_launcher.updater.installer import Installer
from dkn_launcher.updater.manager import LauncherUpdater
from dkn_launcher.updater.releases import ReleaseResolver, Repository, resolve_asset
from dkn_launcher.updater.versions import VersionTracker

log = get_logger("dkn_launcher.process.supervisor")


class SupervisorState(Enum):
    """Lifecycle state of a :class:`ProcessSupervisor`."""

    STARTING = "starting"
    RUNNING = "running"
    NO_MAIN_PROCESS = "no_main_process"
    TERMINATING = "terminating"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SupervisorConfig:
    """Everything the supervisor needs to (re)launch the compute node."""

    exe_dir: Path
    binary_name: str
    env_path: Path
    check_updates: bool = True
    requires_companion: bool = False
    # pulled from the companion before the node starts when missing
    companion_models: tuple[str, ...] = ()
    compute_update_interval: float = constants.COMPUTE_UPDATE_INTERVAL_SECONDS
    launcher_update_interval: float = constants.LAUNCHER_UPDATE_INTERVAL_SECONDS
    kill_timeout: float = constants.KILL_TIMEOUT_SECONDS
    exec_platform: str = f"launcher/v{__version__}"

    @property
    def exe_path(self) -> Path:
        return Path(self.exe_dir) / self.binary_name


class _Ticker:
    """Fixed-interval timer; the first tick is one interval after creation."""

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + interval

    async def tick(self) -> None:
        delay = self._deadline - self._loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        now = self._loop.time()
        self._deadline += self._interval
        if self._deadline <= now:
            # missed ticks are skipped, not replayed
            self._deadline = now + self._interval


class ProcessSupervisor:
    """Runs the compute node and keeps it and the launcher up to date."""

    def __init__(
        self,
        config: SupervisorConfig,
        resolver: ReleaseResolver,
        installer: Installer,
        tracker: VersionTracker,
        cancellation: CancellationToken,
        companion: CompanionProcessManager | None = None,
        launcher_updater: LauncherUpdater | None = None,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._installer = installer
        self._tracker = tracker
        self._cancellation = cancellation
        self._companion_manager = companion
        self._launcher_updater = launcher_updater

        self._state = SupervisorState.STARTING
        self._main: asyncio.subprocess.Process | None = None
        # a node being stopped for an update; still ours to kill on shutdown
        self._retiring: asyncio.subprocess.Process | None = None
        self._companion: CompanionProcess | None = None
        self._main_version: str | None = None

    # ------------------------------------------------------------------
    # Public status surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def has_main_process(self) -> bool:
        return self._main is not None

    @property
    def main_version(self) -> str | None:
        """Version recorded when the running node was started, if known."""
        return self._main_version

    @property
    def companion(self) -> CompanionProcess | None:
        return self._companion

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the node and supervise it until it exits or cancellation fires.

        Raises:
            LauncherError: if starting failed; nothing is left running then.
        """
        await self._start()
        try:
            await self._supervise()
        finally:
            await self._terminate()

    async def _start(self) -> None:
        self._state = SupervisorState.STARTING

        try:
            if self._config.requires_companion:
                if self._companion_manager is None:
                    raise ProcessError("companion required but no companion manager configured")
                self._companion = await self._companion_manager.ensure()
                if self._config.companion_models:
                    await self._companion_manager.pull_missing_models(
                        self._config.companion_models
                    )
            self._main = await self._spawn_main()
        except LauncherError:
            await self._stop_companion()
            self._state = SupervisorState.STOPPED
            raise

        self._main_version = self._tracker.read(self._config.exe_dir)
        self._state = SupervisorState.RUNNING
        log.info(
            "compute_node_started",
            pid=self._main.pid,
            path=str(self._config.exe_path),
            version=self._main_version,
        )

    async def _supervise(self) -> None:
        compute_ticker = _Ticker(self._config.compute_update_interval)
        launcher_ticker = _Ticker(self._config.launcher_update_interval)

        cancel_task = asyncio.create_task(self._cancellation.wait(), name="cancellation")
        compute_tick = asyncio.create_task(compute_ticker.tick(), name="compute_tick")
        launcher_tick = asyncio.create_task(launcher_ticker.tick(), name="launcher_tick")
        exit_task: asyncio.Task | None = None
        exit_proc: asyncio.subprocess.Process | None = None
        compute_job: asyncio.Task | None = None
        launcher_job: asyncio.Task | None = None

        try:
            while True:
                # watch whichever node instance is current
                if self._main is not None and exit_proc is not self._main:
                    if exit_task is not None:
                        exit_task.cancel()
                    exit_proc = self._main
                    exit_task = asyncio.create_task(exit_proc.wait(), name="main_exit")

                waiters = {cancel_task, compute_tick, launcher_tick}
                for task in (exit_task, compute_job, launcher_job):
                    if task is not None:
                        waiters.add(task)

                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                if cancel_task in done:
                    log.info("cancellation_received", reason=self._cancellation.reason)
                    return

                if exit_task is not None and exit_task in done:
                    if exit_proc is self._main:
                        log.info("compute_node_exited", returncode=exit_proc.returncode)
                        return
                    # an instance stopped by an update; the new one is watched next round
                    exit_task = None
                    exit_proc = None

                if compute_job is not None and compute_job in done:
                    self._finish_job(compute_job, "compute_update")
                    compute_job = None

                if launcher_job is not None and launcher_job in done:
                    self._finish_job(launcher_job, "launcher_update")
                    launcher_job = None

                if compute_tick in done:
                    compute_tick = asyncio.create_task(compute_ticker.tick(), name="compute_tick")
                    if compute_job is None:
                        compute_job = asyncio.create_task(
                            self._handle_compute_update(), name="compute_update"
                        )
                    else:
                        log.debug("compute_update_still_running")

                if launcher_tick in done:
                    launcher_tick = asyncio.create_task(
                        launcher_ticker.tick(), name="launcher_tick"
                    )
                    if launcher_job is None:
                        launcher_job = asyncio.create_task(
                            self._handle_launcher_update(), name="launcher_update"
                        )
                    else:
                        log.debug("launcher_update_still_running")
        finally:
            tasks = (cancel_task, compute_tick, launcher_tick, exit_task, compute_job, launcher_job)
            pending = [t for t in tasks if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _terminate(self) -> None:
        self._state = SupervisorState.TERMINATING
        log.info("supervisor_terminating")

        await self._stop_companion()

        for proc in (self._main, self._retiring):
            if proc is None:
                continue
            try:
                await self._kill(proc, "compute_node")
            except ProcessError as exc:
                log.error("compute_node_kill_failed", error=str(exc))
        self._main = None
        self._retiring = None

        self._state = SupervisorState.STOPPED
        log.info("supervisor_stopped")

    # ------------------------------------------------------------------
    # Update jobs
    # ------------------------------------------------------------------

    async def _handle_compute_update(self) -> None:
        if not self._config.check_updates:
            return

        exe_dir = self._config.exe_dir
        latest = await self._resolver.latest(Repository.COMPUTE_NODE)
        required = self._tracker.requires_update(exe_dir, latest.version, self._config.binary_name)

        if not required:
            if self._main is None:
                log.info("compute_node_relaunching", reason="no running instance")
                await self._relaunch()
            else:
                log.debug("compute_up_to_date", version=latest.version)
            return

        asset = resolve_asset(latest)
        log.info(
            "compute_update_available",
            current=self._tracker.read(exe_dir),
            latest=latest.version,
        )

        # never write over a running binary, and never run two nodes
        await self._stop_main()

        try:
            await self._installer.install(asset, exe_dir, self._config.binary_name)
        except LauncherError as exc:
            log.error("compute_update_install_failed", version=latest.version, error=str(exc))
            # the previous binary is untouched, bring it back
            if self._config.exe_path.exists():
                await self._relaunch()
            else:
                self._mark_no_main(exc)
            return

        await self._relaunch()
        self._tracker.write(exe_dir, latest.version)
        self._main_version = latest.version
        log.info("compute_update_installed", version=latest.version)

    async def _handle_launcher_update(self) -> None:
        if not self._config.check_updates or self._launcher_updater is None:
            return
        await self._launcher_updater.update()

    def _finish_job(self, task: asyncio.Task, name: str) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, LauncherError):
            log.error(f"{name}_failed", error=str(exc))
        else:
            log.error(f"{name}_failed", error=str(exc), exc_info=exc)

    # ------------------------------------------------------------------
    # Process helpers
    # ------------------------------------------------------------------

    async def _spawn_main(self) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env[constants.COMPUTE_ENV_KEY] = str(self._config.env_path)
        env[constants.EXEC_PLATFORM_KEY] = self._config.exec_platform
        try:
            return await asyncio.create_subprocess_exec(str(self._config.exe_path), env=env)
        except OSError as exc:
            raise ProcessError(f"failed to spawn compute node: {exc}") from exc

    async def _relaunch(self) -> None:
        try:
            proc = await self._spawn_main()
        except ProcessError as exc:
            self._mark_no_main(exc)
            raise
        self._main = proc
        self._state = SupervisorState.RUNNING
        log.info("compute_node_relaunched", pid=proc.pid)

    async def _stop_main(self) -> None:
        proc = self._main
        if proc is None:
            return
        self._main = None
        self._retiring = proc
        try:
            await self._kill(proc, "compute_node")
        except ProcessError:
            # still running, keep supervising it rather than starting a second one
            self._main = proc
            self._retiring = None
            raise
        self._retiring = None
        self._state = SupervisorState.NO_MAIN_PROCESS

    def _mark_no_main(self, exc: Exception) -> None:
        self._main = None
        self._state = SupervisorState.NO_MAIN_PROCESS
        log.error(
            "compute_node_unavailable",
            error=str(exc),
            retry="next compute update check",
        )

    async def _stop_companion(self) -> None:
        companion = self._companion
        if companion is None or not companion.owned or companion.process is None:
            return
        try:
            await self._kill(companion.process, "companion")
        except ProcessError as exc:
            log.error("companion_kill_failed", error=str(exc))
        self._companion = None

    async def _kill(self, proc: asyncio.subprocess.Process, name: str) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        except OSError as exc:
            raise ProcessError(f"could not kill {name} (pid {proc.pid}): {exc}") from exc

        try:
            await asyncio.wait_for(proc.wait(), timeout=self._config.kill_timeout)
        except TimeoutError as exc:
            raise ProcessError(f"{name} (pid {proc.pid}) did not exit after kill") from exc
        log.info(f"{name}_killed", pid=proc.pid)
