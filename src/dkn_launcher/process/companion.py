"""Local Ollama server used by the compute node's Ollama models.

The launcher only starts Ollama when nothing answers at the configured
address.  Whoever started it owns it: a server that was already running
is never stopped by the launcher.  Models the node is configured for are
pulled before the node starts.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import httpx

from dkn_launcher import constants
from dkn_launcher.env import EnvStore
from dkn_launcher.errors import NetworkError, ProcessError, StartupFailedError
from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.process.companion")


class Ownership(Enum):
    """Whether the launcher started the companion itself."""

    OWNED = "owned"
    NOT_OWNED = "not_owned"


@dataclass(frozen=True)
class CompanionConfig:
    """Where the companion listens and how it is started."""

    host: str = constants.OLLAMA_DEFAULT_HOST
    port: str = constants.OLLAMA_DEFAULT_PORT
    executable: str = "ollama"
    probe_timeout: float = constants.OLLAMA_PROBE_TIMEOUT_SECONDS
    retry_count: int = constants.OLLAMA_RETRY_COUNT
    retry_interval: float = constants.OLLAMA_RETRY_INTERVAL_SECONDS
    pull_timeout: float = constants.DOWNLOAD_TIMEOUT_SECONDS

    @classmethod
    def from_env(
        cls,
        env: EnvStore,
        executable: str = "ollama",
        probe_timeout: float = constants.OLLAMA_PROBE_TIMEOUT_SECONDS,
        retry_count: int = constants.OLLAMA_RETRY_COUNT,
        retry_interval: float = constants.OLLAMA_RETRY_INTERVAL_SECONDS,
        pull_timeout: float = constants.DOWNLOAD_TIMEOUT_SECONDS,
    ) -> CompanionConfig:
        host, port = env.get_ollama_config()
        return cls(
            host=host,
            port=port,
            executable=executable,
            probe_timeout=probe_timeout,
            retry_count=retry_count,
            retry_interval=retry_interval,
            pull_timeout=pull_timeout,
        )

    @property
    def url(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class CompanionProcess:
    """Outcome of :meth:`CompanionProcessManager.ensure`."""

    ownership: Ownership
    process: asyncio.subprocess.Process | None = None

    @property
    def owned(self) -> bool:
        return self.ownership is Ownership.OWNED

class _PullProgress:
    """Logs a model pull every 10% of the reported size."""

    def __init__(self, model: str, total: int) -> None:
        self._model = model
        self._total = total
        self._next_mark = 10

    def update(self, completed: int) -> None:
        percent = completed * 100 // self._total
        if percent >= self._next_mark:
            log.info("model_pull_progress", model=self._model, percent=min(percent, 100))
            self._next_mark = (percent // 10 + 1) * 10



class CompanionProcessManager:
    """Starts the companion service when needed and pulls the models it lacks."""

    def __init__(
        self,
        config: CompanionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport

    @property
    def config(self) -> CompanionConfig:
        return self._config

    async def is_reachable(self) -> bool:
        """True if the companion answers a GET with any 2xx status."""
        try:
            async with httpx.AsyncClient(
                timeout=self._config.probe_timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(self._config.url)
        except httpx.HTTPError:
            return False
        return 200 <= resp.status_code < 300

    async def spawn(self) -> asyncio.subprocess.Process:
        """Start ``<executable> serve`` and wait until it is reachable.

        Raises:
            ProcessError: the executable is missing or could not be started.
            StartupFailedError: the service never answered within the configured retries.
        """
        exe_path = shutil.which(self._config.executable)
        if exe_path is None:
            raise ProcessError(
                f"could not find {self._config.executable} executable, "
                "please install it from https://ollama.com/download"
            )
        log.debug("companion_executable", path=exe_path)

        # the address only goes to the child, the launcher's own environment is untouched
        child_env = dict(os.environ)
        child_env[constants.OLLAMA_HOST_ENV_KEY] = self._config.url

        try:
            proc = await asyncio.create_subprocess_exec(
                exe_path,
                "serve",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=child_env,
            )
        except OSError as exc:
            raise ProcessError(f"could not spawn {self._config.executable}: {exc}") from exc

        log.info("companion_waiting", url=self._config.url, pid=proc.pid)
        for attempt in range(self._config.retry_count):
            if await self.is_reachable():
                log.info("companion_started", url=self._config.url, attempt=attempt + 1)
                return proc
            if attempt < self._config.retry_count - 1:
                await asyncio.sleep(self._config.retry_interval)

        await self._discard(proc)
        raise StartupFailedError(
            f"{self._config.executable} failed to start after "
            f"{self._config.retry_count} retries"
        )

    async def ensure(self) -> CompanionProcess:
        """Make sure the companion is reachable, spawning it if necessary."""
        if await self.is_reachable():
            log.info("companion_already_running", url=self._config.url)
            return CompanionProcess(ownership=Ownership.NOT_OWNED)
        proc = await self.spawn()
        return CompanionProcess(ownership=Ownership.OWNED, process=proc)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self) -> list[str]:
        """Names of the models the companion already has locally.

        Raises:
            NetworkError: the model listing could not be fetched or read.
        """
        url = f"{self._config.url}/api/tags"
        try:
            async with httpx.AsyncClient(
                timeout=self._config.probe_timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise NetworkError(f"could not list local models: {exc}") from exc

        if resp.status_code != 200:
            raise NetworkError(f"listing local models returned {resp.status_code}")
        try:
            models = resp.json().get("models", [])
            return [m.get("name", "") for m in models]
        except (ValueError, TypeError, AttributeError) as exc:
            raise NetworkError(f"unexpected model listing: {exc}") from exc

    async def pull_model(self, name: str) -> bool:
        """Pull *name*, logging progress as the companion streams it.

        A failed pull is logged and reported as ``False``; the node decides
        later whether it can run without that model.
        """
        log.info("model_pull_started", model=name)
        progress: _PullProgress | None = None
        try:
            async with httpx.AsyncClient(
                timeout=self._config.pull_timeout,
                transport=self._transport,
            ) as client:
                async with client.stream(
                    "POST",
                    f"{self._config.url}/api/pull",
                    json={"model": name},
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        status = json.loads(line)
                        if status.get("error"):
                            log.error("model_pull_failed", model=name, error=status["error"])
                            return False
                        if progress is None and status.get("total"):
                            progress = _PullProgress(name, int(status["total"]))
                        if progress is not None and status.get("completed") is not None:
                            progress.update(int(status["completed"]))
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as exc:
            log.error("model_pull_failed", model=name, error=str(exc))
            return False

        log.info("model_pull_complete", model=name)
        return True

    async def pull_missing_models(self, models: Sequence[str]) -> list[str]:
        """Pull every model in *models* the companion does not have yet.

        Returns the models that were missing.

        Raises:
            NetworkError: the local model listing failed.
        """
        local = set(await self.list_models())
        missing = [m for m in models if m not in local]
        if not missing:
            log.debug("models_available", models=list(models))
            return []

        log.info("models_missing", models=missing)
        for model in missing:
            await self.pull_model(model)
        return missing

    async def _discard(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), timeout=self._config.probe_timeout)
        except (ProcessLookupError, TimeoutError) as exc:
            log.debug("companion_discard_failed", error=str(exc))
