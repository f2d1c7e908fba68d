"""Compute node environment: a whitelisted key/value store.

The compute node reads its configuration from a ``KEY=VALUE`` file.  The
launcher only ever touches the keys listed in :data:`EnvStore.KEY_NAMES`;
every other line in that file is preserved as-is when saving.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

from dotenv import dotenv_values

from dkn_launcher import constants
from dkn_launcher.errors import LauncherIOError
from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.env")


class EnvStore:
    """In-memory view of the compute node's whitelisted settings."""

    KEY_NAMES: tuple[str, ...] = (
        # log level
        "RUST_LOG",
        # DKN
        "DKN_WALLET_SECRET_KEY",
        "DKN_MODELS",
        "DKN_P2P_LISTEN_ADDR",
        "DKN_BATCH_SIZE",
        # API keys
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "OPENROUTER_API_KEY",
        "SERPER_API_KEY",
        "JINA_API_KEY",
        # Ollama
        "OLLAMA_HOST",
        "OLLAMA_PORT",
        "OLLAMA_AUTO_PULL",
    )

    def __init__(
        self,
        entries: Mapping[str, str] | None = None,
        whitelist: Iterable[str] | None = None,
    ) -> None:
        self._whitelist = tuple(whitelist) if whitelist is not None else self.KEY_NAMES
        self._kv: dict[str, str] = {}
        for key, value in (entries or {}).items():
            self._check_key(key)
            self._kv[key] = value
        self._changed = False

    @classmethod
    def load_from_environment(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: Path | None = None,
        whitelist: Iterable[str] | None = None,
    ) -> EnvStore:
        """Build a store from the process environment.

        Only whitelisted keys are read; missing and empty values are skipped.
        When *env_file* exists its values fill keys the environment lacks,
        the environment itself always wins.
        """
        keys = tuple(whitelist) if whitelist is not None else cls.KEY_NAMES
        if environ is None:
            environ = os.environ

        sources: list[Mapping[str, str | None]] = [environ]
        if env_file is not None and Path(env_file).is_file():
            sources.append(dotenv_values(env_file))

        entries: dict[str, str] = {}
        for key in keys:
            for source in sources:
                value = source.get(key)
                if value:
                    entries[key] = value
                    break
        return cls(entries, whitelist=keys)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def is_changed(self) -> bool:
        return self._changed

    @property
    def whitelist(self) -> tuple[str, ...]:
        return self._whitelist

    def get(self, key: str) -> str | None:
        return self._kv.get(key)

    def set(self, key: str, value: str) -> None:
        """Set *key* and mark the store as changed."""
        self._check_key(key)
        value = str(value)
        if "\n" in value or "\r" in value:
            raise ValueError(f"value for {key} must be a single line")
        self._kv[key] = value
        # never reset, not even by save_to_file
        self._changed = True

    def items(self) -> list[tuple[str, str]]:
        return list(self._kv.items())

    def _check_key(self, key: str) -> None:
        if key not in self._whitelist:
            raise KeyError(f"{key} is not a known compute node setting")

    # ------------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------------

    def get_ollama_config(self) -> tuple[str, str]:
        """Return ``(host, port)`` of the Ollama server."""
        host = self.get("OLLAMA_HOST") or constants.OLLAMA_DEFAULT_HOST
        port = self.get("OLLAMA_PORT") or constants.OLLAMA_DEFAULT_PORT
        return host, port

    def get_models(self) -> list[str]:
        """Return the configured model names from ``DKN_MODELS``."""
        raw = self.get("DKN_MODELS") or ""
        return [m.strip() for m in raw.split(",") if m.strip()]

    def get_ollama_models(self) -> list[str]:
        """Models served by Ollama; those are named ``name:tag``."""
        return [m for m in self.get_models() if ":" in m and "/" not in m]

    def get_ollama_auto_pull(self) -> bool:
        """False only when ``OLLAMA_AUTO_PULL`` is explicitly switched off."""
        raw = (self.get("OLLAMA_AUTO_PULL") or "").strip().lower()
        return raw not in ("false", "0", "no", "off")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def merge_into(self, content: str) -> str:
        """Return *content* with this store's values written into it.

        The first line starting with ``KEY=`` for each stored key is
        replaced; all other lines, including later duplicates and
        commented-out assignments, are kept byte-for-byte.  Keys that no
        line matched are appended at the end.
        """
        pending = dict(self._kv)
        out: list[str] = []

        for line in content.split("\n") if content else []:
            cr = "\r" if line.endswith("\r") else ""
            body = line[: len(line) - len(cr)]
            matched = next((k for k in pending if body.startswith(f"{k}=")), None)
            if matched is None:
                out.append(line)
                continue
            out.append(f"{matched}={pending.pop(matched)}{cr}")

        merged = "\n".join(out)
        if pending:
            if merged and not merged.endswith("\n"):
                merged += "\n"
            merged += "".join(f"{key}={value}\n" for key, value in pending.items())
        return merged

    def save_to_file(self, env_path: Path) -> None:
        """Merge this store into the existing file at *env_path*.

        The file must already exist.  It is rewritten atomically and keeps
        its permission bits.

        Raises:
            LauncherIOError: if the file cannot be read or written.
        """
        env_path = Path(env_path)
        log.info("env_saving", path=str(env_path))

        try:
            with env_path.open(encoding="utf-8", newline="") as fh:
                content = fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise LauncherIOError(f"could not read {env_path}: {exc}") from exc

        new_content = self.merge_into(content)

        tmp_path: Path | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".env-", dir=env_path.parent)
            tmp_path = Path(tmp_name)
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                fh.write(new_content)
            shutil.copymode(env_path, tmp_path)
            os.replace(tmp_path, env_path)
        except OSError as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise LauncherIOError(f"could not write {env_path}: {exc}") from exc

        log.info("env_saved", path=str(env_path))

    def __str__(self) -> str:
        return "".join(f"{k}={v}\n" for k, v in self._kv.items())
