"""Unit tests for dkn_launcher.env.EnvStore."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from dkn_launcher.env import EnvStore
from dkn_launcher.errors import LauncherIOError

SAMPLE_ENV = (
    "## DRIA ##\n"
    "DKN_WALLET_SECRET_KEY=old-secret\n"
    "# DKN_MODELS=commented-out\n"
    "DKN_MODELS=gpt-4o\n"
    "UNRELATED_KEY=keep me\n"
    "\n"
    "DKN_MODELS=second-assignment\n"
)


def _store(**entries: str) -> EnvStore:
    return EnvStore(entries)


# ---------------------------------------------------------------------------
# load_from_environment
# ---------------------------------------------------------------------------


class TestLoadFromEnvironment:
    """Tests for building a store from the environment."""

    def test_reads_only_whitelisted_keys(self) -> None:
        environ = {"DKN_MODELS": "gemma3:4b", "HOME": "/home/x", "PATH": "/bin"}
        env = EnvStore.load_from_environment(environ=environ)
        assert env.items() == [("DKN_MODELS", "gemma3:4b")]
        assert env.get("HOME") is None

    def test_empty_values_are_omitted(self) -> None:
        env = EnvStore.load_from_environment(environ={"OPENAI_API_KEY": "", "RUST_LOG": "info"})
        assert env.get("OPENAI_API_KEY") is None
        assert env.get("RUST_LOG") == "info"

    def test_fresh_store_is_unchanged(self) -> None:
        env = EnvStore.load_from_environment(environ={"RUST_LOG": "info"})
        assert env.is_changed is False

    def test_env_file_fills_missing_keys(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("OLLAMA_PORT=11500\nRUST_LOG=debug\n", encoding="utf-8")

        env = EnvStore.load_from_environment(environ={"RUST_LOG": "warn"}, env_file=env_file)

        assert env.get("OLLAMA_PORT") == "11500"
        # the real environment wins over the file
        assert env.get("RUST_LOG") == "warn"

    def test_missing_env_file_is_ignored(self, tmp_path: Path) -> None:
        env = EnvStore.load_from_environment(environ={}, env_file=tmp_path / "missing.env")
        assert env.items() == []

    def test_custom_whitelist(self) -> None:
        env = EnvStore.load_from_environment(
            environ={"A": "1", "B": "2"},
            whitelist=["A"],
        )
        assert env.items() == [("A", "1")]

    def test_defaults_to_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SERPER_API_KEY", "serper")
        env = EnvStore.load_from_environment()
        assert env.get("SERPER_API_KEY") == "serper"


# ---------------------------------------------------------------------------
# get / set
# ---------------------------------------------------------------------------


class TestGetSet:
    """Tests for get() and set()."""

    def test_set_marks_changed(self) -> None:
        env = _store()
        env.set("DKN_BATCH_SIZE", "4")
        assert env.get("DKN_BATCH_SIZE") == "4"
        assert env.is_changed is True

    def test_set_unknown_key_rejected(self) -> None:
        env = _store()
        with pytest.raises(KeyError):
            env.set("NOT_A_SETTING", "x")
        assert env.is_changed is False

    def test_set_multiline_value_rejected(self) -> None:
        env = _store()
        with pytest.raises(ValueError):
            env.set("RUST_LOG", "info\nEVIL=1")

    def test_constructor_rejects_unknown_key(self) -> None:
        with pytest.raises(KeyError):
            EnvStore({"NOPE": "x"})

    def test_ollama_config_defaults(self) -> None:
        assert _store().get_ollama_config() == ("http://127.0.0.1", "11434")

    def test_ollama_config_from_values(self) -> None:
        env = _store(OLLAMA_HOST="http://10.0.0.2", OLLAMA_PORT="9999")
        assert env.get_ollama_config() == ("http://10.0.0.2", "9999")

    def test_models_parsing(self) -> None:
        env = _store(DKN_MODELS=" gpt-4o, gemma3:4b ,,llama3.1:8b-instruct-q4_K_M")
        assert env.get_models() == ["gpt-4o", "gemma3:4b", "llama3.1:8b-instruct-q4_K_M"]
        assert env.get_ollama_models() == ["gemma3:4b", "llama3.1:8b-instruct-q4_K_M"]

    def test_no_models(self) -> None:
        assert _store().get_models() == []
        assert _store().get_ollama_models() == []

    def test_auto_pull_defaults_on(self) -> None:
        assert _store().get_ollama_auto_pull() is True
        assert _store(OLLAMA_AUTO_PULL="true").get_ollama_auto_pull() is True

    @pytest.mark.parametrize("value", ["false", "FALSE", " 0 ", "off"])
    def test_auto_pull_switched_off(self, value: str) -> None:
        assert _store(OLLAMA_AUTO_PULL=value).get_ollama_auto_pull() is False


# ---------------------------------------------------------------------------
# merge_into
# ---------------------------------------------------------------------------


class TestMergeInto:
    """Tests for merge_into()."""

    def test_replaces_first_match_only(self) -> None:
        env = _store(DKN_MODELS="gemma3:4b")
        merged = env.merge_into(SAMPLE_ENV)

        lines = merged.split("\n")
        assert "DKN_MODELS=gemma3:4b" in lines
        # commented-out and later duplicate lines survive untouched
        assert "# DKN_MODELS=commented-out" in lines
        assert "DKN_MODELS=second-assignment" in lines
        assert lines.index("DKN_MODELS=gemma3:4b") < lines.index("DKN_MODELS=second-assignment")

    def test_other_lines_preserved_in_order(self) -> None:
        env = _store(DKN_WALLET_SECRET_KEY="new-secret")
        merged = env.merge_into(SAMPLE_ENV)
        assert merged == SAMPLE_ENV.replace("old-secret", "new-secret")

    def test_unmatched_keys_are_appended(self) -> None:
        env = _store(OLLAMA_PORT="11500", JINA_API_KEY="jina")
        merged = env.merge_into(SAMPLE_ENV)
        assert merged.startswith(SAMPLE_ENV)
        assert merged[len(SAMPLE_ENV) :] == "OLLAMA_PORT=11500\nJINA_API_KEY=jina\n"

    def test_append_adds_missing_trailing_newline(self) -> None:
        env = _store(RUST_LOG="info")
        assert env.merge_into("FOO=bar") == "FOO=bar\nRUST_LOG=info\n"

    def test_empty_content(self) -> None:
        env = _store(RUST_LOG="info")
        assert env.merge_into("") == "RUST_LOG=info\n"

    def test_empty_store_is_identity(self) -> None:
        assert _store().merge_into(SAMPLE_ENV) == SAMPLE_ENV

    def test_prefix_of_other_key_does_not_match(self) -> None:
        env = _store(DKN_MODELS="x")
        content = "DKN_MODELS_EXTRA=1\n"
        assert env.merge_into(content) == "DKN_MODELS_EXTRA=1\nDKN_MODELS=x\n"

    def test_crlf_lines_keep_their_endings(self) -> None:
        env = _store(RUST_LOG="debug")
        content = "# comment\r\nRUST_LOG=info\r\nOTHER=1\r\n"
        assert env.merge_into(content) == "# comment\r\nRUST_LOG=debug\r\nOTHER=1\r\n"

    def test_does_not_mutate_store(self) -> None:
        env = _store(RUST_LOG="debug")
        env.merge_into("RUST_LOG=info\n")
        assert env.get("RUST_LOG") == "debug"
        assert env.is_changed is False

    @pytest.mark.parametrize(
        "content",
        [
            "",
            "RUST_LOG=info",
            SAMPLE_ENV,
            "# only comments\n\n\n",
            "DKN_MODELS=a\nDKN_MODELS=b\r\n#DKN_MODELS=c",
        ],
    )
    def test_idempotent(self, content: str) -> None:
        env = _store(DKN_MODELS="gemma3:4b", RUST_LOG="warn", OLLAMA_HOST="http://h")
        once = env.merge_into(content)
        assert env.merge_into(once) == once


# ---------------------------------------------------------------------------
# save_to_file
# ---------------------------------------------------------------------------


class TestSaveToFile:
    """Tests for save_to_file()."""

    def test_writes_merged_content(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text(SAMPLE_ENV, encoding="utf-8")
        env = _store(DKN_MODELS="gemma3:4b")

        env.save_to_file(env_path)

        assert env_path.read_bytes() == env.merge_into(SAMPLE_ENV).encode("utf-8")

    def test_preserves_crlf_bytes(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_bytes(b"A=1\r\nRUST_LOG=info\r\n")

        _store(RUST_LOG="debug").save_to_file(env_path)

        assert env_path.read_bytes() == b"A=1\r\nRUST_LOG=debug\r\n"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(LauncherIOError):
            _store(RUST_LOG="info").save_to_file(tmp_path / "absent.env")
        assert not (tmp_path / "absent.env").exists()

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
    def test_keeps_file_mode(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("RUST_LOG=info\n", encoding="utf-8")
        env_path.chmod(0o600)

        _store(RUST_LOG="debug").save_to_file(env_path)

        assert stat.S_IMODE(env_path.stat().st_mode) == 0o600

    def test_no_temp_files_left(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("RUST_LOG=info\n", encoding="utf-8")

        _store(RUST_LOG="debug").save_to_file(env_path)

        assert sorted(p.name for p in tmp_path.iterdir()) == [".env"]

    def test_str_lists_entries(self) -> None:
        assert str(_store(RUST_LOG="info")) == "RUST_LOG=info\n"
