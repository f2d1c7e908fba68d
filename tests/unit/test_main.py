"""Unit tests for the launcher entry point."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dkn_launcher import main as launcher_main
from dkn_launcher.config import Settings
from dkn_launcher.errors import NetworkError
from dkn_launcher.main import Components, _parse_args, build_components, start
from dkn_launcher.updater.releases import Repository


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {"_env_file": None, "home_dir": tmp_path}
    values.update(overrides)
    return Settings(**values)


def _components() -> Components:
    return Components(
        resolver=MagicMock(),
        installer=MagicMock(),
        tracker=MagicMock(),
        launcher=None,
    )


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParseArgs:
    """Tests for the command line."""

    def test_default_command_is_start(self) -> None:
        args = _parse_args([])
        assert args.command == "start"
        assert args.env is None
        assert args.debug is False

    def test_global_options(self) -> None:
        args = _parse_args(["--env", "/tmp/node.env", "-d", "update"])
        assert args.command == "update"
        assert args.env == Path("/tmp/node.env")
        assert args.debug is True

    def test_specific_requires_tag(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["specific"])

    def test_specific(self) -> None:
        args = _parse_args(["specific", "--tag", "0.3.4", "--run"])
        assert args.command == "specific"
        assert args.tag == "0.3.4"
        assert args.run is True


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestBuildComponents:
    """Tests for build_components()."""

    def test_not_frozen_has_no_launcher_updater(self, tmp_path: Path) -> None:
        with patch("dkn_launcher.main.current_executable", return_value=None):
            components = build_components(_settings(tmp_path))

        assert components.launcher is None
        assert components.resolver.repo_name(Repository.COMPUTE_NODE) == "dkn-compute-node"

    def test_frozen_has_launcher_updater(self, tmp_path: Path) -> None:
        exe = tmp_path / "dkn-compute-launcher"
        with patch("dkn_launcher.main.current_executable", return_value=exe):
            components = build_components(_settings(tmp_path, launcher_repo="launcher-fork"))

        assert components.launcher is not None
        assert components.resolver.repo_name(Repository.LAUNCHER) == "launcher-fork"


class TestStart:
    """Tests for start()."""

    @pytest.fixture(autouse=True)
    def mock_remove(self, monkeypatch):
        monkeypatch.delenv("DKN_MODELS", raising=False)
        monkeypatch.delenv("OLLAMA_AUTO_PULL", raising=False)
        with (
            patch("dkn_launcher.main.configure_rlimit"),
            patch("dkn_launcher.main.install_signal_handlers", return_value=[]),
            patch("dkn_launcher.main.remove_signal_handlers") as mock_remove,
        ):
            yield mock_remove

    async def test_companion_required_for_ollama_models(
        self, tmp_path: Path, mock_remove: MagicMock
    ) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("DKN_MODELS=gemma3:4b,gpt-4o\n", encoding="utf-8")

        with patch("dkn_launcher.main.ProcessSupervisor") as mock_supervisor:
            mock_supervisor.return_value.run = AsyncMock()
            await start(_settings(tmp_path), _components(), env_path, check_updates=False)

        config = mock_supervisor.call_args.args[0]
        assert config.requires_companion is True
        assert config.companion_models == ("gemma3:4b",)
        assert config.exe_dir == tmp_path
        assert config.env_path == env_path
        assert config.check_updates is False
        mock_remove.assert_called_once()

    async def test_no_companion_for_api_models(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("DKN_MODELS=gpt-4o\n", encoding="utf-8")

        with patch("dkn_launcher.main.ProcessSupervisor") as mock_supervisor:
            mock_supervisor.return_value.run = AsyncMock()
            await start(
                _settings(tmp_path),
                _components(),
                env_path,
                binary_name="node",
                check_updates=False,
            )

        config = mock_supervisor.call_args.args[0]
        assert config.requires_companion is False
        assert config.binary_name == "node"

    async def test_auto_pull_switched_off(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("DKN_MODELS=gemma3:4b\nOLLAMA_AUTO_PULL=false\n", encoding="utf-8")

        with patch("dkn_launcher.main.ProcessSupervisor") as mock_supervisor:
            mock_supervisor.return_value.run = AsyncMock()
            await start(_settings(tmp_path), _components(), env_path, check_updates=False)

        config = mock_supervisor.call_args.args[0]
        assert config.requires_companion is True
        assert config.companion_models == ()

    async def test_updates_before_start(self, tmp_path: Path) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("", encoding="utf-8")

        with (
            patch("dkn_launcher.main.update_all", new=AsyncMock()) as mock_update,
            patch("dkn_launcher.main.ProcessSupervisor") as mock_supervisor,
        ):
            mock_supervisor.return_value.run = AsyncMock()
            await start(_settings(tmp_path), _components(), env_path, binary_name="node")

        mock_update.assert_awaited_once()

    async def test_signal_handlers_removed_on_failure(
        self, tmp_path: Path, mock_remove: MagicMock
    ) -> None:
        env_path = tmp_path / ".env"
        env_path.write_text("", encoding="utf-8")

        with patch("dkn_launcher.main.ProcessSupervisor") as mock_supervisor:
            mock_supervisor.return_value.run = AsyncMock(side_effect=NetworkError("boom"))
            with pytest.raises(NetworkError):
                await start(
                    _settings(tmp_path),
                    _components(),
                    env_path,
                    binary_name="node",
                    check_updates=False,
                )

        mock_remove.assert_called_once()


class TestMain:
    """Tests for main()."""

    @pytest.fixture(autouse=True)
    def _wired(self, tmp_path: Path):
        with (
            patch("dkn_launcher.main.setup_logging"),
            patch("dkn_launcher.main.get_settings", return_value=_settings(tmp_path)),
            patch("dkn_launcher.main.build_components", return_value=_components()),
            patch("dkn_launcher.main.cleanup_stale_binary"),
        ):
            yield

    async def test_update_command(self, tmp_path: Path) -> None:
        with patch("dkn_launcher.main.update_all", new=AsyncMock()) as mock_update:
            code = await launcher_main.main(["update"])

        assert code == 0
        assert mock_update.await_args.args[3] == tmp_path

    async def test_specific_without_run(self, tmp_path: Path) -> None:
        pinned = tmp_path / "dkn-compute-node_v0.3.4"
        with (
            patch(
                "dkn_launcher.main.download_specific_release",
                new=AsyncMock(return_value=pinned),
            ),
            patch("dkn_launcher.main.start", new=AsyncMock()) as mock_start,
        ):
            code = await launcher_main.main(["specific", "--tag", "0.3.4"])

        assert code == 0
        mock_start.assert_not_awaited()

    async def test_specific_with_run(self, tmp_path: Path) -> None:
        pinned = tmp_path / "dkn-compute-node_v0.3.4"
        with (
            patch(
                "dkn_launcher.main.download_specific_release",
                new=AsyncMock(return_value=pinned),
            ),
            patch("dkn_launcher.main.start", new=AsyncMock()) as mock_start,
        ):
            await launcher_main.main(["specific", "--tag", "0.3.4", "--run"])

        kwargs = mock_start.await_args.kwargs
        assert kwargs["binary_name"] == "dkn-compute-node_v0.3.4"
        assert kwargs["check_updates"] is False

    async def test_env_option(self, tmp_path: Path) -> None:
        env_path = tmp_path / "custom" / "node.env"
        with patch("dkn_launcher.main.start", new=AsyncMock()) as mock_start:
            code = await launcher_main.main(["--env", str(env_path)])

        assert code == 0
        assert mock_start.await_args.args[2] == env_path
        assert env_path.parent.is_dir()

    async def test_launcher_error_exits_nonzero(self) -> None:
        with patch(
            "dkn_launcher.main.start",
            new=AsyncMock(side_effect=NetworkError("offline")),
        ):
            assert await launcher_main.main([]) == 1
