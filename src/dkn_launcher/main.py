"""Main entry point for the compute node launcher."""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

from dkn_launcher import __version__
from dkn_launcher.config import Settings, get_settings
from dkn_launcher.env import EnvStore
from dkn_launcher.errors import LauncherError
from dkn_launcher.logging import get_logger, setup_logging
from dkn_launcher.process.companion import CompanionConfig, CompanionProcessManager
from dkn_launcher.process.rlimit import configure_rlimit
from dkn_launcher.process.signals import (
    CancellationToken,
    install_signal_handlers,
    remove_signal_handlers,
)
from dkn_launcher.process.supervisor import ProcessSupervisor, SupervisorConfig
from dkn_launcher.updater.installer import Installer
from dkn_launcher.updater.manager import (
    LauncherUpdater,
    compute_binary_name,
    download_specific_release,
    update_all,
)
from dkn_launcher.updater.releases import ReleaseResolver, Repository
from dkn_launcher.updater.self_replace import cleanup_stale_binary, current_executable
from dkn_launcher.updater.versions import VersionTracker

log = get_logger("dkn_launcher.main")


@dataclass
class Components:
    """Collaborators shared by every command, built from settings."""

    resolver: ReleaseResolver
    installer: Installer
    tracker: VersionTracker
    launcher: LauncherUpdater | None


def build_components(settings: Settings) -> Components:
    token = settings.github_token.get_secret_value() if settings.github_token else None
    resolver = ReleaseResolver(
        owner=settings.release_owner,
        api_url=settings.github_api_url,
        github_token=token,
        timeout=settings.http_timeout_seconds,
        repo_names={
            Repository.COMPUTE_NODE: settings.compute_repo,
            Repository.LAUNCHER: settings.launcher_repo,
        },
    )
    installer = Installer(timeout=settings.download_timeout_seconds, github_token=token)

    executable = current_executable()
    launcher = (
        LauncherUpdater(resolver, installer, current_version=__version__, executable=executable)
        if executable is not None
        else None
    )
    return Components(resolver, installer, VersionTracker(), launcher)


async def start(
    settings: Settings,
    components: Components,
    env_path: Path,
    binary_name: str | None = None,
    check_updates: bool = True,
) -> None:
    """Run a compute node under the supervisor until it exits or a signal arrives."""
    exe_dir = env_path.parent
    binary_name = binary_name or compute_binary_name()

    if check_updates:
        await update_all(
            components.resolver,
            components.installer,
            components.tracker,
            exe_dir,
            components.launcher,
        )

    env = EnvStore.load_from_environment(env_file=env_path)
    ollama_models = env.get_ollama_models()
    if ollama_models:
        log.info("ollama_models_configured", models=ollama_models)

    configure_rlimit()

    cancellation = CancellationToken()
    hooked = install_signal_handlers(cancellation)

    companion = CompanionProcessManager(
        CompanionConfig.from_env(
            env,
            executable=settings.companion_executable,
            probe_timeout=settings.companion_probe_timeout_seconds,
            retry_count=settings.companion_retry_count,
            retry_interval=settings.companion_retry_interval_seconds,
            pull_timeout=settings.download_timeout_seconds,
        )
    )
    supervisor = ProcessSupervisor(
        SupervisorConfig(
            exe_dir=exe_dir,
            binary_name=binary_name,
            env_path=env_path,
            check_updates=check_updates,
            requires_companion=bool(ollama_models),
            companion_models=tuple(ollama_models) if env.get_ollama_auto_pull() else (),
            compute_update_interval=settings.compute_update_interval_seconds,
            launcher_update_interval=settings.launcher_update_interval_seconds,
            kill_timeout=settings.kill_timeout_seconds,
        ),
        resolver=components.resolver,
        installer=components.installer,
        tracker=components.tracker,
        cancellation=cancellation,
        companion=companion,
        launcher_updater=components.launcher if check_updates else None,
    )

    try:
        await supervisor.run()
    finally:
        remove_signal_handlers(hooked)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dkn-compute-launcher",
        description="Dria compute node launcher",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-e", "--env", type=Path, default=None, help="path to the .env file")
    parser.add_argument("-d", "--debug", action="store_true", help="enable debug-level logs")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("start", help="start the latest compute node")
    sub.add_parser("update", help="update the compute node and the launcher")
    specific = sub.add_parser("specific", help="run a specific compute node version")
    specific.add_argument("--tag", required=True, help="version to download, e.g. 0.3.4")
    specific.add_argument("--run", action="store_true", help="run it right away")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "start"
    return args


async def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    args = _parse_args(argv)
    setup_logging("DEBUG" if args.debug else None)

    settings = get_settings()
    env_path: Path = (args.env or settings.default_env_path).expanduser()
    log.info("launcher_starting", version=__version__, command=args.command, env=str(env_path))

    components = build_components(settings)
    cleanup_stale_binary()

    try:
        env_path.parent.mkdir(parents=True, exist_ok=True)

        if args.command == "update":
            await update_all(
                components.resolver,
                components.installer,
                components.tracker,
                env_path.parent,
                components.launcher,
            )
        elif args.command == "specific":
            path = await download_specific_release(
                components.resolver, components.installer, env_path.parent, args.tag
            )
            log.info("specific_release_ready", path=str(path))
            if args.run:
                await start(
                    settings,
                    components,
                    env_path,
                    binary_name=path.name,
                    check_updates=False,
                )
        else:
            await start(settings, components, env_path, check_updates=settings.check_updates)
    except LauncherError as exc:
        log.error("launcher_failed", command=args.command, error=str(exc))
        return 1
    except OSError as exc:
        log.error("launcher_failed", command=args.command, error=str(exc))
        return 1

    log.info("launcher_stopped")
    return 0


def run() -> None:
    """Run the application."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
