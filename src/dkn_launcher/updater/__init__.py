"""Release discovery, atomic installs and self-update for the launcher.

Provides:
- ReleaseResolver: lists GitHub releases and picks the platform asset
- Installer: downloads an asset and swaps it into place atomically
- VersionTracker: the per-directory record of the installed node version
- LauncherUpdater: replaces the running launcher binary
"""

from dkn_launcher.updater.installer import Installer
from dkn_launcher.updater.manager import LauncherUpdater
from dkn_launcher.updater.releases import Release, ReleaseResolver, Repository
from dkn_launcher.updater.versions import VersionTracker

__all__ = [
    "Installer",
    "LauncherUpdater",
    "Release",
    "ReleaseResolver",
    "Repository",
    "VersionTracker",
]
