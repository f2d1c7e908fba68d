"""Exception hierarchy for the launcher."""


class LauncherError(Exception):
    """Base class for all launcher errors."""


class UnsupportedPlatformError(LauncherError):
    """The host OS/architecture has no release asset label."""


class NotFoundError(LauncherError):
    """No release, tag or platform asset matched the request."""


class NetworkError(LauncherError):
    """A request to the release source failed at the transport level."""


class LauncherIOError(LauncherError):
    """Reading, writing, renaming or chmod-ing a local file failed."""


class StartupFailedError(LauncherError):
    """The companion service never became reachable after being spawned."""


class ProcessError(LauncherError):
    """Spawning or killing a child process failed."""
