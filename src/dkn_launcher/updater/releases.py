"""Release discovery for the compute node and the launcher.

Releases are listed from the GitHub REST API.  Each release carries one
binary asset per supported platform; the asset for the running host is
picked by its platform label (``{os}-{arch}{ext}``).  Versions are opaque
strings and are only ever compared for equality.
"""

from __future__ import annotations

import platform
from dataclasses import dataclass, field
from enum import Enum
from collections.abc import Mapping
from typing import Any

import httpx

from dkn_launcher import constants
from dkn_launcher.errors import NetworkError, NotFoundError, UnsupportedPlatformError
from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.updater.releases")

_OS_LABELS: dict[str, str] = {
    "linux": "linux",
    "windows": "windows",
    "darwin": "macOS",
}

_ARCH_LABELS: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "arm": "arm64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


class Repository(Enum):
    """Release repositories, both owned by the same organisation."""

    COMPUTE_NODE = constants.COMPUTE_REPO
    LAUNCHER = constants.LAUNCHER_REPO

    @property
    def asset_prefix(self) -> str:
        if self is Repository.COMPUTE_NODE:
            return "dkn-compute-binary"
        return "dkn-compute-launcher"

    @property
    def file_prefix(self) -> str:
        if self is Repository.COMPUTE_NODE:
            return "dkn-compute-node"
        return "dkn-compute-launcher"


@dataclass(frozen=True)
class HostPlatform:
    """Raw host identity, as reported by :mod:`platform`."""

    system: str
    machine: str

    @classmethod
    def current(cls) -> HostPlatform:
        return cls(system=platform.system(), machine=platform.machine())


@dataclass(frozen=True)
class PlatformLabel:
    """Release-asset label for a platform, e.g. ``linux``/``amd64``/``""``."""

    os: str
    arch: str
    ext: str

    @classmethod
    def from_host(cls, host: HostPlatform | None = None) -> PlatformLabel:
        """Map a host to its label.

        Raises:
            UnsupportedPlatformError: if the OS or architecture is unknown.
        """
        host = host or HostPlatform.current()
        os_label = _OS_LABELS.get(host.system.lower())
        arch_label = _ARCH_LABELS.get(host.machine.lower())
        if os_label is None or arch_label is None:
            raise UnsupportedPlatformError(
                f"unsupported OS {host.system!r} ARCH {host.machine!r}"
            )
        ext = ".exe" if os_label == "windows" else ""
        return cls(os=os_label, arch=arch_label, ext=ext)

    def asset_name(self, repo: Repository) -> str:
        return f"{repo.asset_prefix}-{self.os}-{self.arch}{self.ext}"


@dataclass(frozen=True)
class Asset:
    """A downloadable file within a release."""

    name: str
    download_url: str
    size: int = 0


@dataclass(frozen=True)
class Release:
    """A published release of one repository."""

    name: str
    version: str  # tag without the leading 'v'
    repository: Repository
    assets: tuple[Asset, ...] = field(default_factory=tuple)

    def to_filename(self, label: PlatformLabel | None = None) -> str:
        """Versioned filename for pinned installs, e.g. ``dkn-compute-node_v0.3.4``."""
        label = label or PlatformLabel.from_host()
        return f"{self.repository.file_prefix}_v{self.version}{label.ext}"

    def __str__(self) -> str:
        return self.name or self.version

    @classmethod
    def from_github(cls, data: dict[str, Any], repository: Repository) -> Release:
        tag = str(data.get("tag_name", ""))
        assets = tuple(
            Asset(
                name=str(item.get("name", "")),
                download_url=str(item.get("browser_download_url", "")),
                size=int(item.get("size") or 0),
            )
            for item in data.get("assets") or []
        )
        return cls(
            name=str(data.get("name") or tag),
            version=tag.removeprefix("v"),
            repository=repository,
            assets=assets,
        )


def resolve_asset(release: Release, host: HostPlatform | None = None) -> Asset:
    """Return the asset of *release* built for *host* (default: this machine).

    Raises:
        UnsupportedPlatformError: the host has no label, regardless of the
            release's assets.
        NotFoundError: the release has no asset for a supported host.
    """
    label = PlatformLabel.from_host(host)
    target = label.asset_name(release.repository)
    for asset in release.assets:
        if asset.name == target:
            return asset
    raise NotFoundError(
        f"asset {target} not found in release {release.version} of {release.repository.value}"
    )


class ReleaseResolver:
    """Lists releases for the launcher's repositories.

    Results are never cached: every call queries the release source.
    """

    def __init__(
        self,
        owner: str = constants.RELEASE_OWNER,
        api_url: str = "https://api.github.com",
        github_token: str | None = None,
        timeout: float = constants.HTTP_TIMEOUT_SECONDS,
        max_pages: int = constants.MAX_RELEASE_PAGES,
        repo_names: Mapping[Repository, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._owner = owner
        self._api_url = api_url.rstrip("/")
        self._github_token = github_token
        self._timeout = timeout
        self._max_pages = max_pages
        # forks can publish under other repository names
        self._repo_names = dict(repo_names or {})
        self._transport = transport

    def repo_name(self, repo: Repository) -> str:
        return self._repo_names.get(repo, repo.value)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/vnd.github+json"}
        if self._github_token:
            headers["Authorization"] = f"Bearer {self._github_token}"
        return headers

    async def list_releases(self, repo: Repository) -> list[Release]:
        """Return all releases of *repo*, newest first.

        An empty list is a valid answer.  Launcher releases in the ``0.0.x``
        series are dropped, they only ship zip archives.

        Raises:
            NetworkError: on transport failure or a non-200 response.
        """
        name = self.repo_name(repo)
        url: str | None = f"{self._api_url}/repos/{self._owner}/{name}/releases"
        params: dict[str, Any] | None = {"per_page": 100}
        releases: list[Release] = []

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                for _ in range(self._max_pages):
                    if url is None:
                        break
                    resp = await client.get(url, headers=self._headers(), params=params)
                    if resp.status_code != 200:
                        log.warning(
                            "releases_api_error",
                            repo=repo.value,
                            status=resp.status_code,
                        )
                        raise NetworkError(
                            f"listing releases of {repo.value} failed with HTTP {resp.status_code}"
                        )
                    try:
                        page = [Release.from_github(item, repo) for item in resp.json()]
                    except (ValueError, TypeError, AttributeError) as exc:
                        # proxies and captive portals answer 200 with an HTML page
                        log.warning("releases_api_error", repo=name, error=str(exc))
                        raise NetworkError(
                            f"unexpected release listing for {name}: {exc}"
                        ) from exc
                    releases.extend(page)
                    url = resp.links.get("next", {}).get("url")
                    # the next link already carries the query string
                    params = None
        except httpx.HTTPError as exc:
            log.warning("releases_fetch_failed", repo=repo.value, error=str(exc))
            raise NetworkError(f"could not fetch releases of {repo.value}: {exc}") from exc

        if repo is Repository.LAUNCHER:
            releases = [r for r in releases if not r.version.startswith("0.0")]

        log.debug("releases_listed", repo=repo.value, count=len(releases))
        return releases

    async def latest(self, repo: Repository) -> Release:
        """Return the newest release of *repo*.

        Raises:
            NotFoundError: if the repository has no releases.
        """
        releases = await self.list_releases(repo)
        if not releases:
            raise NotFoundError(f"no releases found for {repo.value}")
        return releases[0]

    async def find_by_tag(self, repo: Repository, tag: str) -> Release:
        """Return the release whose version equals *tag* exactly.

        Raises:
            NotFoundError: if no release has that version.
        """
        for release in await self.list_releases(repo):
            if release.version == tag:
                return release
        raise NotFoundError(f"no release found for tag {tag!r} in {repo.value}")
