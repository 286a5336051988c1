"""Definition of the installation context, the event channel used to report progress
and the standard metadata format used by Mojang. This module also provide Mojang's
version manifest which can be used as default version repository, allowing resolution
of what we call "vanilla" versions.
"""

from contextlib import asynccontextmanager
from json import JSONDecodeError
from pathlib import Path
import platform
import json
import re

import httpx

from .download import DownloadList, DownloadEntry, DownloadResultSuccess, DownloadResultError, \
    fetch_with_retry, fetch_file_with_retry
from .util import merge_dict, get_minecraft_dir, minecraft_os, minecraft_arch
from .result import ErrorKind, InstallError, FetchError
from .http import HttpResponse, new_client

from typing import Optional, Iterator, Dict, List, Any, Callable, Set, AsyncIterator


RESOURCES_URL = "https://resources.download.minecraft.net/"
LIBRARIES_URL = "https://libraries.minecraft.net/"
VERSION_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"


class Context:
    """Context of the game's installation. This defines the directories where versions,
    assets, libraries and runtimes are stored, the platform the installation targets
    and the network policy used by every component.

    A context replaces any global state, each component takes it in its constructor.
    """

    def __init__(self,
        main_dir: Optional[Path] = None, *,
        os_name: Optional[str] = None,
        arch: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_backoff: float = 1.0,
        resource_cooldown: float = 10.0,
        assets_wave_size: int = 50,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        """Construct a Minecraft installation context.

        :param main_dir: The main directory where versions, assets, libraries and
        runtimes are installed. If not specified this path will be set the usual
        `.minecraft` (see https://minecraft.fandom.com/wiki/.minecraft).
        :param os_name: Mojang name of the target OS (linux, windows, osx), defaults to
        the running one.
        :param arch: Mojang name of the target architecture (x86_64, x86, arm64, arm32),
        defaults to the running one.
        :param timeout: Timeout of network requests, in seconds.
        :param max_attempts: Maximum attempts of a fetch on transient failures.
        :param retry_backoff: Delay before the first retry, doubled on each retry.
        :param resource_cooldown: Delay before retrying after too many open files.
        :param assets_wave_size: Maximum concurrent fetches per download wave.
        :param http_client: Optional client owned by the caller, used for every request.
        """

        self.main_dir = get_minecraft_dir() if main_dir is None else main_dir
        self.versions_dir = self.main_dir / "versions"
        self.assets_dir = self.main_dir / "assets"
        self.libraries_dir = self.main_dir / "libraries"
        self.jvm_dir = self.main_dir / "jvm"
        self.os_name = minecraft_os if os_name is None else os_name
        self.arch = minecraft_arch if arch is None else arch
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.resource_cooldown = resource_cooldown
        self.assets_wave_size = assets_wave_size
        self.http_client = http_client

    def get_version(self, version: str) -> "VersionHandle":
        """Get a version's handle.
        """
        return VersionHandle(version, self.versions_dir / version)

    def list_versions(self) -> "Iterator[VersionHandle]":
        """List installed versions given their handles.
        """
        if self.versions_dir.is_dir():
            for version_dir in self.versions_dir.iterdir():
                if version_dir.is_dir():
                    version = VersionHandle(version_dir.name, version_dir)
                    if version.metadata_exists():
                        yield version

    @asynccontextmanager
    async def open_client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Open the HTTP client to use with this context, the client given to the
        constructor is never closed by this method.
        """
        if self.http_client is not None:
            yield self.http_client
        else:
            async with new_client(self.timeout) as client:
                yield client

    async def fetch(self, client: httpx.AsyncClient, url: str, *, accept: Optional[str] = None) -> HttpResponse:
        """Fetch a resource in memory with the retry policy of this context.
        """
        return await fetch_with_retry(url,
            max_attempts=self.max_attempts,
            backoff=self.retry_backoff,
            client=client,
            accept=accept)

    async def fetch_json(self, client: httpx.AsyncClient, url: str) -> Any:
        """Fetch and decode a JSON resource with the retry policy of this context.
        """
        res = await self.fetch(client, url, accept="application/json")
        try:
            return res.json()
        except JSONDecodeError as error:
            raise InstallError(ErrorKind.INVALID_METADATA, f"invalid json from {url}: {error}")

    async def fetch_file(self, client: httpx.AsyncClient, entry: DownloadEntry) -> int:
        """Download a single entry with the retry policy of this context.
        """
        return await fetch_file_with_retry(entry.url, entry.dst,
            max_attempts=self.max_attempts,
            backoff=self.retry_backoff,
            size=entry.size,
            sha1=entry.sha1,
            executable=entry.executable,
            client=client)


class Watcher:
    """Base class for a watcher of the install process.
    """

    def handle(self, event: Any) -> None:
        """Called when the watcher can handle the given event. Default implementation
        does nothing.
        """


class WatcherGroup(Watcher):
    """A group of watcher that is itself a watcher, its functions dispatches events to
    all tasks.
    """

    def __init__(self) -> None:
        self.children: Set[Watcher] = set()

    def add(self, watcher: Watcher) -> None:
        """Add a watcher to the installer to this group.
        """
        self.children.add(watcher)

    def remove(self, watcher: Watcher) -> None:
        """Remove a watcher from the group.
        """
        self.children.remove(watcher)

    def handle(self, event: Any) -> None:
        for watcher in self.children:
            watcher.handle(event)


class SimpleWatcher(Watcher):

    def __init__(self, handlers: Dict[type, Callable[[Any], None]]) -> None:
        self.handlers = handlers

    def handle(self, event: Any) -> None:
        handler = self.handlers.get(type(event))
        if handler is not None:
            handler(event)


class CollectWatcher(Watcher):
    """A watcher that keeps every event, mostly useful for headless callers that want
    to inspect the events after an install.
    """

    def __init__(self) -> None:
        self.events: List[Any] = []

    def handle(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


class VersionHandle:
    """This class holds a version handle that allows modifying its metadata, reading and
    writing it. The parents of this version can also be linked and then merged together
    to get a full metadata.
    """

    __slots__ = "id", "dir", "metadata", "parent"

    def __init__(self, id: str, dir: Path) -> None:
        self.id = id
        self.dir = dir
        self.metadata = {}
        self.parent: Optional[VersionHandle] = None

    def metadata_exists(self) -> bool:
        """This function returns true if the version's metadata file exists.
        """
        return self.metadata_file().is_file()

    def metadata_file(self) -> Path:
        """This function returns the computed path of the metadata file.
        """
        return self.dir / f"{self.id}.json"

    def jar_file(self) -> Path:
        """This function returns the computed path of the JAR file of the game.
        """
        return self.dir / f"{self.id}.jar"

    def write_metadata_file(self) -> None:
        """This function write the metadata file of the version with the internal data.
        """
        self.dir.mkdir(parents=True, exist_ok=True)
        with self.metadata_file().open("wt") as fp:
            json.dump(self.metadata, fp, indent=2)

    def read_metadata_file(self) -> bool:
        """This function reads the metadata file and updates the internal data if found.

        :return: True if the data was actually updated from the file.
        """
        try:
            with self.metadata_file().open("rt") as fp:
                self.metadata = json.load(fp)
            return isinstance(self.metadata, dict)
        except (OSError, JSONDecodeError):
            return False

    def recurse(self) -> "Iterator[VersionHandle]":
        """Walk through every version metadata in the hierarchy of the current one.
        """
        version_meta = self
        while version_meta is not None:
            yield version_meta
            version_meta = version_meta.parent

    def merge(self) -> dict:
        """Merge this version metadata and all of its parents.
        """
        result = {}
        for version_meta in self.recurse():
            merge_dict(result, version_meta.metadata)
        return result

    def __str__(self) -> str:
        return self.id

    def __repr__(self) -> str:
        return f"<VersionHandle {self.id}>"


class VersionManifest:
    """The Mojang's official version manifest. Providing officially available versions
    with optional cache file, used when the manifest can't be fetched.
    """

    def __init__(self, context: Context, *,
        url: str = VERSION_MANIFEST_URL,
        cache_file: Optional[Path] = None
    ) -> None:
        self.context = context
        self.url = url
        self.cache_file = cache_file
        self.data: Optional[dict] = None

    async def _ensure_data(self, client: httpx.AsyncClient) -> dict:
        """Internal method that ensure that the manifest data is loaded.

        :return: The full data of the manifest.
        :raises FetchError: Underlying error if manifest could not be requested.
        """

        if self.data is None:

            try:
                data = await self.context.fetch_json(client, self.url)
            except FetchError as error:
                # Only network errors fall back to the cache, a missing manifest is
                # an error on its own.
                cache_data = self._read_cache() if error.kind == ErrorKind.TRANSIENT_NETWORK else None
                if cache_data is None:
                    raise
                data = cache_data
            else:
                if not isinstance(data, dict) or not isinstance(data.get("versions"), list):
                    raise ValueError("version manifest: /versions must be a list")
                self._write_cache(data)

            self.data = data

        return self.data

    def _read_cache(self) -> Optional[dict]:
        if self.cache_file is None:
            return None
        try:
            with self.cache_file.open("rt") as cache_fp:
                return json.load(cache_fp)
        except (OSError, JSONDecodeError):
            return None

    def _write_cache(self, data: dict) -> None:
        if self.cache_file is not None:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with self.cache_file.open("wt") as cache_fp:
                json.dump(data, cache_fp)

    def is_alias(self, version: str) -> bool:
        """Basic function that returns true if the given version is an release or
        snapshot alias.
        """
        return version in ("release", "snapshot")

    async def filter_latest(self, client: httpx.AsyncClient, version: str) -> str:
        """Filter a version identifier if 'release' or 'snapshot' alias is used, then it's
        replaced by the full version identifier, like `1.19.3`.
        """
        if self.is_alias(version):
            latest = (await self._ensure_data(client)).get("latest", {}).get(version)
            if latest is not None:
                return latest
        return version

    async def get_version(self, client: httpx.AsyncClient, version: str) -> Optional[dict]:
        """Get a manifest's version metadata. Containing the metadata's URL, its SHA1 and
        its type.

        :param version: The version identifier.
        :return: If found, the version is returned.
        """
        version = await self.filter_latest(client, version)
        for version_data in (await self._ensure_data(client))["versions"]:
            if version_data.get("id") == version:
                return version_data
        return None


class DownloadReport:
    """Summary of a download list execution.
    """

    __slots__ = "downloaded", "skipped", "failed"

    def __init__(self, downloaded: int, skipped: int, failed: List[DownloadResultError]) -> None:
        self.downloaded = downloaded
        self.skipped = skipped
        self.failed = failed

    @property
    def total(self) -> int:
        return self.downloaded + self.skipped + len(self.failed)

    def __repr__(self) -> str:
        return f"<DownloadReport downloaded: {self.downloaded}, skipped: {self.skipped}, failed: {len(self.failed)}>"


async def download(dl: DownloadList, context: Context, client: httpx.AsyncClient, watcher: Watcher, *,
    phase: str,
    fatal: bool = True
) -> DownloadReport:
    """Execute a download list, reporting its progress to the watcher.

    :param phase: Name of the install phase reported in progress events.
    :param fatal: If true, any failed entry raises a `DownloadError` after all waves
    settled, if false failed entries are only counted in the report.
    """

    entries_count = len(dl.entries)
    failed: List[DownloadResultError] = []
    downloaded = 0

    watcher.handle(DownloadStartEvent(entries_count, dl.size, dl.skipped, context.assets_wave_size))
    watcher.handle(ProgressEvent(phase, "download", entries_count, 0))

    async for result_count, result in dl.download(client,
        wave_size=context.assets_wave_size,
        max_attempts=context.max_attempts,
        backoff=context.retry_backoff
    ):
        if isinstance(result, DownloadResultSuccess):
            downloaded += 1
        elif isinstance(result, DownloadResultError):
            failed.append(result)
        watcher.handle(DownloadProgressEvent(result_count, entries_count, result))
        watcher.handle(ProgressEvent(phase, "download", entries_count, result_count))

    report = DownloadReport(downloaded, dl.skipped, failed)
    dl.clear()

    watcher.handle(DownloadCompleteEvent(report))

    if fatal and len(failed):
        raise DownloadError(failed)

    return report


def parse_download_entry(value: Any, dst: Path, path: str) -> DownloadEntry:
    """Common function to parse a download entry from a metadata JSON file.
    """

    if not isinstance(value, dict):
        raise ValueError(f"{path} must an object")

    url = value.get("url")
    if not isinstance(url, str):
        raise ValueError(f"{path}/url must be a string")

    size = value.get("size")
    if size is not None and not isinstance(size, int):
        raise ValueError(f"{path}/size must be an integer")

    sha1 = value.get("sha1")
    if sha1 is not None and not isinstance(sha1, str):
        raise ValueError(f"{path}/sha1 must be a string")

    return DownloadEntry(url, dst, size=size, sha1=sha1, name=dst.name)


def interpret_rule(rules: Any, features: Dict[str, bool], path: str, *,
    os_name: Optional[str] = minecraft_os,
    arch: Optional[str] = minecraft_arch
) -> bool:
    """Common function to interpret rules and determine if the condition is met.
    """

    if not isinstance(rules, list):
        raise ValueError(f"{path} must be a list")

    allowed = False
    for i, rule in enumerate(rules):

        if not isinstance(rule, dict):
            raise ValueError(f"{path}/{i} must be an object")

        rule_os = rule.get("os")
        if rule_os is not None and not interpret_rule_os(rule_os, f"{path}/{i}/os", os_name=os_name, arch=arch):
            continue

        rule_features = rule.get("features")
        if rule_features is not None:

            if not isinstance(rule_features, dict):
                raise ValueError(f"{path}/{i}/features must be an object")

            if any(features.get(name) != expected for name, expected in rule_features.items()):
                continue

        action = rule.get("action")
        if action == "disallow":
            return False    # Early return because of disallow.
        elif action == "allow":
            allowed = True  # Only other possible value is "allow".
        else:
            raise ValueError(f"{path}/{i}/action must be 'allow' and 'disallow'")

    return allowed


def interpret_rule_os(rule_os: Any, path: str, *,
    os_name: Optional[str] = minecraft_os,
    arch: Optional[str] = minecraft_arch
) -> bool:
    """Common function to interpret a rule constraint on the target OS.
    """

    if not isinstance(rule_os, dict):
        raise ValueError(f"{path} must be an object")

    rule_os_name = rule_os.get("name")
    if rule_os_name is None or rule_os_name == os_name:
        rule_os_arch = rule_os.get("arch")
        if rule_os_arch is None or rule_os_arch == arch:
            os_version = rule_os.get("version")
            if os_version is None or re.search(os_version, platform.version()) is not None:
                return True
    return False


class VersionNotFoundError(InstallError):
    """Raised when a version was not found. The version that was not found is given.
    """
    def __init__(self, version: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, f"version not found: {version}")
        self.version = version


class TooMuchParentsError(InstallError):
    """Raised when a version hierarchy is too deep. The hierarchy of versions is given
    in property `versions`.
    """
    def __init__(self, versions: List[str]) -> None:
        super().__init__(ErrorKind.INVALID_METADATA, f"too much parents: {', '.join(versions)}")
        self.versions = versions


class JarNotFoundError(InstallError):
    """Raised when no version's JAR file could be found from the metadata.
    """
    def __init__(self, version: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, f"no jar file for version {version}")
        self.version = version


class DownloadError(InstallError):
    """Raised when the downloader failed to download some entries, the kind is the one
    of the first failed entry.
    """
    def __init__(self, errors: List[DownloadResultError]) -> None:
        names = ", ".join(result.entry.name for result in errors[:5])
        super().__init__(errors[0].code, f"{len(errors)} download(s) failed: {names}")
        self.errors = errors


class ProgressEvent:
    """Event triggered at each install phase boundary, and during downloads, with the
    number of completed units out of the total, total may be zero if unknown.
    """
    __slots__ = "phase", "description", "total_units", "completed_units"
    def __init__(self, phase: str, description: str, total_units: int, completed_units: int) -> None:
        self.phase = phase
        self.description = description
        self.total_units = total_units
        self.completed_units = completed_units

    def __repr__(self) -> str:
        return f"<ProgressEvent {self.phase}: {self.description} {self.completed_units}/{self.total_units}>"

class VersionEvent:
    """Base class for events regarding version.
    """
    __slots__ = "version",
    def __init__(self, version: str) -> None:
        self.version = version

class VersionLoadingEvent(VersionEvent):
    """Event triggered when a version is being loaded.
    """
    __slots__ = tuple()

class VersionFetchingEvent(VersionEvent):
    """Event triggered when a version is being fetched.
    """
    __slots__ = tuple()

class VersionLoadedEvent(VersionEvent):
    """Event triggered when a version has been successfully loaded.
    """
    __slots__ = "fetched",
    def __init__(self, version: str, fetched: bool) -> None:
        super().__init__(version)
        self.fetched = fetched

class AssetsResolveEvent:
    __slots__ = "index_version", "count"
    def __init__(self, index_version: str, count: Optional[int]) -> None:
        self.index_version = index_version
        self.count = count

class LibrariesResolvedEvent:
    """Event triggered when all libraries has been successfully resolved.
    """
    __slots__ = "count", "excluded_count"
    def __init__(self, count: int, excluded_count: int) -> None:
        self.count = count
        self.excluded_count = excluded_count

class DownloadStartEvent:
    __slots__ = "entries_count", "size", "skipped_count", "wave_size"
    def __init__(self, entries_count: int, size: int, skipped_count: int, wave_size: int) -> None:
        self.entries_count = entries_count
        self.size = size
        self.skipped_count = skipped_count
        self.wave_size = wave_size

class DownloadProgressEvent:
    __slots__ = "count", "total_count", "result"
    def __init__(self, count: int, total_count: int, result: Any) -> None:
        self.count = count
        self.total_count = total_count
        self.result = result

class DownloadCompleteEvent:
    __slots__ = "report",
    def __init__(self, report: DownloadReport) -> None:
        self.report = report
