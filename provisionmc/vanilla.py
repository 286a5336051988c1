"""Definition of the content installer, installing a base game version: its descriptor,
client JAR, libraries and assets.

The primary strategy resolves the standard metadata format: version hierarchy, rules,
natives, logger configuration, everything checked by size and SHA-1. On any failure
the installer falls back to an independent manual pipeline, a simpler walk through
the version manifest that only depends on the descriptor's download entries. Both
strategies end with the same verification.
"""

from json import JSONDecodeError
from pathlib import Path
import hashlib
import logging
import errno
import json

import httpx

from .standard import Context, VersionHandle, VersionManifest, Watcher, ProgressEvent, \
    DownloadReport, VersionNotFoundError, TooMuchParentsError, JarNotFoundError, \
    VersionLoadingEvent, VersionFetchingEvent, VersionLoadedEvent, AssetsResolveEvent, \
    LibrariesResolvedEvent, RESOURCES_URL, download, parse_download_entry, interpret_rule
from .download import DownloadList, DownloadEntry
from .result import ErrorKind, InstallError, Ok, Err, Result
from .util import LibrarySpecifier
from .lifecycle import verify_installation

from typing import Optional, Dict, List, Tuple


logger = logging.getLogger(__name__)


class ContentInstallation:
    """Result of a successful content install.
    """

    __slots__ = "version", "strategy", "assets"

    def __init__(self, version: str, strategy: str, assets: DownloadReport) -> None:
        self.version = version
        self.strategy = strategy
        self.assets = assets

    def __repr__(self) -> str:
        return f"<ContentInstallation {self.version} ({self.strategy}) {self.assets}>"


class ContentInstaller:
    """Install base game versions into a context.
    """

    STRATEGY_STANDARD = "standard"
    STRATEGY_MANUAL = "manual"

    def __init__(self, context: Context, *,
        manifest: Optional[VersionManifest] = None,
        resources_url: str = RESOURCES_URL
    ) -> None:
        self.context = context
        self.manifest = manifest or VersionManifest(context)
        self.resources_url = resources_url

    async def install(self, version: str, *,
        watcher: Optional[Watcher] = None,
        fallback: bool = True
    ) -> Result:
        """This function ensures that the given version is properly installed, it can
        be called multiple time and will not fetch again what is already installed.

        :param version: The version id, or one of the 'release' or 'snapshot' aliases.
        :param fallback: Set to false to disable the manual fallback pipeline.
        :return: `Ok` with a `ContentInstallation`, or `Err` describing the failure, its
        kind is `not_synchronized` if the final verification failed.
        """

        watcher = watcher or Watcher()

        async with self.context.open_client() as client:

            try:
                version = await self.manifest.filter_latest(client, version)
            except (InstallError, ValueError) as error:
                return _error_result(error)

            strategy = StandardStrategy(self, client, watcher)
            try:
                assets = await strategy.install(version)
            except (InstallError, ValueError, OSError) as error:

                if isinstance(error, OSError) and error.errno in (errno.EMFILE, errno.ENFILE):
                    raise
                if not fallback:
                    return _error_result(error)

                logger.warning("Standard install of %s failed, falling back to manual install: %s", version, error)
                watcher.handle(StrategyFallbackEvent(version, error))

                strategy = ManualStrategy(self, client, watcher)
                try:
                    assets = await strategy.install(version)
                except (InstallError, ValueError, OSError) as manual_error:
                    if isinstance(manual_error, OSError) and manual_error.errno in (errno.EMFILE, errno.ENFILE):
                        raise
                    return _error_result(manual_error)

        watcher.handle(ProgressEvent("verify", version, 1, 0))
        verify_result = verify_installation(self.context, version)
        watcher.handle(ProgressEvent("verify", version, 1, 1))
        if not verify_result.ok:
            return verify_result

        return Ok(ContentInstallation(version, strategy.name, assets))


def _error_result(error: Exception) -> Err:
    if isinstance(error, InstallError):
        return Err.from_error(error)
    elif isinstance(error, ValueError):
        return Err(ErrorKind.INVALID_METADATA, str(error), error)
    else:
        return Err(ErrorKind.FATAL_STRUCTURAL, str(error), error)


class InstallStrategy:
    """Base class of a content install strategy, a new instance is used for each
    install.
    """

    name = ""

    def __init__(self, installer: ContentInstaller, client: httpx.AsyncClient, watcher: Watcher) -> None:
        self.installer = installer
        self.context = installer.context
        self.manifest = installer.manifest
        self.client = client
        self.watcher = watcher

    async def install(self, version: str) -> DownloadReport:
        """Install the given version.

        :return: The report of the assets download, failed assets are not fatal.
        """
        raise NotImplementedError

    async def _fetch_version(self, handle: VersionHandle) -> None:
        """Fetch the descriptor of the given version from the manifest, the raw data is
        written directly to the file.

        :raises VersionNotFoundError: In case of error finding the version.
        """

        version_super_meta = await self.manifest.get_version(self.client, handle.id)
        if version_super_meta is None:
            raise VersionNotFoundError(handle.id)

        url = version_super_meta.get("url")
        if not isinstance(url, str):
            raise ValueError(f"version manifest: /versions/{handle.id}/url must be a string")

        res = await self.context.fetch(self.client, url, accept="application/json")

        expected_sha1 = version_super_meta.get("sha1")
        if isinstance(expected_sha1, str) and hashlib.sha1(res.data).hexdigest() != expected_sha1:
            raise InstallError(ErrorKind.CORRUPTION, f"invalid sha1 for descriptor of {handle.id}")

        # First decode the data and set it to the version meta. Raising if invalid.
        try:
            handle.metadata = res.json()
        except JSONDecodeError as error:
            raise ValueError(f"metadata of {handle.id}: invalid json ({error})")
        if not isinstance(handle.metadata, dict):
            raise ValueError(f"metadata of {handle.id}: / must be an object")

        handle.dir.mkdir(parents=True, exist_ok=True)
        with handle.metadata_file().open("wb") as fp:
            fp.write(res.data)

    async def _load_assets_index(self, assets_index_info: dict, index_version: str) -> dict:
        """Load the assets index from the local indexes directory, or fetch and store it
        if it can't be read.
        """

        assets_index_file = self.context.assets_dir / "indexes" / f"{index_version}.json"

        try:
            with assets_index_file.open("rb") as assets_index_fp:
                assets_index = json.load(assets_index_fp)
            if isinstance(assets_index, dict):
                return assets_index
        except (OSError, JSONDecodeError):
            pass

        # If for some reason we can't read an assets index, try downloading it.
        assets_index_url = assets_index_info.get("url")
        if not isinstance(assets_index_url, str):
            raise ValueError("metadata: /assetIndex/url must be a string")

        res = await self.context.fetch(self.client, assets_index_url, accept="application/json")
        try:
            assets_index = res.json()
        except JSONDecodeError as error:
            raise ValueError(f"assets index: invalid json ({error})")

        # The index is kept byte-identical to the upstream one.
        assets_index_file.parent.mkdir(parents=True, exist_ok=True)
        with assets_index_file.open("wb") as assets_index_fp:
            assets_index_fp.write(res.data)

        return assets_index

    async def _install_assets(self, metadata: dict) -> DownloadReport:
        """Resolve the assets of the given metadata and download missing objects into
        the content addressed object store. Objects already present with their exact
        size are skipped, failed objects are only counted.
        """

        assets_index_info = metadata.get("assetIndex")
        if assets_index_info is None:
            # Some custom versions may want to use their own internal assets.
            return DownloadReport(0, 0, [])

        if not isinstance(assets_index_info, dict):
            raise ValueError("metadata: /assetIndex must be an object")

        index_version = metadata.get("assets", assets_index_info.get("id"))
        if not isinstance(index_version, str):
            raise ValueError("metadata: /assets or /assetIndex/id must be a string")

        self.watcher.handle(AssetsResolveEvent(index_version, None))
        self.watcher.handle(ProgressEvent("assets", index_version, 0, 0))

        assets_index = await self._load_assets_index(assets_index_info, index_version)

        assets_objects = assets_index.get("objects")
        if not isinstance(assets_objects, dict):
            raise ValueError("assets index: /objects must be an object")

        objects_dir = self.context.assets_dir / "objects"
        dl = DownloadList()
        unique_hashes = set()

        for asset_id, asset_obj in assets_objects.items():

            if not isinstance(asset_obj, dict):
                raise ValueError(f"assets index: /objects/{asset_id} must be an object")

            asset_hash = asset_obj.get("hash")
            if not isinstance(asset_hash, str) or len(asset_hash) < 2:
                raise ValueError(f"assets index: /objects/{asset_id}/hash must be a string")

            asset_size = asset_obj.get("size")
            if not isinstance(asset_size, int):
                raise ValueError(f"assets index: /objects/{asset_id}/size must be an integer")

            # Many paths can share the same object.
            if asset_hash in unique_hashes:
                continue
            unique_hashes.add(asset_hash)

            asset_hash_prefix = asset_hash[:2]
            asset_file = objects_dir.joinpath(asset_hash_prefix, asset_hash)
            asset_url = f"{self.installer.resources_url}{asset_hash_prefix}/{asset_hash}"
            dl.add(DownloadEntry(asset_url, asset_file, size=asset_size, sha1=asset_hash, name=asset_id), verify=True)

        self.watcher.handle(AssetsResolveEvent(index_version, len(unique_hashes)))

        report = await download(dl, self.context, self.client, self.watcher, phase="assets", fatal=False)
        if len(report.failed):
            logger.warning("%d asset(s) of index %s failed to download", len(report.failed), index_version)

        self.watcher.handle(ProgressEvent("assets", index_version, report.total, report.total))
        return report


class StandardStrategy(InstallStrategy):
    """Primary strategy, resolving the full standard metadata format.
    """

    name = ContentInstaller.STRATEGY_STANDARD

    def __init__(self, installer: ContentInstaller, client: httpx.AsyncClient, watcher: Watcher) -> None:
        super().__init__(installer, client, watcher)
        self.hierarchy: List[VersionHandle] = []
        self.metadata: dict = {}
        self.dl = DownloadList()

    async def install(self, version: str) -> DownloadReport:

        self.watcher.handle(ProgressEvent("version", version, 1, 0))
        await self._resolve_metadata(version)
        self.watcher.handle(ProgressEvent("version", version, 1, 1))

        self._resolve_jar()
        self._resolve_libraries()
        self._resolve_logger()
        await download(self.dl, self.context, self.client, self.watcher, phase="libraries")

        return await self._install_assets(self.metadata)

    async def _resolve_metadata(self, version: str) -> None:
        """This step resolves metadata of the root version and all of its parents.
        """

        hierarchy = self.hierarchy
        current: Optional[str] = version
        hierarchy.clear()

        while current is not None:

            if len(hierarchy) > 10:
                raise TooMuchParentsError(list(v.id for v in hierarchy))

            self.watcher.handle(VersionLoadingEvent(current))

            # A local descriptor is trusted as is, this keeps reinstall offline.
            handle = self.context.get_version(current)
            fetched = False
            if not handle.read_metadata_file():
                self.watcher.handle(VersionFetchingEvent(current))
                await self._fetch_version(handle)
                fetched = True

            self.watcher.handle(VersionLoadedEvent(current, fetched))

            # Set the parent of the last version to the version being resolved.
            if len(hierarchy):
                hierarchy[-1].parent = handle

            hierarchy.append(handle)
            current = handle.metadata.pop("inheritsFrom", None)

            if current is not None and not isinstance(current, str):
                raise ValueError("metadata: /inheritsFrom must be a string")

        self.metadata = hierarchy[0].merge()

    def _resolve_jar(self) -> None:
        """This step resolves the JAR file of the root version.
        """

        jar_file = self.hierarchy[0].jar_file()

        # First try to find a /downloads/client download entry.
        version_dls = self.metadata.get("downloads")
        if version_dls is not None:

            if not isinstance(version_dls, dict):
                raise ValueError("metadata: /downloads must be an object")

            client_dl = version_dls.get("client")
            if client_dl is not None:
                self.dl.add(parse_download_entry(client_dl, jar_file, "metadata: /downloads/client"), verify=True)
                return

        # If no download entry has been found, but the JAR exists, we use it.
        if jar_file.is_file():
            return

        raise JarNotFoundError(self.hierarchy[0].id)

    def _resolve_libraries(self) -> None:
        """Step resolving libraries from version's metadata, both from an explicit
        artifact, a natives classifier or a maven repository URL.
        """

        libs: Dict[LibrarySpecifier, Optional[DownloadEntry]] = {}
        excluded = 0
        arch_bits = 32 if self.context.arch in ("x86", "arm32") else 64

        # Recursion order is important for libraries resolving, root libraries should
        # be placed first.
        for version in self.hierarchy[0].recurse():

            metadata_libraries = version.metadata.get("libraries")
            if metadata_libraries is None:
                continue

            if not isinstance(metadata_libraries, list):
                raise ValueError("metadata: /libraries must be a list")

            for library_idx, library in enumerate(metadata_libraries):

                path = f"metadata: /libraries/{library_idx}"

                if not isinstance(library, dict):
                    raise ValueError(f"{path} must be an object")

                name = library.get("name")
                if not isinstance(name, str):
                    raise ValueError(f"{path}/name must be a string")

                spec = LibrarySpecifier.from_str(name)

                rules = library.get("rules")
                if rules is not None:
                    if not interpret_rule(rules, {}, f"{path}/rules", os_name=self.context.os_name, arch=self.context.arch):
                        excluded += 1
                        continue

                # Old metadata files provides a 'natives' mapping from OS to the classifier
                # specific for this OS.
                natives = library.get("natives")
                if natives is not None:

                    if not isinstance(natives, dict):
                        raise ValueError(f"{path}/natives must be an object")

                    spec.classifier = natives.get(self.context.os_name)
                    if spec.classifier is None:
                        excluded += 1
                        continue

                    spec.classifier = spec.classifier.replace("${arch}", str(arch_bits))

                lib_entry: Optional[DownloadEntry] = None

                downloads = library.get("downloads")
                if downloads is not None:

                    if not isinstance(downloads, dict):
                        raise ValueError(f"{path}/downloads must be an object")

                    if natives is not None:
                        classifiers = downloads.get("classifiers")
                        dl_meta = None if not isinstance(classifiers, dict) else classifiers.get(spec.classifier)
                    else:
                        dl_meta = downloads.get("artifact")

                    if dl_meta is not None:
                        lib_entry = parse_download_entry(dl_meta, Path(), f"{path}/downloads/artifact")

                # If no download entry can be found, try to find the maven repository url.
                if lib_entry is None:
                    repo_url = library.get("url")
                    if repo_url is not None:

                        if not isinstance(repo_url, str):
                            raise ValueError(f"{path}/url must be a string")

                        if repo_url[-1:] != "/":
                            repo_url += "/"

                        lib_entry = DownloadEntry(f"{repo_url}{spec.file_path()}", Path())

                libs[spec] = lib_entry

        for spec, lib_entry in libs.items():

            lib_path = self.context.libraries_dir / spec.file_path()

            # Without any download method the library must already be installed.
            if lib_entry is None or not len(lib_entry.url):
                if not lib_path.is_file():
                    raise LibraryNotFoundError(spec)
            else:
                lib_entry.dst = lib_path
                lib_entry.name = str(spec)
                self.dl.add(lib_entry, verify=True)

        self.watcher.handle(LibrariesResolvedEvent(len(libs), excluded))

    def _resolve_logger(self) -> None:
        """This step resolve the logger configuration file of the game.
        """

        logging_info = self.metadata.get("logging")
        if logging_info is None:
            return

        if not isinstance(logging_info, dict):
            raise ValueError("metadata: /logging must be an object")

        client_logging = logging_info.get("client")
        if client_logging is None:
            return

        if not isinstance(client_logging, dict):
            raise ValueError("metadata: /logging/client must be an object")

        file_info = client_logging.get("file")
        if not isinstance(file_info, dict):
            raise ValueError("metadata: /logging/client/file must be an object")

        file_id = file_info.get("id")
        if not isinstance(file_id, str):
            raise ValueError("metadata: /logging/client/file/id must be a string")

        logger_path = self.context.assets_dir / "log_configs" / file_id
        self.dl.add(parse_download_entry(file_info, logger_path, "metadata: /logging/client/file"), verify=True)


class ManualStrategy(InstallStrategy):
    """Fallback strategy, walking the version manifest and the descriptor's download
    entries without any hierarchy resolution.
    """

    name = ContentInstaller.STRATEGY_MANUAL

    async def install(self, version: str) -> DownloadReport:

        context = self.context

        for directory in (context.versions_dir, context.libraries_dir, context.assets_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self.watcher.handle(ProgressEvent("version", version, 1, 0))
        self.watcher.handle(VersionFetchingEvent(version))
        handle = context.get_version(version)
        await self._fetch_version(handle)
        metadata = handle.metadata
        self.watcher.handle(VersionLoadedEvent(version, True))
        self.watcher.handle(ProgressEvent("version", version, 1, 1))

        downloads = metadata.get("downloads")
        client_dl = downloads.get("client") if isinstance(downloads, dict) else None
        if not isinstance(client_dl, dict):
            raise JarNotFoundError(version)

        client_entry = parse_download_entry(client_dl, handle.jar_file(), "metadata: /downloads/client")
        if client_entry.size is None:
            raise ValueError("metadata: /downloads/client/size must be an integer")

        dl = DownloadList()
        dl.add(client_entry, verify=True)

        libraries, excluded = manual_filter_libraries(metadata, context.os_name)
        for spec, artifact, path in libraries:
            dl.add(parse_download_entry(artifact, context.libraries_dir / spec.file_path(), path), verify=True)

        self.watcher.handle(LibrariesResolvedEvent(len(libraries), excluded))
        await download(dl, context, self.client, self.watcher, phase="libraries")

        return await self._install_assets(metadata)


def manual_filter_libraries(metadata: dict, os_name: Optional[str]) -> Tuple[List[Tuple[LibrarySpecifier, dict, str]], int]:
    """Filter the declared libraries of a descriptor for the manual pipeline. A library
    is skipped if one of its rules explicitly disallows the given OS, or if it has no
    download artifact.

    :return: The kept libraries as tuples of specifier, artifact and metadata path,
    and the number of skipped libraries.
    """

    libraries = metadata.get("libraries", [])
    if not isinstance(libraries, list):
        raise ValueError("metadata: /libraries must be a list")

    kept = []
    excluded = 0

    for library_idx, library in enumerate(libraries):

        path = f"metadata: /libraries/{library_idx}"
        if not isinstance(library, dict) or not isinstance(library.get("name"), str):
            raise ValueError(f"{path}/name must be a string")

        disallowed = False
        for rule in library.get("rules") or []:
            if isinstance(rule, dict) and rule.get("action") == "disallow":
                rule_os = rule.get("os")
                if isinstance(rule_os, dict) and rule_os.get("name") == os_name:
                    disallowed = True
                    break

        downloads = library.get("downloads")
        artifact = downloads.get("artifact") if isinstance(downloads, dict) else None
        if disallowed or not isinstance(artifact, dict):
            excluded += 1
            continue

        kept.append((LibrarySpecifier.from_str(library["name"]), artifact, f"{path}/downloads/artifact"))

    return kept, excluded


class LibraryNotFoundError(InstallError):
    """Critical error raised when a library has no download indication and is not
    currently installed in game's libraries.
    """
    def __init__(self, lib: LibrarySpecifier) -> None:
        super().__init__(ErrorKind.NOT_FOUND, f"library not found: {lib}")
        self.lib = lib


class StrategyFallbackEvent:
    """Event triggered when the standard strategy failed and the manual pipeline is
    going to be used.
    """
    __slots__ = "version", "error"
    def __init__(self, version: str, error: Exception) -> None:
        self.version = version
        self.error = error
