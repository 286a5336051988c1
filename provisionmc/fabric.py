"""Definition of the loader profile composer, installing Fabric/Quilt mod loaders on top
of an installed base version.

The game runtime has no real notion of a version inheriting from another one, so the
composed profile is eagerly merged with its base version: client download, asset
index, libraries and launch arguments are all copied into the loader descriptor once,
at install time.
"""

from pathlib import Path
import tempfile
import zipfile
import logging
import asyncio
import shutil
import errno
import json
import re

import httpx

from .standard import Context, VersionHandle, Watcher, ProgressEvent, VersionNotFoundError, download
from .download import DownloadList, DownloadEntry
from .result import ErrorKind, InstallError, FetchError, Ok, Err, Result
from .util import LibrarySpecifier, file_size_or_zero

from typing import Optional, Any, List, Tuple


logger = logging.getLogger(__name__)

FABRIC_MAVEN_URL = "https://maven.fabricmc.net/"
QUILT_MAVEN_URL = "https://maven.quiltmc.org/repository/release/"

# Installer used when the meta feed doesn't list any stable installer.
DEFAULT_FABRIC_INSTALLER_URL = f"{FABRIC_MAVEN_URL}net/fabricmc/fabric-installer/0.11.2/fabric-installer-0.11.2.jar"

# Base libraries never merged into a composed profile, the loader bundles its own.
EXCLUDED_BASE_LIBRARIES = (
    re.compile(r"^org\.ow2\.asm:asm(?:-.+)?$"),
)

# Asset index ids written by third-party installers in place of the real one.
PLACEHOLDER_ASSET_INDEXES = ("24",)

# Launch placeholders rewritten to the canonical snake case naming. Snake case is kept
# on purpose over the camel case spelling some installers emit, so composed profiles
# only ever carry the names the vanilla descriptors use.
CANONICAL_PLACEHOLDERS = {
    "${auth_playerName}": "${auth_player_name}",
    "${auth_accessToken}": "${auth_access_token}",
    "${auth_userType}": "${auth_user_type}",
    "${auth_sessionId}": "${auth_session}",
}


class _FabricApiLoader:
    """This class describes a loader returned from the fabric API.
    """
    __slots__ = "version", "stable"
    def __init__(self, version: str, stable: bool) -> None:
        self.version = version
        self.stable = stable


class FabricApi:
    """This class is internally used to defined two constant for both official Fabric
    backend API and Quilt API which have the same endpoints. So we use the same logic
    for both mod loaders.
    """

    def __init__(self, name: str, api_url: str, *,
        prefix: str,
        maven_url: str,
        main_class: str,
        installer_url: Optional[str] = None
    ) -> None:
        self.name = name
        self.api_url = api_url
        self.prefix = prefix
        self.maven_url = maven_url
        self.main_class = main_class
        self.installer_url = installer_url

    async def request_fabric_meta(self, context: Context, client: httpx.AsyncClient, method: str) -> Any:
        """Generic HTTP request to the fabric's REST API.
        """
        return await context.fetch_json(client, f"{self.api_url}{method}")

    async def request_version_loader_profile(self, context: Context, client: httpx.AsyncClient,
        vanilla_version: str,
        loader_version: str
    ) -> dict:
        """Return the version profile for the given vanilla version and loader.
        """
        profile = await self.request_fabric_meta(context, client, f"versions/loader/{vanilla_version}/{loader_version}/profile/json")
        if not isinstance(profile, dict):
            raise ValueError(f"{self.name} profile: / must be an object")
        return profile

    async def _request_loaders(self, context: Context, client: httpx.AsyncClient,
        vanilla_version: Optional[str] = None
    ) -> List[_FabricApiLoader]:
        """Return the loaders available for the given vanilla version, if no vanilla
        version is specified, this returns all loaders.
        """

        def map_loader(obj) -> _FabricApiLoader:
            return _FabricApiLoader(str(obj.get("version", "")), bool(obj.get("stable", False)))

        if vanilla_version is not None:
            loaders = await self.request_fabric_meta(context, client, f"versions/loader/{vanilla_version}")
            if not isinstance(loaders, list):
                raise ValueError(f"{self.name} loaders: / must be a list")
            return [map_loader(obj["loader"]) for obj in loaders if isinstance(obj, dict) and isinstance(obj.get("loader"), dict)]
        else:
            loaders = await self.request_fabric_meta(context, client, "versions/loader")
            if not isinstance(loaders, list):
                raise ValueError(f"{self.name} loaders: / must be a list")
            return [map_loader(obj) for obj in loaders if isinstance(obj, dict)]

    async def _request_latest_loader(self, context: Context, client: httpx.AsyncClient,
        vanilla_version: Optional[str] = None
    ) -> Optional[_FabricApiLoader]:
        """Return the latest loader version for the given vanilla version, stable loaders
        are preferred. If no vanilla version is specified, this return the latest loader.
        """
        loaders = await self._request_loaders(context, client, vanilla_version)
        for loader in loaders:
            if loader.stable:
                return loader
        return loaders[0] if len(loaders) else None

    async def request_installer_url(self, context: Context, client: httpx.AsyncClient) -> str:
        """Return the URL of the latest stable installer jar.
        """

        try:
            installers = await self.request_fabric_meta(context, client, "versions/installer")
        except FetchError as error:
            if self.installer_url is None or error.kind not in (ErrorKind.NOT_FOUND, ErrorKind.HTTP_STATUS):
                raise
            installers = []

        if isinstance(installers, list):
            for installer in installers:
                if isinstance(installer, dict) and installer.get("stable", True) and isinstance(installer.get("url"), str):
                    return installer["url"]

        if self.installer_url is None:
            raise InstallError(ErrorKind.NOT_FOUND, f"no {self.name} installer available")
        return self.installer_url

    def installer_args(self, installer_file: Path, vanilla_version: str, loader_version: str, main_dir: Path) -> List[str]:
        """Return the installer arguments, after the java executable, installing the
        client profile into the given directory without touching launcher profiles.
        """
        return [
            "-jar", str(installer_file),
            "client",
            "-mcversion", vanilla_version,
            "-loader", loader_version,
            "-dir", str(main_dir),
            "-noprofile",
        ]


class QuiltApi(FabricApi):
    """Quilt shares Fabric's meta endpoints but its installer has its own command line.
    """

    def installer_args(self, installer_file: Path, vanilla_version: str, loader_version: str, main_dir: Path) -> List[str]:
        return [
            "-jar", str(installer_file),
            "install", "client", vanilla_version, loader_version,
            f"--install-dir={main_dir}",
            "--no-profile",
        ]


FABRIC_API = FabricApi("fabric", "https://meta.fabricmc.net/v2/",
    prefix="fabric-loader",
    maven_url=FABRIC_MAVEN_URL,
    main_class="net.fabricmc.loader.impl.launch.knot.KnotClient",
    installer_url=DEFAULT_FABRIC_INSTALLER_URL)

QUILT_API = QuiltApi("quilt", "https://meta.quiltmc.org/v3/",
    prefix="quilt-loader",
    maven_url=QUILT_MAVEN_URL,
    main_class="org.quiltmc.loader.impl.launch.knot.KnotClient")

LOADER_APIS = {
    "fabric": FABRIC_API,
    "quilt": QUILT_API,
}


def parse_loader_version(value: str, prefix: str = "fabric-loader", base: Optional[str] = None) -> str:
    """Return the bare loader version from either a bare version (`0.15.9`) or a
    composed profile id (`fabric-loader-0.15.9-1.21.1`).
    """

    value = value.strip()
    if not value.startswith(f"{prefix}-"):
        return value

    rest = value[len(prefix) + 1:]
    if base is not None and rest.endswith(f"-{base}"):
        return rest[:-len(base) - 1]

    # Loader versions never contain a dash, base versions may.
    return rest.partition("-")[0]


def loader_profile_id(loader: str, base: str, prefix: str = "fabric-loader") -> str:
    """Return the canonical composed profile id of a loader on a base version, the
    loader may already be a composed profile id.
    """
    return f"{prefix}-{parse_loader_version(loader, prefix, base)}-{base}"


class LoaderProfileComposer:
    """Install a loader profile on top of an installed base version and merge the base
    metadata into it.
    """

    def __init__(self, context: Context, api: FabricApi = FABRIC_API) -> None:
        self.context = context
        self.api = api

    def profile_id(self, base: str, loader: str) -> str:
        return loader_profile_id(loader, base, self.api.prefix)

    def is_installed(self, handle: VersionHandle) -> bool:
        """Return true if the composed profile has a non-empty descriptor and JAR.
        """
        return file_size_or_zero(handle.metadata_file()) > 0 and file_size_or_zero(handle.jar_file()) > 0

    async def install(self, base: str, loader: str = "latest", *,
        java_executable: Optional[Path] = None,
        watcher: Optional[Watcher] = None
    ) -> Result:
        """Ensure that the loader profile is installed and composed with its base.

        :param base: The base version id, it must already be installed.
        :param loader: The loader version, bare or as a composed profile id, or
        'latest' to use the latest stable loader for the base version.
        :param java_executable: The runtime used to run the loader installer, if not
        given the profile is directly fetched from the loader meta feed.
        :return: `Ok` with the composed profile id, or `Err`.
        """

        watcher = watcher or Watcher()

        try:
            async with self.context.open_client() as client:
                profile_id = await self._install(client, base, loader, java_executable, watcher)
        except InstallError as error:
            return Err.from_error(error)
        except ValueError as error:
            return Err(ErrorKind.INVALID_METADATA, str(error), error)
        except OSError as error:
            if error.errno in (errno.EMFILE, errno.ENFILE):
                raise
            return Err(ErrorKind.FATAL_STRUCTURAL, str(error), error)

        return Ok(profile_id)

    async def _install(self, client: httpx.AsyncClient,
        base: str,
        loader: str,
        java_executable: Optional[Path],
        watcher: Watcher
    ) -> str:

        loader_version = parse_loader_version(loader, self.api.prefix, base)

        # Only a concrete version can be checked before asking the meta feed.
        if loader_version != "latest":
            handle = self.context.get_version(self.profile_id(base, loader_version))
            if self.is_installed(handle):
                watcher.handle(LoaderResolveEvent(self.api, base, loader_version))
                return handle.id

        watcher.handle(ProgressEvent("loader", f"{self.api.name} {loader_version}", 1, 0))

        if loader_version == "latest":
            watcher.handle(LoaderResolveEvent(self.api, base, None))
            loader_version = await self._resolve_latest(client, base)
            handle = self.context.get_version(self.profile_id(base, loader_version))
            if self.is_installed(handle):
                watcher.handle(LoaderResolveEvent(self.api, base, loader_version))
                watcher.handle(ProgressEvent("loader", f"{self.api.name} {loader_version}", 1, 1))
                return handle.id

        watcher.handle(LoaderResolveEvent(self.api, base, loader_version))

        # An empty JAR is what a broken install leaves, start again from scratch.
        if handle.dir.is_dir() and handle.jar_file().is_file() and file_size_or_zero(handle.jar_file()) == 0:
            logger.info("Removing incomplete loader profile %s", handle.id)
            shutil.rmtree(handle.dir)

        base_handle = self.context.get_version(base)
        if not base_handle.read_metadata_file():
            raise VersionNotFoundError(base)

        if java_executable is not None:
            await self._run_installer(client, base, loader_version, java_executable, watcher)

        modified = False
        if not handle.read_metadata_file():
            try:
                handle.metadata = await self.api.request_version_loader_profile(self.context, client, base, loader_version)
            except FetchError as error:
                if error.status not in (404, 400):
                    raise
                raise VersionNotFoundError(handle.id)
            handle.metadata["id"] = handle.id
            modified = True

        if file_size_or_zero(handle.jar_file()) == 0:
            synthesize_loader_jar(handle.jar_file(), loader_version, base, self.api)
            logger.warning("Loader installer produced no JAR for %s, a minimal one was synthesized", handle.id)
            watcher.handle(LoaderJarSynthesizedEvent(handle.id, handle.jar_file()))

        if fill_library_artifacts(handle.metadata, self.api.maven_url):
            modified = True

        if compose_profile(handle.metadata, base_handle.metadata, base, main_class=self.api.main_class):
            modified = True

        if modified:
            handle.write_metadata_file()

        watcher.handle(ProgressEvent("loader", f"{self.api.name} {loader_version}", 1, 1))
        return handle.id

    async def _resolve_latest(self, client: httpx.AsyncClient, base: str) -> str:

        try:
            latest = await self.api._request_latest_loader(self.context, client, base)
        except FetchError as error:
            if error.status not in (404, 400):
                raise
            latest = None

        if latest is None or not len(latest.version):
            # Correct error if the error is just a not found.
            raise VersionNotFoundError(f"{self.api.prefix}-???-{base}")

        return latest.version

    async def _run_installer(self, client: httpx.AsyncClient,
        base: str,
        loader_version: str,
        java_executable: Path,
        watcher: Watcher
    ) -> None:
        """Download the loader installer into a temporary directory and run it against
        the content directory, the installer is removed afterward.
        """

        installer_url = await self.api.request_installer_url(self.context, client)

        with tempfile.TemporaryDirectory(prefix=f"{self.api.name}-installer-") as tmp_dir:

            installer_file = Path(tmp_dir) / "installer.jar"
            dl = DownloadList()
            dl.add(DownloadEntry(installer_url, installer_file, name=f"{self.api.name}-installer.jar"))
            await download(dl, self.context, client, watcher, phase="loader")

            args = self.api.installer_args(installer_file, base, loader_version, self.context.main_dir.absolute())
            self.context.main_dir.mkdir(parents=True, exist_ok=True)

            process = await asyncio.create_subprocess_exec(
                str(java_executable), *args,
                cwd=str(self.context.main_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT)

            stdout, _stderr = await process.communicate()
            output = stdout.decode(errors="replace").strip()

            if process.returncode != 0:
                raise LoaderInstallError(self.api.name, loader_version, process.returncode, output)

            logger.debug("Loader installer output: %s", output)


def synthesize_loader_jar(jar_file: Path, loader_version: str, base: str, api: FabricApi = FABRIC_API) -> None:
    """Write a minimal loader JAR, only made of a manifest declaring the loader entry
    point and of a loader descriptor.
    """

    manifest = "\r\n".join([
        "Manifest-Version: 1.0",
        f"Main-Class: {api.main_class}",
        "Implementation-Title: Fabric Loader",
        f"Implementation-Version: {loader_version}",
        "Implementation-Vendor: FabricMC",
        "Specification-Title: Fabric Loader",
        f"Specification-Version: {loader_version}",
        "Specification-Vendor: FabricMC",
        "", "",
    ])

    mod_descriptor = {
        "schemaVersion": 1,
        "id": f"{api.prefix}-{loader_version}-{base}",
        "version": loader_version,
        "name": "Fabric Loader Profile",
        "environment": "*",
        "entrypoints": {},
        "depends": {
            "fabricloader": f">={loader_version}",
            "minecraft": base,
        },
    }

    jar_file.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(jar_file, "w", compression=zipfile.ZIP_DEFLATED) as jar_fp:
        jar_fp.writestr("META-INF/MANIFEST.MF", manifest)
        jar_fp.writestr("fabric.mod.json", json.dumps(mod_descriptor, indent=2))


def fill_library_artifacts(metadata: dict, maven_url: str = FABRIC_MAVEN_URL) -> bool:
    """Add a `downloads.artifact` entry to every library that has none, derived from
    its maven coordinate and its repository URL, or the given default one.

    :return: True if any library has been modified.
    """

    libraries = metadata.get("libraries")
    if libraries is None:
        return False
    if not isinstance(libraries, list):
        raise ValueError("metadata: /libraries must be a list")

    modified = False
    for library_idx, library in enumerate(libraries):

        if not isinstance(library, dict) or not isinstance(library.get("name"), str):
            raise ValueError(f"metadata: /libraries/{library_idx}/name must be a string")

        downloads = library.setdefault("downloads", {})
        if not isinstance(downloads, dict):
            raise ValueError(f"metadata: /libraries/{library_idx}/downloads must be an object")
        if downloads.get("artifact") is not None:
            continue

        spec = LibrarySpecifier.from_str(library["name"])
        repo_url = library.get("url")
        if not isinstance(repo_url, str) or not len(repo_url):
            repo_url = maven_url
        if repo_url[-1:] != "/":
            repo_url += "/"

        file_path = spec.file_path()
        downloads["artifact"] = {"path": file_path, "url": f"{repo_url}{file_path}"}
        modified = True

    return modified


def _library_coordinate(library: Any) -> Optional[Tuple]:
    if not isinstance(library, dict) or not isinstance(library.get("name"), str):
        return None
    try:
        return LibrarySpecifier.from_str(library["name"]).coordinate()
    except ValueError:
        return None


def is_excluded_base_library(name: str) -> bool:
    """Return true if the base library with this name conflicts with a library
    bundled by the loader.
    """
    try:
        spec = LibrarySpecifier.from_str(name)
    except ValueError:
        return False
    return any(pattern.match(f"{spec.group}:{spec.artifact}") for pattern in EXCLUDED_BASE_LIBRARIES)


def merge_libraries(composed: List[Any], base: List[Any]) -> Tuple[List[Any], int]:
    """Merge base libraries into the composed ones. Base libraries come first, but a
    coordinate present in the composed list wins and excluded coordinates are dropped.
    Base libraries are only checked against the composed ones, never between them.

    :return: The merged list and the number of base libraries added.
    """

    present = set(_library_coordinate(library) for library in composed)
    present.discard(None)

    added = []
    for library in base:
        coordinate = _library_coordinate(library)
        if coordinate is None or coordinate in present:
            continue
        if is_excluded_base_library(library["name"]):
            continue
        # Base entries sharing a coordinate are kept, they differ by their rules.
        added.append(library)

    return added + composed, len(added)


def normalize_arguments(args: List[Any]) -> List[Any]:
    """Rewrite launch placeholders to their canonical name and remove any repeated
    placeholder argument, along with the flag introducing it, the first occurrence
    is kept in place.
    """

    result: List[Any] = []
    seen = set()

    for arg in args:

        if not isinstance(arg, str):
            result.append(arg)
            continue

        for alias, canonical in CANONICAL_PLACEHOLDERS.items():
            arg = arg.replace(alias, canonical)

        if "${" in arg:
            if arg in seen:
                if len(result) and isinstance(result[-1], str) and result[-1].startswith("-") and "${" not in result[-1]:
                    result.pop()
                continue
            seen.add(arg)

        result.append(arg)

    return result


def compose_profile(composed: dict, base: dict, base_id: str, *,
    main_class: str = FABRIC_API.main_class
) -> bool:
    """Eagerly merge the base version metadata into the composed loader profile, the
    composed profile is modified in place.

    :param composed: Metadata of the loader profile.
    :param base: Metadata of the base version.
    :param base_id: Id of the base version, set as the inheritance pointer.
    :return: True if any field of the composed profile changed.
    """

    modified = False

    base_downloads = base.get("downloads")
    base_client = base_downloads.get("client") if isinstance(base_downloads, dict) else None
    if isinstance(base_client, dict):
        downloads = composed.get("downloads")
        if not isinstance(downloads, dict):
            downloads = composed["downloads"] = {}
        if downloads.get("client") is None:
            downloads["client"] = base_client
            modified = True

    if composed.get("inheritsFrom") != base_id:
        composed["inheritsFrom"] = base_id
        modified = True

    asset_index = composed.get("assetIndex")
    base_asset_index = base.get("assetIndex")
    if isinstance(base_asset_index, dict):
        if not isinstance(asset_index, dict) or asset_index.get("id") in PLACEHOLDER_ASSET_INDEXES:
            composed["assetIndex"] = base_asset_index
            if isinstance(base.get("assets"), str):
                composed["assets"] = base["assets"]
            modified = True

    if not composed.get("mainClass"):
        composed["mainClass"] = main_class
        modified = True

    for key in ("type", "time", "releaseTime"):
        if not composed.get(key) and base.get(key):
            composed[key] = base[key]
            modified = True

    base_libraries = base.get("libraries")
    if isinstance(base_libraries, list):
        composed_libraries = composed.get("libraries")
        if not isinstance(composed_libraries, list):
            composed_libraries = []
        merged, added = merge_libraries(composed_libraries, base_libraries)
        if added or "libraries" not in composed:
            composed["libraries"] = merged
            modified = True

    arguments = composed.get("arguments")
    if isinstance(arguments, dict):
        for kind in ("game", "jvm"):
            kind_args = arguments.get(kind)
            if isinstance(kind_args, list):
                normalized = normalize_arguments(kind_args)
                if normalized != kind_args:
                    arguments[kind] = normalized
                    modified = True

    legacy_args = composed.get("minecraftArguments")
    if isinstance(legacy_args, str):
        normalized_legacy = " ".join(normalize_arguments(legacy_args.split()))
        if normalized_legacy != legacy_args:
            composed["minecraftArguments"] = normalized_legacy
            modified = True

    return modified


class LoaderInstallError(InstallError):
    """Raised when the external loader installer exited with an error, its combined
    output is kept.
    """
    def __init__(self, api_name: str, loader_version: str, returncode: Optional[int], output: str) -> None:
        tail = output[-2000:]
        super().__init__(ErrorKind.INSTALLER_FAILED, f"{api_name} installer {loader_version} exited with {returncode}: {tail}")
        self.loader_version = loader_version
        self.returncode = returncode
        self.output = output


class LoaderResolveEvent:
    """Event triggered when the loader version is being resolved, the loader version
    is none while the latest one is requested.
    """
    __slots__ = "api", "vanilla_version", "loader_version"
    def __init__(self, api: FabricApi, vanilla_version: str, loader_version: Optional[str]) -> None:
        self.api = api
        self.vanilla_version = vanilla_version
        self.loader_version = loader_version


class LoaderJarSynthesizedEvent:
    """Event triggered when the installer produced no JAR and a minimal one has been
    written in place.
    """
    __slots__ = "version", "jar_file"
    def __init__(self, version: str, jar_file: Path) -> None:
        self.version = version
        self.jar_file = jar_file
