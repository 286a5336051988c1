"""Definition of the runtime provisioner, ensuring that a managed Java runtime of a
required major version is installed in the context's JVM directory.

Runtimes are installed under `<jvm_dir>/java-<major>` from the Adoptium feed, a newer
installed runtime is accepted for an older requirement.
"""

from pathlib import Path
import tarfile
import zipfile
import logging
import asyncio
import shutil
import errno
import time
import re
import os

import httpx

from .standard import Context, Watcher, ProgressEvent, download
from .download import DownloadList, DownloadEntry
from .result import ErrorKind, InstallError, Ok, Err, Result
from .util import get_jvm_bin_filenames, iter_dirs

from typing import Optional, List, Tuple


logger = logging.getLogger(__name__)

ADOPTIUM_API_URL = "https://api.adoptium.net/v3/"

# Name of the OS and architecture as used by the Adoptium API.
adoptium_os = {
    "linux": "linux",
    "windows": "windows",
    "osx": "mac",
}
adoptium_arch = {
    "x86_64": "x64",
    "arm64": "aarch64",
    "x86": "x32",
    "arm32": "arm",
}


class JvmInstallation:
    """A managed runtime installation, immutable once verified.
    """

    __slots__ = "major_version", "platform", "arch", "root_path", "executable_path"

    def __init__(self, major_version: int, platform: str, arch: str, root_path: Path, executable_path: Path) -> None:
        self.major_version = major_version
        self.platform = platform
        self.arch = arch
        self.root_path = root_path
        self.executable_path = executable_path

    def __repr__(self) -> str:
        return f"<JvmInstallation {self.major_version} {self.executable_path}>"


class RuntimeProvisioner:
    """Provision managed Java runtimes for a context.
    """

    def __init__(self, context: Context, *,
        api_url: str = ADOPTIUM_API_URL,
        search_depth: int = 5,
        smoke_test_timeout: float = 5.0
    ) -> None:
        self.context = context
        self.api_url = api_url
        self.search_depth = search_depth
        self.smoke_test_timeout = smoke_test_timeout

    def runtime_dir(self, major_version: int) -> Path:
        return self.context.jvm_dir / f"java-{major_version}"

    def installed_versions(self) -> List[int]:
        """Return the major versions having an installation directory, highest first.
        """
        versions = []
        try:
            for child in self.context.jvm_dir.iterdir():
                match = re.fullmatch(r"java-(\d+)", child.name)
                if match is not None and child.is_dir():
                    versions.append(int(match[1]))
        except OSError:
            return []
        return sorted(versions, reverse=True)

    def find_executable(self, root: Path) -> Optional[Path]:
        """Search the runtime executable under the given root, down to the configured
        depth, because vendors don't agree on the nesting of their archives.
        """
        names = get_jvm_bin_filenames(self.context.os_name)
        for directory in iter_dirs(root, self.search_depth):
            bin_dir = directory / "bin"
            for name in names:
                exe = bin_dir / name
                if exe.is_file():
                    return exe
        return None

    def find_installed(self, required: int) -> Optional[JvmInstallation]:
        """Find an installed runtime satisfying the given major version, the exact
        version is preferred, otherwise the highest newer version is returned.
        """

        candidates = [required] + [v for v in self.installed_versions() if v > required]
        for major_version in candidates:
            root = self.runtime_dir(major_version)
            if not root.is_dir():
                continue
            exe = self.find_executable(root)
            if exe is not None:
                return self._installation(major_version, root, exe)

        return None

    def _installation(self, major_version: int, root: Path, exe: Path) -> JvmInstallation:
        return JvmInstallation(major_version, self.context.os_name or "", self.context.arch or "", root, exe)

    async def ensure(self, required: int, *, watcher: Optional[Watcher] = None) -> Result:
        """Ensure that a runtime of at least the given major version is installed.

        :return: `Ok` with the `JvmInstallation` or `Err` if it can't be installed.
        """

        watcher = watcher or Watcher()
        watcher.handle(ProgressEvent("jvm", f"java {required}", 1, 0))

        installation = self.find_installed(required)
        if installation is not None:
            kind = JvmLoadedEvent.INSTALLED if installation.major_version == required else JvmLoadedEvent.COMPATIBLE
            watcher.handle(JvmLoadedEvent(installation, kind))
            watcher.handle(ProgressEvent("jvm", f"java {installation.major_version}", 1, 1))
            return Ok(installation)

        try:
            async with self.context.open_client() as client:
                installation = await self._install(required, client, watcher)
        except InstallError as error:
            return Err.from_error(error)
        except (tarfile.TarError, zipfile.BadZipFile) as error:
            return Err(ErrorKind.CORRUPTION, f"invalid runtime archive: {error}", error)
        except ValueError as error:
            return Err(ErrorKind.INVALID_METADATA, str(error), error)
        except OSError as error:
            if error.errno in (errno.EMFILE, errno.ENFILE):
                raise
            return Err(ErrorKind.FATAL_STRUCTURAL, str(error), error)

        watcher.handle(JvmLoadedEvent(installation, JvmLoadedEvent.DOWNLOADED))
        await self.smoke_test(installation, watcher)
        watcher.handle(ProgressEvent("jvm", f"java {installation.major_version}", 1, 1))
        return Ok(installation)

    async def _request_package(self, client: httpx.AsyncClient, major_version: int) -> Tuple[str, str, Optional[int]]:
        """Request the archive package of the latest release for the major version.

        :return: A tuple with the link, the file name and the size of the archive.
        """

        os_name = adoptium_os.get(self.context.os_name or "")
        if os_name is None:
            raise JvmNotFoundError(JvmNotFoundError.UNSUPPORTED_OS, major_version)

        arch = adoptium_arch.get(self.context.arch or "")
        if arch is None:
            raise JvmNotFoundError(JvmNotFoundError.UNSUPPORTED_ARCH, major_version)

        url = f"{self.api_url}assets/latest/{major_version}/hotspot?architecture={arch}&image_type=jre&os={os_name}&vendor=eclipse"
        releases = await self.context.fetch_json(client, url)

        if not isinstance(releases, list):
            raise ValueError("adoptium assets: / must be a list")
        if not len(releases):
            raise JvmNotFoundError(JvmNotFoundError.UNSUPPORTED_VERSION, major_version)

        package = releases[0].get("binary", {}).get("package") if isinstance(releases[0], dict) else None
        if not isinstance(package, dict):
            raise ValueError("adoptium assets: /0/binary/package must be an object")

        link = package.get("link")
        if not isinstance(link, str):
            raise ValueError("adoptium assets: /0/binary/package/link must be a string")

        name = package.get("name")
        if not isinstance(name, str):
            name = link.rsplit("/", 1)[-1]

        size = package.get("size")
        return link, name, size if isinstance(size, int) else None

    async def _install(self, major_version: int, client: httpx.AsyncClient, watcher: Watcher) -> JvmInstallation:

        link, name, size = await self._request_package(client, major_version)
        archive_format = get_archive_format(name)
        if archive_format is None:
            raise JvmNotFoundError(JvmNotFoundError.UNSUPPORTED_ARCHIVE, major_version)

        archive_file = self.context.jvm_dir / "temp" / name
        dl = DownloadList()
        dl.add(DownloadEntry(link, archive_file, size=size, name=name))

        try:
            await download(dl, self.context, client, watcher, phase="jvm")
            root = self.runtime_dir(major_version)
            watcher.handle(ProgressEvent("jvm", "extract", 1, 0))
            await asyncio.get_running_loop().run_in_executor(None, extract_runtime_archive, archive_file, archive_format, root)
        finally:
            try:
                archive_file.unlink()
            except FileNotFoundError:
                pass

        exe = self.find_executable(root)
        if exe is None:
            # Downloading again would produce the same layout.
            raise JvmNotFoundError(JvmNotFoundError.EXECUTABLE_NOT_FOUND, major_version)

        if not os.access(exe, os.X_OK):
            exe.chmod(exe.stat().st_mode | 0o111)

        return self._installation(major_version, root, exe)

    async def smoke_test(self, installation: JvmInstallation, watcher: Optional[Watcher] = None) -> bool:
        """Run the runtime with its version flag. A failure is logged and reported but
        the runtime is kept, it may still be usable.
        """

        watcher = watcher or Watcher()
        output = ""
        ok = False

        try:
            process = await asyncio.create_subprocess_exec(
                str(installation.executable_path), "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT)
            try:
                stdout, _stderr = await asyncio.wait_for(process.communicate(), self.smoke_test_timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                output = "timed out"
            else:
                output = stdout.decode(errors="replace").strip()
                ok = process.returncode == 0
        except OSError as error:
            output = str(error)

        if not ok:
            logger.warning("Runtime smoke test failed for %s: %s", installation.executable_path, output)

        watcher.handle(JvmSmokeTestEvent(installation, ok, output))
        return ok


def get_archive_format(name: str) -> Optional[str]:
    """Return the archive format from the file name, 'tar' or 'zip'.
    """
    if name.endswith((".tar.gz", ".tgz")):
        return "tar"
    elif name.endswith(".zip"):
        return "zip"
    return None


def extract_runtime_archive(archive_file: Path, archive_format: str, dst: Path) -> None:
    """Extract a runtime archive to the destination directory, any previous partial
    installation there is removed first, and the layout is then normalized.
    """

    if dst.exists():
        shutil.rmtree(dst)
    dst.mkdir(parents=True)

    if archive_format == "tar":
        with tarfile.open(archive_file, "r:gz") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dst, filter="data")
            else:
                tar.extractall(dst)
    elif archive_format == "zip":
        with zipfile.ZipFile(archive_file) as zf:
            zf.extractall(dst)
    else:
        raise ValueError(f"unsupported archive format: {archive_format}")

    flatten_runtime_dir(dst)


def flatten_runtime_dir(root: Path) -> bool:
    """If the directory contains exactly one subdirectory holding a `bin` directory,
    that subdirectory replaces the root. This handles archives nesting a vendor named
    root directory.

    :return: True if the directory has been flattened.
    """

    nested_roots = [child for child in root.iterdir() if child.is_dir() and (child / "bin").is_dir()]
    if len(nested_roots) != 1:
        return False

    tmp = root.with_name(f"{root.name}_tmp_{int(time.time() * 1000)}")
    nested_roots[0].rename(tmp)
    shutil.rmtree(root)
    tmp.rename(root)
    return True


def required_java_version(version_id: str, metadata: Optional[dict] = None) -> int:
    """Return the major Java version required by a game version. The descriptor's
    `javaVersion.majorVersion` is authoritative when present, otherwise the version
    is guessed from the version id.
    """

    if metadata is not None:
        java_version = metadata.get("javaVersion")
        if isinstance(java_version, dict):
            major_version = java_version.get("majorVersion")
            if isinstance(major_version, int):
                return major_version

    match = re.match(r"1\.(\d+)(?:\.(\d+))?", version_id)
    if match is None:
        return 21

    minor = int(match[1])
    patch = int(match[2] or 0)
    if minor <= 16:
        return 8
    elif minor < 20 or (minor == 20 and patch < 5):
        return 17
    return 21


class JvmNotFoundError(InstallError):
    """Raised if no runtime can be provisioned, the particular reason is given as code.
    """

    UNSUPPORTED_OS = "unsupported_os"
    UNSUPPORTED_ARCH = "unsupported_arch"
    UNSUPPORTED_VERSION = "unsupported_version"
    UNSUPPORTED_ARCHIVE = "unsupported_archive"
    EXECUTABLE_NOT_FOUND = "executable_not_found"

    def __init__(self, code: str, major_version: int) -> None:
        kind = ErrorKind.NOT_FOUND
        if code in (self.EXECUTABLE_NOT_FOUND, self.UNSUPPORTED_ARCHIVE):
            kind = ErrorKind.FATAL_STRUCTURAL
        super().__init__(kind, f"java {major_version}: {code}")
        self.code = code
        self.major_version = major_version


class JvmLoadedEvent:
    """Event triggered when a runtime has been resolved.
    """

    INSTALLED = "installed"    # Exact version already installed
    COMPATIBLE = "compatible"  # Newer version already installed
    DOWNLOADED = "downloaded"  # Freshly downloaded and extracted

    __slots__ = "installation", "kind"
    def __init__(self, installation: JvmInstallation, kind: str) -> None:
        self.installation = installation
        self.kind = kind

class JvmSmokeTestEvent:
    __slots__ = "installation", "ok", "output"
    def __init__(self, installation: JvmInstallation, ok: bool, output: str) -> None:
        self.installation = installation
        self.ok = ok
        self.output = output
