"""Definition of the version lifecycle, verifying that installed versions are complete
and removing versions that are no longer pinned by the current configuration.
"""

from datetime import datetime, timezone
from json import JSONDecodeError
from pathlib import Path
import logging
import shutil
import json

from .standard import Context, Watcher, ProgressEvent
from .result import ErrorKind, Ok, Err, Result
from .fabric import loader_profile_id
from .util import file_size_or_zero, dir_has_entries

from typing import Optional, List


logger = logging.getLogger(__name__)

CLIENT_CONFIG_FILE = "client-config.json"


class KeepDecision:
    """Decision of keeping a version directory, with a human readable reason.
    """

    __slots__ = "keep", "reason"

    def __init__(self, keep: bool, reason: str) -> None:
        self.keep = keep
        self.reason = reason

    def __bool__(self) -> bool:
        return self.keep

    def __repr__(self) -> str:
        return f"<KeepDecision {self.keep}: {self.reason}>"


def should_keep_version(dir_name: str, base: str, loader: Optional[str] = None, *,
    prefix: str = "fabric-loader"
) -> KeepDecision:
    """Decide if a version directory is pinned by the current configuration.

    :param dir_name: Name of the directory in the versions directory.
    :param base: The pinned base version.
    :param loader: The pinned loader, either a bare loader version or a composed
    profile id, none if no loader is used.
    """

    if dir_name == base:
        return KeepDecision(True, "pinned base version")

    if loader is not None and len(loader):
        if dir_name == loader_profile_id(loader, base, prefix):
            return KeepDecision(True, "pinned loader profile")
        if dir_name == loader:
            return KeepDecision(True, "pinned loader")

    return KeepDecision(False, "not pinned")


class CleanupReport:
    """Result of a cleanup, directories that couldn't be removed are only reported.
    """

    __slots__ = "removed", "kept", "failed"

    def __init__(self) -> None:
        self.removed: List[str] = []
        self.kept: List[str] = []
        self.failed: List[str] = []

    def __repr__(self) -> str:
        return f"<CleanupReport removed: {self.removed}, kept: {self.kept}, failed: {self.failed}>"


def cleanup_old_versions(versions_dir: Path, base: str, loader: Optional[str] = None, *,
    prefix: str = "fabric-loader",
    watcher: Optional[Watcher] = None
) -> CleanupReport:
    """Remove every version directory that is not pinned by the given base version and
    loader. Failing to remove a directory is logged and doesn't stop the cleanup.
    """

    watcher = watcher or Watcher()
    report = CleanupReport()

    if not versions_dir.is_dir():
        return report

    entries = sorted(path for path in versions_dir.iterdir() if path.is_dir())
    watcher.handle(ProgressEvent("cleanup", str(versions_dir), len(entries), 0))

    for i, entry in enumerate(entries):

        decision = should_keep_version(entry.name, base, loader, prefix=prefix)
        if decision.keep:
            report.kept.append(entry.name)
        else:
            try:
                shutil.rmtree(entry)
            except OSError as error:
                logger.warning("Failed to remove version %s: %s", entry.name, error)
                report.failed.append(entry.name)
            else:
                logger.info("Removed version %s", entry.name)
                report.removed.append(entry.name)
                watcher.handle(VersionRemovedEvent(entry.name))

        watcher.handle(ProgressEvent("cleanup", str(versions_dir), len(entries), i + 1))

    return report


def verify_installation(context: Context, version_id: str, *, jar_version: Optional[str] = None) -> Result:
    """Verify that a version is completely installed: its JAR and descriptor are not
    empty, and both libraries and asset indexes directories have entries.

    :param jar_version: The version holding the JAR, defaults to the version itself.
    :return: `Ok` with the version id, or `Err` of kind 'not_synchronized' with the
    reason of the failure.
    """

    handle = context.get_version(version_id)
    jar_handle = handle if jar_version is None else context.get_version(jar_version)

    if file_size_or_zero(jar_handle.jar_file()) == 0:
        return Err(ErrorKind.NOT_SYNCHRONIZED, f"JAR of {jar_handle.id} is missing or empty")
    if file_size_or_zero(handle.metadata_file()) == 0:
        return Err(ErrorKind.NOT_SYNCHRONIZED, f"descriptor of {version_id} is missing or empty")
    if not dir_has_entries(context.libraries_dir):
        return Err(ErrorKind.NOT_SYNCHRONIZED, "libraries directory is missing or empty")
    if not dir_has_entries(context.assets_dir / "indexes"):
        return Err(ErrorKind.NOT_SYNCHRONIZED, "assets indexes directory is missing or empty")

    return Ok(version_id)


class ClientConfig:
    """The last applied configuration of the content directory, stored in its
    'client-config.json' file.
    """

    __slots__ = "base_version", "loader_version", "loader_profile_id", "updated_at"

    def __init__(self,
        base_version: str,
        loader_version: Optional[str] = None,
        loader_profile_id: Optional[str] = None,
        updated_at: Optional[str] = None
    ) -> None:
        self.base_version = base_version
        self.loader_version = loader_version
        self.loader_profile_id = loader_profile_id
        self.updated_at = updated_at

    @classmethod
    def read(cls, main_dir: Path) -> "Optional[ClientConfig]":
        """Read the configuration of the given content directory, none if absent or
        unreadable.
        """
        try:
            with (main_dir / CLIENT_CONFIG_FILE).open("rt") as fp:
                data = json.load(fp)
        except (OSError, JSONDecodeError):
            return None

        if not isinstance(data, dict) or not isinstance(data.get("baseVersion"), str):
            return None

        return cls(data["baseVersion"], data.get("loaderVersion"), data.get("loaderProfileId"), data.get("updatedAt"))

    def write(self, main_dir: Path) -> None:
        """Write this configuration, the update time is set to now.
        """
        self.updated_at = datetime.now(timezone.utc).isoformat()
        main_dir.mkdir(parents=True, exist_ok=True)
        with (main_dir / CLIENT_CONFIG_FILE).open("wt") as fp:
            json.dump({
                "baseVersion": self.base_version,
                "loaderVersion": self.loader_version,
                "loaderProfileId": self.loader_profile_id,
                "updatedAt": self.updated_at,
            }, fp, indent=2)

    def matches(self, base_version: str, loader_profile_id: Optional[str]) -> bool:
        """Return true if this configuration already describes the given versions.
        """
        return self.base_version == base_version and self.loader_profile_id == loader_profile_id

    def __repr__(self) -> str:
        return f"<ClientConfig {self.base_version} {self.loader_profile_id}>"


class VersionLifecycleManager:
    """Verification and cleanup of the versions installed in a context.
    """

    def __init__(self, context: Context, *, prefix: str = "fabric-loader") -> None:
        self.context = context
        self.prefix = prefix

    def should_keep_version(self, dir_name: str, base: str, loader: Optional[str] = None) -> KeepDecision:
        return should_keep_version(dir_name, base, loader, prefix=self.prefix)

    def cleanup_old_versions(self, base: str, loader: Optional[str] = None, *,
        watcher: Optional[Watcher] = None
    ) -> CleanupReport:
        return cleanup_old_versions(self.context.versions_dir, base, loader, prefix=self.prefix, watcher=watcher)

    def verify(self, base: str, loader_profile: Optional[str] = None, *,
        watcher: Optional[Watcher] = None
    ) -> Result:
        """Verify the base version and, if given, the composed loader profile whose
        JAR is the base one.

        :return: `Ok` with the launchable version id, or `Err`.
        """

        watcher = watcher or Watcher()
        watcher.handle(ProgressEvent("verify", base, 1, 0))

        result = verify_installation(self.context, base)
        if result.ok and loader_profile is not None:
            result = verify_installation(self.context, loader_profile, jar_version=base)

        watcher.handle(ProgressEvent("verify", base, 1, 1))
        return result


class VersionRemovedEvent:
    """Event triggered when a version directory has been removed by a cleanup.
    """
    __slots__ = "version",
    def __init__(self, version: str) -> None:
        self.version = version
