"""CLI languages management.
"""

from ..result import ErrorKind
from ..jvm import JvmNotFoundError, JvmLoadedEvent

from typing import Optional


def get_raw(key: str, kwargs: Optional[dict]) -> str:
    """Get a message translated using the given keyword formatting arguments.

    :param key: The key of the message to translate.
    :param kwargs: The keyword formatting dictionary.
    :return: Translated message, or the key itself if not found.
    """
    try:
        return lang[key].format_map(kwargs or {})
    except KeyError:
        return key


def get(key: str, **kwargs) -> str:
    """Get a message translated using the given keyword formatting arguments.

    :param key: The key of the message to translate.
    :return: Translated message, or the key itself if not found.
    """
    return get_raw(key, kwargs)


lang = {
    # Args root
    "args": "ProvisionMC ensures that a Minecraft client is ready to run from its main "
        "directory: a managed Java runtime, the game version with its libraries and "
        "assets, an optional Fabric or Quilt loader profile and the server list.",
    "args.main_dir": "Set the main directory where versions, libraries, assets and "
        "runtimes are installed, defaults to the usual .minecraft directory.",
    "args.timeout": "Set a global timeout (in decimal seconds) for network requests.",
    "args.output": "Set the output format of the provisioner, defaults to human-color.",
    "args.verbose": "Enable verbose output. The more -v argument you put, the more "
        "verbose the provisioner will be (usually -v, -vv).",
    # Args common langs
    "args.common.loader": "Loader version to install on top of the game version, "
        "either bare (0.15.11), a composed profile id or 'latest'.",
    "args.common.loader_kind": "Kind of loader to install, defaults to fabric.",
    "args.common.version": "Game version identifier, or one of the 'release' and "
        "'snapshot' aliases.",
    # Args install
    "args.install": "Ensure that a game version, and optionally a loader, is ready to run.",
    "args.install.require_loader": "Fail if the loader can't be installed instead of "
        "falling back to the game version alone.",
    "args.install.server": "Add the given server (<host>[:<port>]) to the server list "
        "and select it as the last server.",
    "args.install.server_name": "Name of the server added with --server.",
    "args.install.no_cleanup": "Keep the version directories that are no longer used.",
    # Args verify
    "args.verify": "Verify that a game version, and optionally a loader profile, is "
        "completely installed.",
    # Args cleanup
    "args.cleanup": "Remove every version directory not used by the given game "
        "version and loader.",
    # Args jvm
    "args.jvm": "Ensure that a Java runtime of the given major version is installed.",
    "args.jvm.major_version": "Required Java major version, like 17 or 21.",
    # Args server
    "args.server": "Manage the multiplayer server list.",
    "args.server.add": "Add a server to the server list, replacing any server with the "
        "same address.",
    "args.server.add.name": "Name of the server, as displayed in the multiplayer screen.",
    "args.server.list": "List the servers of the server list.",
    "args.server.address.invalid": "invalid address '{given}', expected <host>[:<port>]",
    # Args show
    "args.show": "Show and debug various data.",
    "args.show.about": "Display authors, version and license of ProvisionMC.",
    # Common
    "echo": "{echo}",
    "keyboard_interrupt": "Interrupted.",
    "warning": "{message}",
    # Errors
    "error.os": "Unexpected operating system error:",
    f"error.{ErrorKind.TRANSIENT_NETWORK}": "Network error, check your connection: {message}",
    f"error.{ErrorKind.TRANSIENT_RESOURCE}": "Too many open files, even after a retry: {message}",
    f"error.{ErrorKind.CORRUPTION}": "Downloaded file is corrupted: {message}",
    f"error.{ErrorKind.NOT_FOUND}": "Not found: {message}",
    f"error.{ErrorKind.HTTP_STATUS}": "Unexpected HTTP status: {message}",
    f"error.{ErrorKind.PARTIAL_CAPABILITY}": "Partially installed: {message}",
    f"error.{ErrorKind.FATAL_STRUCTURAL}": "Unexpected structure of the installation: {message}",
    f"error.{ErrorKind.INVALID_METADATA}": "Invalid metadata: {message}",
    f"error.{ErrorKind.INSTALLER_FAILED}": "Loader installer failed: {message}",
    f"error.{ErrorKind.NOT_SYNCHRONIZED}": "Installation is not synchronized: {message}",
    # Version
    "version.loading": "Loading version {version}...",
    "version.fetching": "Fetching version {version}...",
    "version.loaded": "Loaded version {version}",
    "version.loaded.fetched": "Fetched version {version}",
    "version.fallback": "Standard install of {version} failed, falling back to manual install: {error}",
    "version.removed": "Removed version {version}",
    # Jvm
    f"jvm.loaded.{JvmLoadedEvent.INSTALLED}": "Java {version} installed at {path}",
    f"jvm.loaded.{JvmLoadedEvent.COMPATIBLE}": "Java {version} installed at {path} (compatible)",
    f"jvm.loaded.{JvmLoadedEvent.DOWNLOADED}": "Java {version} downloaded to {path}",
    "jvm.smoke_test.failed": "Java {version} doesn't run: {output}",
    f"jvm.error.{JvmNotFoundError.UNSUPPORTED_OS}": "No Java runtime is provided for your operating system.",
    f"jvm.error.{JvmNotFoundError.UNSUPPORTED_ARCH}": "No Java runtime is provided for your architecture.",
    f"jvm.error.{JvmNotFoundError.UNSUPPORTED_VERSION}": "No Java {version} runtime is provided for your system.",
    f"jvm.error.{JvmNotFoundError.UNSUPPORTED_ARCHIVE}": "The Java runtime archive format is not supported.",
    f"jvm.error.{JvmNotFoundError.EXECUTABLE_NOT_FOUND}": "No Java executable found in the runtime archive.",
    # Assets and libraries
    "assets.resolving": "Resolving assets {index_version}...",
    "assets.resolved": "Resolved {count} assets {index_version}",
    "libraries.resolved": "Resolved {count} libraries ({excluded_count} excluded)",
    # Loader
    "loader.resolving": "Resolving {api} loader for {vanilla_version}...",
    "loader.resolved": "Resolved {api} loader {loader_version} for {vanilla_version}",
    "loader.jar_synthesized": "Synthesized an empty JAR for {version}",
    # Server list
    "servers.reset": "Unreadable server list, starting a fresh one: {reason}",
    "servers.added": "Added server {address} to the server list",
    "servers.name": "Name",
    "servers.address": "Address",
    "servers.accept_textures": "Textures",
    # Download
    "download.start": "Downloading...",
    "download.wave_size": "Downloading in waves of {count} files ({skipped_count} already installed)",
    "download.progress": "Downloading {count}/{total_count} {size}",
    "download.failed": "{count} download(s) failed",
    "download.error": "Failed to download {url}: {message}",
    # Install
    "install.ready": "Version {version} is ready to run with Java {java_version}",
    "install.changed": "Configuration changed since last install",
    "install.cleanup": "Removed {removed_count} version(s), {failed_count} failed",
    # Verify
    "verify.ok": "Version {version} is completely installed",
}

