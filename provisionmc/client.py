"""Definition of the client pipeline, ensuring that everything needed to run a given
base version, optionally with a mod loader, is installed and verified.

The pipeline runs each component in turn: runtime, content, loader, verification,
server list, cleanup and finally records the applied configuration. Each component
returns a tagged result, the first error stops the pipeline, except a loader failure
that degrades to the base version unless the loader is required.
"""

import logging
import asyncio
import errno

from .standard import Context, VersionManifest, Watcher
from .result import ErrorKind, InstallError, Ok, Err, Result
from .jvm import RuntimeProvisioner, JvmInstallation, required_java_version
from .vanilla import ContentInstaller
from .fabric import LoaderProfileComposer, FabricApi, FABRIC_API, parse_loader_version
from .lifecycle import VersionLifecycleManager, ClientConfig, CleanupReport
from .servers import ServerListCodec, ServerEntry, SERVERS_FILE, set_last_server
from .auth import AuthSession

from typing import Optional, List


logger = logging.getLogger(__name__)


class ClientReady:
    """Result of a successful pipeline, the version to launch is the loader profile if
    it has been installed, or the base version.
    """

    __slots__ = "runtime", "version", "base_version", "loader_version", "loader_profile_id", \
        "warnings", "changed", "cleanup"

    def __init__(self,
        runtime: JvmInstallation,
        base_version: str,
        loader_version: Optional[str],
        loader_profile_id: Optional[str],
        warnings: List[str],
        changed: bool,
        cleanup: Optional[CleanupReport]
    ) -> None:
        self.runtime = runtime
        self.version = base_version if loader_profile_id is None else loader_profile_id
        self.base_version = base_version
        self.loader_version = loader_version
        self.loader_profile_id = loader_profile_id
        self.warnings = warnings
        self.changed = changed
        self.cleanup = cleanup

    def __repr__(self) -> str:
        return f"<ClientReady {self.version} java {self.runtime.major_version}>"


class ClientProvisioner:
    """Ensure that a client is ready to run in a context.
    """

    def __init__(self, context: Context, *,
        loader_api: FabricApi = FABRIC_API,
        manifest: Optional[VersionManifest] = None,
        runtime: Optional[RuntimeProvisioner] = None,
        content: Optional[ContentInstaller] = None,
        composer: Optional[LoaderProfileComposer] = None,
        lifecycle: Optional[VersionLifecycleManager] = None,
        servers: Optional[ServerListCodec] = None
    ) -> None:
        self.context = context
        self.loader_api = loader_api
        self.manifest = manifest or VersionManifest(context)
        self.runtime = runtime or RuntimeProvisioner(context)
        self.content = content or ContentInstaller(context, manifest=self.manifest)
        self.composer = composer or LoaderProfileComposer(context, loader_api)
        self.lifecycle = lifecycle or VersionLifecycleManager(context, prefix=loader_api.prefix)
        self.servers = servers or ServerListCodec()

    async def ensure_ready(self, base: str, loader: Optional[str] = None, *,
        require_loader: bool = False,
        server: Optional[ServerEntry] = None,
        auth: Optional[AuthSession] = None,
        cleanup: bool = True,
        watcher: Optional[Watcher] = None
    ) -> Result:
        """Ensure that the given base version, and loader if given, are ready to run.
        Running out of file descriptors restarts the pipeline once after the context's
        cooldown, the pipeline being idempotent this only resumes the work.

        :param base: The base version id or a 'release'/'snapshot' alias.
        :param loader: The loader version, bare or composed profile id, or 'latest'.
        :param require_loader: Set to true to fail if the loader can't be installed,
        instead of degrading to the base version.
        :param server: A server to add to the server list and select as last server.
        :param auth: A session that must validate before installing anything.
        :param cleanup: Set to false to keep versions that are no longer pinned.
        :return: `Ok` with a `ClientReady`, or `Err`.
        """

        watcher = watcher or Watcher()

        try:
            return await self._ensure_ready(base, loader, require_loader, server, auth, cleanup, watcher)
        except OSError as error:
            if error.errno not in (errno.EMFILE, errno.ENFILE):
                raise
            logger.warning("Too many open files, retrying in %.1f seconds", self.context.resource_cooldown)

        await asyncio.sleep(self.context.resource_cooldown)

        try:
            return await self._ensure_ready(base, loader, require_loader, server, auth, cleanup, watcher)
        except OSError as error:
            if error.errno not in (errno.EMFILE, errno.ENFILE):
                raise
            return Err(ErrorKind.TRANSIENT_RESOURCE, str(error), error)

    async def _ensure_ready(self,
        base: str,
        loader: Optional[str],
        require_loader: bool,
        server: Optional[ServerEntry],
        auth: Optional[AuthSession],
        cleanup: bool,
        watcher: Watcher
    ) -> Result:

        if auth is not None and not auth.validate():
            auth.refresh()
            if not auth.validate():
                return Err(ErrorKind.NOT_SYNCHRONIZED, f"session of {auth.username} is not valid")

        if self.manifest.is_alias(base):
            try:
                async with self.context.open_client() as client:
                    base = await self.manifest.filter_latest(client, base)
            except InstallError as error:
                return Err.from_error(error)
            except ValueError as error:
                return Err(ErrorKind.INVALID_METADATA, str(error), error)

        base_handle = self.context.get_version(base)
        base_handle.read_metadata_file()

        runtime_result = await self.runtime.ensure(required_java_version(base, base_handle.metadata), watcher=watcher)
        if not runtime_result.ok:
            return runtime_result
        runtime: JvmInstallation = runtime_result.value

        content_result = await self.content.install(base, watcher=watcher)
        if not content_result.ok:
            return content_result

        # The descriptor may have only been fetched now and require a newer runtime.
        if base_handle.read_metadata_file():
            required = required_java_version(base, base_handle.metadata)
            if required > runtime.major_version:
                runtime_result = await self.runtime.ensure(required, watcher=watcher)
                if not runtime_result.ok:
                    return runtime_result
                runtime = runtime_result.value

        warnings: List[str] = []
        loader_profile_id: Optional[str] = None
        loader_version: Optional[str] = None

        if loader is not None:
            loader_result = await self.composer.install(base, loader,
                java_executable=runtime.executable_path,
                watcher=watcher)
            if loader_result.ok:
                loader_profile_id = loader_result.value
                loader_version = parse_loader_version(loader_profile_id, self.loader_api.prefix, base)
            elif require_loader:
                return loader_result
            else:
                logger.warning("Loader %s failed to install, continuing with %s only: %s", loader, base, loader_result.message)
                warnings.append(f"{ErrorKind.PARTIAL_CAPABILITY}: {loader_result.kind}: {loader_result.message}")

        verify_result = self.lifecycle.verify(base, loader_profile_id, watcher=watcher)
        if not verify_result.ok:
            return verify_result

        if server is not None:
            self.servers.upsert(self.context.main_dir / SERVERS_FILE, server, watcher=watcher)
            set_last_server(self.context.main_dir, server.address)

        previous_config = ClientConfig.read(self.context.main_dir)
        degraded = loader is not None and loader_profile_id is None

        cleanup_report: Optional[CleanupReport] = None
        if cleanup:
            # The requested loader stays pinned even if it failed to install, for the
            # latest loader this is the profile recorded by the last install.
            pinned_loader = loader_profile_id
            if degraded and loader != "latest":
                pinned_loader = loader
            elif degraded and previous_config is not None and previous_config.base_version == base:
                pinned_loader = previous_config.loader_profile_id
            cleanup_report = self.lifecycle.cleanup_old_versions(base, pinned_loader, watcher=watcher)

        changed = previous_config is None or not previous_config.matches(base, loader_profile_id)
        # A degraded install keeps the last recorded configuration.
        if not degraded:
            ClientConfig(base, loader_version, loader_profile_id).write(self.context.main_dir)

        return Ok(ClientReady(runtime, base, loader_version, loader_profile_id, warnings, changed, cleanup_report))
