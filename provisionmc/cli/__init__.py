"""Main
"""

import asyncio
import logging
import sys

from .parse import register_arguments, RootNs, LoaderNs, InstallNs, VerifyNs, CleanupNs, \
    JvmNs, ServerAddNs
from .output import Output, HumanOutput, MachineOutput, format_number
from .lang import get as _

from ..result import InstallError, ErrorKind, Result
from ..standard import Context, VersionManifest, SimpleWatcher, \
    DownloadStartEvent, DownloadProgressEvent, DownloadCompleteEvent, \
    VersionLoadingEvent, VersionFetchingEvent, VersionLoadedEvent, \
    AssetsResolveEvent, LibrariesResolvedEvent
from ..download import DownloadResultSuccess, DownloadResultError
from ..jvm import RuntimeProvisioner, JvmNotFoundError, JvmLoadedEvent, JvmSmokeTestEvent
from ..vanilla import StrategyFallbackEvent
from ..fabric import LOADER_APIS, LoaderResolveEvent, LoaderJarSynthesizedEvent, loader_profile_id
from ..lifecycle import VersionLifecycleManager, VersionRemovedEvent, ClientConfig
from ..servers import ServerListCodec, ServerEntry, ServerListResetEvent, \
    SERVERS_FILE, DEFAULT_SERVER_NAME
from ..client import ClientProvisioner, ClientReady

from typing import cast, Optional, List, Union, Dict, Callable, Any


EXIT_OK = 0
EXIT_FAILURE = 1

MANIFEST_CACHE_FILE_NAME = "provisionmc_version_manifest.json"

CommandHandler = Callable[[Any], Any]
CommandTree = Dict[str, Union[CommandHandler, "CommandTree"]]


def main(args: Optional[List[str]] = None):
    """Main entry point of the CLI. This function parses the input arguments and try to
    find a command handler to dispatch to. These command handlers are specified by the
    `get_command_handlers` function.
    """

    parser = register_arguments()
    ns: RootNs = cast(RootNs, parser.parse_args(args or sys.argv[1:]))

    setup_logging(ns.verbose)

    # Setup common objects in the namespace.
    ns.out = get_output(ns.out_kind)
    if ns.timeout is None:
        ns.context = Context(ns.main_dir)
    else:
        ns.context = Context(ns.main_dir, timeout=ns.timeout)
    ns.version_manifest = VersionManifest(ns.context, cache_file=ns.context.main_dir / MANIFEST_CACHE_FILE_NAME)

    # Find the command handler and run it.
    command_handlers = get_command_handlers()
    command_attr = "subcommand"
    while True:
        command = getattr(ns, command_attr)
        handler = command_handlers.get(command)
        if handler is None:
            parser.print_help()
            sys.exit(EXIT_FAILURE)
        elif callable(handler):
            cmd(handler, ns)
        elif isinstance(handler, dict):
            command_attr = f"{command}_{command_attr}"
            command_handlers = handler
            continue
        sys.exit(EXIT_OK)


def setup_logging(verbose: int) -> None:
    """Configure the root logger, warnings are always logged to stderr and each -v
    lowers the level.
    """
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def get_output(kind: str) -> Output:
    """Internal function that construct the output depending on its kind.
    The kind is constrained by choices set to the arguments parser.
    """

    if kind == "human-color":
        return HumanOutput(True)
    elif kind == "human":
        return HumanOutput(False)
    elif kind == "machine":
        return MachineOutput()
    else:
        raise ValueError()


def get_command_handlers() -> CommandTree:
    """Internal function returns the tree of command handlers for each subcommand
    of the CLI argument parser.
    """

    return {
        "install": cmd_install,
        "verify": cmd_verify,
        "cleanup": cmd_cleanup,
        "jvm": cmd_jvm,
        "server": {
            "add": cmd_server_add,
            "list": cmd_server_list,
        },
        "show": {
            "about": cmd_show_about,
        },
    }


def cmd(handler: CommandHandler, ns: RootNs):
    """Generic command handler that launch the given handler with the given namespace,
    it handles error in order to pretty print them.
    """

    try:
        handler(ns)
        sys.exit(EXIT_OK)

    except JvmNotFoundError as error:
        ns.out.task("FAILED", f"jvm.error.{error.code}", version=error.major_version)
        ns.out.finish()

    except InstallError as error:
        ns.out.task("FAILED", f"error.{error.kind}", message=error.message)
        ns.out.finish()

    except ValueError as error:
        ns.out.task("FAILED", None)
        ns.out.finish()
        for arg in error.args:
            ns.out.task(None, "echo", echo=arg)
            ns.out.finish()

    except KeyboardInterrupt:
        ns.out.finish()
        ns.out.task("HALT", "keyboard_interrupt")
        ns.out.finish()

    except OSError:

        ns.out.task("FAILED", None)
        ns.out.finish()
        ns.out.task(None, "error.os")
        ns.out.finish()

        import traceback
        traceback.print_exc()

    sys.exit(EXIT_FAILURE)


def cmd_install(ns: InstallNs):

    api = LOADER_APIS[ns.loader_kind]

    server = None
    if ns.server is not None:
        server = ServerEntry(ns.server_name or DEFAULT_SERVER_NAME, ns.server)

    provisioner = ClientProvisioner(ns.context, loader_api=api, manifest=ns.version_manifest)
    result = asyncio.run(provisioner.ensure_ready(ns.version, ns.loader,
        require_loader=ns.require_loader,
        server=server,
        cleanup=not ns.no_cleanup,
        watcher=CliWatcher(ns)))

    ready: ClientReady = result.unwrap()

    for warning in ready.warnings:
        ns.out.task("WARN", "warning", message=warning)
        ns.out.finish()

    if ready.cleanup is not None and (len(ready.cleanup.removed) or len(ready.cleanup.failed)):
        ns.out.task("INFO", "install.cleanup",
            removed_count=len(ready.cleanup.removed),
            failed_count=len(ready.cleanup.failed))
        ns.out.finish()

    if ready.changed and ns.verbose >= 1:
        ns.out.task("INFO", "install.changed")
        ns.out.finish()

    ns.out.task("OK", "install.ready", version=ready.version, java_version=ready.runtime.major_version)
    ns.out.finish()


def cmd_verify(ns: VerifyNs):

    base = resolve_version(ns, ns.version)
    profile_id = resolve_loader_profile(ns, base)

    lifecycle = VersionLifecycleManager(ns.context, prefix=LOADER_APIS[ns.loader_kind].prefix)
    version = check_result(lifecycle.verify(base, profile_id, watcher=CliWatcher(ns)))

    ns.out.task("OK", "verify.ok", version=version)
    ns.out.finish()


def cmd_cleanup(ns: CleanupNs):

    base = resolve_version(ns, ns.version)
    profile_id = resolve_loader_profile(ns, base)

    lifecycle = VersionLifecycleManager(ns.context, prefix=LOADER_APIS[ns.loader_kind].prefix)
    report = lifecycle.cleanup_old_versions(base, profile_id, watcher=CliWatcher(ns))

    ns.out.task("OK", "install.cleanup", removed_count=len(report.removed), failed_count=len(report.failed))
    ns.out.finish()


def cmd_jvm(ns: JvmNs):

    provisioner = RuntimeProvisioner(ns.context)
    check_result(asyncio.run(provisioner.ensure(ns.major_version, watcher=CliWatcher(ns))))


def cmd_server_add(ns: ServerAddNs):

    codec = ServerListCodec()
    entry = ServerEntry(ns.name or DEFAULT_SERVER_NAME, ns.address)
    codec.upsert(ns.context.main_dir / SERVERS_FILE, entry, watcher=CliWatcher(ns))

    ns.out.task("OK", "servers.added", address=entry.address)
    ns.out.finish()


def cmd_server_list(ns: RootNs):

    codec = ServerListCodec()
    table = ns.out.table()

    table.add(_("servers.name"), _("servers.address"), _("servers.accept_textures"))
    table.separator()

    for entry in codec.read(ns.context.main_dir / SERVERS_FILE, watcher=CliWatcher(ns)):
        table.add(entry.name, entry.address, "yes" if entry.accept_textures else "no")

    table.print()


def cmd_show_about(ns: RootNs):

    from .. import LAUNCHER_VERSION, LAUNCHER_AUTHORS, LAUNCHER_URL, LAUNCHER_COPYRIGHT

    print(f"Version: {LAUNCHER_VERSION}")
    print(f"Authors: {', '.join(LAUNCHER_AUTHORS)}")
    print(f"Website: {LAUNCHER_URL}")
    print(f"License: {LAUNCHER_COPYRIGHT}")
    print( "         This program comes with ABSOLUTELY NO WARRANTY. This is free software,")
    print( "         and you are welcome to redistribute it under certain conditions.")
    print( "         See <https://www.gnu.org/licenses/gpl-3.0.html>.")


def check_result(result: Result) -> Any:
    """Return the value of a successful result, or raise its error so that the command
    wrapper prints it.
    """
    return result.unwrap()


def resolve_version(ns: RootNs, version: str) -> str:
    """Resolve the 'release' and 'snapshot' aliases of the version manifest.
    """

    if not ns.version_manifest.is_alias(version):
        return version

    async def filter_latest() -> str:
        async with ns.context.open_client() as client:
            return await ns.version_manifest.filter_latest(client, version)

    return asyncio.run(filter_latest())


def resolve_loader_profile(ns: LoaderNs, base: str) -> Optional[str]:
    """Return the composed loader profile id to operate on, the 'latest' loader can't
    be known without the network, so the profile recorded by the last install is used.
    """

    if ns.loader is None:
        return None

    if ns.loader == "latest":
        config = ClientConfig.read(ns.context.main_dir)
        if config is None or config.base_version != base or config.loader_profile_id is None:
            raise InstallError(ErrorKind.NOT_FOUND, f"no loader installed for {base}")
        return config.loader_profile_id

    return loader_profile_id(ns.loader, base, LOADER_APIS[ns.loader_kind].prefix)


class CliWatcher(SimpleWatcher):

    def __init__(self, ns: RootNs) -> None:

        def progress_task(key: str, **kwargs) -> None:
            ns.out.task("..", key, **kwargs)

        def finish_task(key: str, **kwargs) -> None:
            ns.out.task("OK", key, **kwargs)
            ns.out.finish()

        def warn_task(key: str, **kwargs) -> None:
            ns.out.task("WARN", key, **kwargs)
            ns.out.finish()

        def version_loaded(e: VersionLoadedEvent) -> None:
            finish_task("version.loaded.fetched" if e.fetched else "version.loaded", version=e.version)

        def jvm_loaded(e: JvmLoadedEvent) -> None:
            finish_task(f"jvm.loaded.{e.kind}",
                version=e.installation.major_version,
                path=e.installation.root_path)

        def jvm_smoke_test(e: JvmSmokeTestEvent) -> None:
            if not e.ok:
                warn_task("jvm.smoke_test.failed", version=e.installation.major_version, output=e.output.strip())

        def assets_resolve(e: AssetsResolveEvent) -> None:
            if e.count is None:
                progress_task("assets.resolving", index_version=e.index_version)
            else:
                finish_task("assets.resolved", index_version=e.index_version, count=e.count)

        def loader_resolve(e: LoaderResolveEvent) -> None:
            if e.loader_version is None:
                progress_task("loader.resolving", api=e.api.name, vanilla_version=e.vanilla_version)
            else:
                finish_task("loader.resolved", api=e.api.name, loader_version=e.loader_version, vanilla_version=e.vanilla_version)

        def version_removed(e: VersionRemovedEvent) -> None:
            if ns.verbose >= 1:
                ns.out.task("INFO", "version.removed", version=e.version)
                ns.out.finish()

        super().__init__({
            VersionLoadingEvent: lambda e: progress_task("version.loading", version=e.version),
            VersionFetchingEvent: lambda e: progress_task("version.fetching", version=e.version),
            VersionLoadedEvent: version_loaded,
            JvmLoadedEvent: jvm_loaded,
            JvmSmokeTestEvent: jvm_smoke_test,
            AssetsResolveEvent: assets_resolve,
            LibrariesResolvedEvent: lambda e: finish_task("libraries.resolved", count=e.count, excluded_count=e.excluded_count),
            LoaderResolveEvent: loader_resolve,
            LoaderJarSynthesizedEvent: lambda e: warn_task("loader.jar_synthesized", version=e.version),
            StrategyFallbackEvent: lambda e: warn_task("version.fallback", version=e.version, error=e.error),
            VersionRemovedEvent: version_removed,
            ServerListResetEvent: lambda e: warn_task("servers.reset", reason=e.reason),
            DownloadStartEvent: self.download_start,
            DownloadProgressEvent: self.download_progress,
            DownloadCompleteEvent: self.download_complete,
        })

        self.ns = ns
        self.size = 0

    def download_start(self, e: DownloadStartEvent):

        if self.ns.verbose:
            self.ns.out.task("INFO", "download.wave_size", count=e.wave_size, skipped_count=e.skipped_count)
            self.ns.out.finish()

        self.size = 0
        self.ns.out.task("..", "download.start")

    def download_progress(self, e: DownloadProgressEvent) -> None:

        if isinstance(e.result, DownloadResultSuccess):
            self.size += e.result.size
        elif isinstance(e.result, DownloadResultError) and self.ns.verbose:
            self.ns.out.task("FAILED", "download.error", url=e.result.entry.url, message=e.result.error.message)
            self.ns.out.finish()

        total_count = str(e.total_count)
        self.ns.out.task("..", "download.progress",
            count=f"{e.count:{len(total_count)}}",
            total_count=total_count,
            size=f"{format_number(self.size)}o")

    def download_complete(self, e: DownloadCompleteEvent) -> None:
        if len(e.report.failed):
            self.ns.out.task("WARN", "download.failed", count=len(e.report.failed))
        else:
            self.ns.out.task("OK", None)
        self.ns.out.finish()
