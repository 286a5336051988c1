from argparse import ArgumentParser, HelpFormatter, ArgumentTypeError
from pathlib import Path

from ..standard import Context, VersionManifest

from .output import Output
from .lang import get as _

from typing import Optional, Type, List


# The following classes are only used for type checking and represent a typed namespace
# as produced by the arguments registered to the argument parser.

class RootNs:
    main_dir: Optional[Path]
    timeout: Optional[float]
    out_kind: str
    verbose: int
    # Initialized by main function after argument parsing.
    out: Output
    context: Context
    version_manifest: VersionManifest

class LoaderNs(RootNs):
    loader: Optional[str]
    loader_kind: str
    version: str

class InstallNs(LoaderNs):
    require_loader: bool
    server: Optional[str]
    server_name: Optional[str]
    no_cleanup: bool

class VerifyNs(LoaderNs):
    pass

class CleanupNs(LoaderNs):
    pass

class JvmNs(RootNs):
    major_version: int

class ServerAddNs(RootNs):
    address: str
    name: Optional[str]


def register_arguments() -> ArgumentParser:
    parser = ArgumentParser(allow_abbrev=False, prog="provisionmc", description=_("args"))
    parser.add_argument("--main-dir", help=_("args.main_dir"), type=Path)
    parser.add_argument("--timeout", help=_("args.timeout"), type=float)
    parser.add_argument("--output", help=_("args.output"), dest="out_kind", choices=get_outputs(), default="human-color")
    parser.add_argument("-v", dest="verbose", help=_("args.verbose"), action="count", default=0)
    register_subcommands(parser.add_subparsers(title="subcommands", dest="subcommand"))
    return parser


def register_subcommands(subparsers):
    register_install_arguments(subparsers.add_parser("install", help=_("args.install")))
    register_verify_arguments(subparsers.add_parser("verify", help=_("args.verify")))
    register_cleanup_arguments(subparsers.add_parser("cleanup", help=_("args.cleanup")))
    register_jvm_arguments(subparsers.add_parser("jvm", help=_("args.jvm")))
    register_server_arguments(subparsers.add_parser("server", help=_("args.server")))
    register_show_arguments(subparsers.add_parser("show", help=_("args.show")))


def register_common_loader(parser: ArgumentParser):
    parser.add_argument("--loader", help=_("args.common.loader"), metavar="VERSION")
    parser.add_argument("--loader-kind", help=_("args.common.loader_kind"), default="fabric", choices=get_loader_kinds())
    parser.add_argument("version", help=_("args.common.version"))


def register_install_arguments(parser: ArgumentParser):
    parser.formatter_class = new_help_formatter_class(40)
    parser.add_argument("--require-loader", help=_("args.install.require_loader"), action="store_true")
    parser.add_argument("--server", help=_("args.install.server"), type=address_from_str, metavar="ADDR")
    parser.add_argument("--server-name", help=_("args.install.server_name"), metavar="NAME")
    parser.add_argument("--no-cleanup", help=_("args.install.no_cleanup"), action="store_true")
    register_common_loader(parser)


def register_verify_arguments(parser: ArgumentParser):
    register_common_loader(parser)


def register_cleanup_arguments(parser: ArgumentParser):
    register_common_loader(parser)


def register_jvm_arguments(parser: ArgumentParser):
    parser.add_argument("major_version", help=_("args.jvm.major_version"), type=int)


def register_server_arguments(parser: ArgumentParser):
    subparsers = parser.add_subparsers(title="subcommands", dest="server_subcommand")
    subparsers.required = True
    add_parser = subparsers.add_parser("add", help=_("args.server.add"))
    add_parser.add_argument("--name", help=_("args.server.add.name"))
    add_parser.add_argument("address", type=address_from_str)
    subparsers.add_parser("list", help=_("args.server.list"))


def register_show_arguments(parser: ArgumentParser):
    subparsers = parser.add_subparsers(title="subcommands", dest="show_subcommand")
    subparsers.required = True
    subparsers.add_parser("about", help=_("args.show.about"))


def new_help_formatter_class(max_help_position: int) -> Type[HelpFormatter]:

    class CustomHelpFormatter(HelpFormatter):
        def __init__(self, prog):
            super().__init__(prog, max_help_position=max_help_position)

    return CustomHelpFormatter


def get_outputs() -> List[str]:
    return ["human-color", "human", "machine"]


def get_loader_kinds() -> List[str]:
    return ["fabric", "quilt"]


def address_from_str(s: str) -> str:
    host, sep, port = s.strip().rpartition(":")
    if not len(s.strip()) or (sep and ":" not in host and not port.isdigit()):
        raise ArgumentTypeError(_("args.server.address.invalid", given=s))
    return s.strip()
