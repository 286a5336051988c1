"""Definition of the multiplayer server list stored in the content directory, a gzip
compressed NBT container, and of the last server remembered in the game options.
"""

from pathlib import Path
import logging

import nbtlib

from .standard import Watcher, ProgressEvent

from typing import Optional, List, Any


logger = logging.getLogger(__name__)

SERVERS_FILE = "servers.dat"
OPTIONS_FILE = "options.txt"
DEFAULT_PORT = 25565
DEFAULT_SERVER_NAME = "Minecraft Server"


def normalize_address(address: str) -> str:
    """Normalize a server address, the host is lower cased and the default port is
    omitted, so that two addresses of the same server compare equal.
    """

    address = address.strip().lower()

    host, sep, port = address.rpartition(":")
    # A colon inside the host part is an IPv6 address without port.
    if not sep or (":" in host and not host.endswith("]")):
        return address

    if port == str(DEFAULT_PORT):
        return host
    return address


class ServerEntry:
    """An entry of the server list.
    """

    __slots__ = "name", "address", "icon", "accept_textures"

    def __init__(self, name: str, address: str, icon: str = "", accept_textures: bool = True) -> None:
        self.name = name
        self.address = address
        self.icon = icon
        self.accept_textures = accept_textures

    @classmethod
    def from_dict(cls, data: Any) -> "Optional[ServerEntry]":
        """Return the entry of an unpacked server compound, none if it has no address.
        """
        if not isinstance(data, dict) or not isinstance(data.get("ip"), str) or not len(data["ip"]):
            return None
        return cls(
            str(data.get("name", DEFAULT_SERVER_NAME)),
            data["ip"],
            str(data.get("icon", "")),
            data.get("acceptTextures", 0) == 1)

    def to_nbt(self) -> nbtlib.Compound:
        return nbtlib.Compound({
            "name": nbtlib.String(self.name or DEFAULT_SERVER_NAME),
            "ip": nbtlib.String(self.address),
            "icon": nbtlib.String(self.icon),
            "acceptTextures": nbtlib.Byte(1 if self.accept_textures else 0),
        })

    def __eq__(self, other) -> bool:
        return isinstance(other, ServerEntry) and \
            (self.name, self.address, self.icon, self.accept_textures) == \
            (other.name, other.address, other.icon, other.accept_textures)

    def __repr__(self) -> str:
        return f"<ServerEntry {self.name} ({self.address})>"


class ServerListCodec:
    """Read and write the server list container. The container is only a convenience
    cache, an unreadable one is replaced by a fresh container.
    """

    def read(self, path: Path, *, watcher: Optional[Watcher] = None) -> List[ServerEntry]:
        """Read the entries of the given container, an absent or unreadable container
        has no entry.
        """

        if not path.is_file():
            return []

        try:
            servers = nbtlib.load(path).unpack()["servers"]
            if not isinstance(servers, list):
                raise ValueError("servers must be a list")
            entries = []
            for data in servers:
                entry = ServerEntry.from_dict(data)
                if entry is not None:
                    entries.append(entry)
            return entries
        except Exception as error:
            logger.warning("Unreadable server list %s, starting a fresh one: %s", path, error)
            (watcher or Watcher()).handle(ServerListResetEvent(path, str(error)))
            return []

    def list(self, path: Path) -> List[ServerEntry]:
        return self.read(path)

    def write(self, path: Path, entries: List[ServerEntry]) -> None:
        """Write the given entries, replacing the whole container.
        """
        nbt_file = nbtlib.File({
            "servers": nbtlib.List[nbtlib.Compound]([entry.to_nbt() for entry in entries]),
        }, gzipped=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        nbt_file.save(path, gzipped=True)

    def upsert(self, path: Path, entry: ServerEntry, *,
        preserve_existing: bool = False,
        watcher: Optional[Watcher] = None
    ) -> List[ServerEntry]:
        """Add the given entry to the container, any entry with the same normalized
        address is removed before the new entry is appended.

        :param preserve_existing: Set to true to leave a container that already has
        entries untouched, keeping user modifications.
        :return: The entries of the container after the operation.
        """

        watcher = watcher or Watcher()
        watcher.handle(ProgressEvent("servers", entry.address, 1, 0))

        entries = self.read(path, watcher=watcher)
        if preserve_existing and len(entries):
            watcher.handle(ProgressEvent("servers", entry.address, 1, 1))
            return entries

        target = normalize_address(entry.address)
        entries = [existing for existing in entries if normalize_address(existing.address) != target]
        entries.append(entry)

        self.write(path, entries)
        watcher.handle(ProgressEvent("servers", entry.address, 1, 1))
        return entries


def set_last_server(main_dir: Path, address: str) -> None:
    """Set the last server in the game options so that the multiplayer screen selects
    it, other options are kept.
    """

    options_file = main_dir / OPTIONS_FILE
    try:
        lines = options_file.read_text(encoding="utf-8").split("\n")
    except FileNotFoundError:
        lines = []

    lines = [line for line in lines if len(line) and not line.startswith("lastServer:")]
    lines.append(f"lastServer:{address}")

    main_dir.mkdir(parents=True, exist_ok=True)
    options_file.write_text("\n".join(lines) + "\n", encoding="utf-8")


class ServerListResetEvent:
    """Event triggered when an unreadable server list is replaced by a fresh one.
    """
    __slots__ = "path", "reason"
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
