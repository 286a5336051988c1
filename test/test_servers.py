from pathlib import Path
import gzip

import nbtlib
import pytest

from provisionmc.standard import CollectWatcher
from provisionmc.servers import ServerListCodec, ServerEntry, ServerListResetEvent, \
    normalize_address, set_last_server


@pytest.mark.parametrize("address, normalized", [
    ("play.example.com", "play.example.com"),
    ("Play.Example.COM", "play.example.com"),
    ("play.example.com:25565", "play.example.com"),
    ("play.example.com:25566", "play.example.com:25566"),
    ("  127.0.0.1:25565 ", "127.0.0.1"),
    ("[::1]:25565", "[::1]"),
    ("::1", "::1"),
])
def test_normalize_address(address: str, normalized: str):
    assert normalize_address(address) == normalized


def test_upsert_replaces_same_server(tmp_path: Path):

    path = tmp_path / "servers.dat"
    codec = ServerListCodec()

    codec.upsert(path, ServerEntry("First", "play.example.com"))
    entries = codec.upsert(path, ServerEntry("Second", "PLAY.example.com:25565"))

    assert entries == [ServerEntry("Second", "PLAY.example.com:25565")]
    assert codec.read(path) == entries


def test_upsert_appends(tmp_path: Path):

    path = tmp_path / "servers.dat"
    codec = ServerListCodec()

    codec.upsert(path, ServerEntry("A", "a.example.com"))
    codec.upsert(path, ServerEntry("B", "b.example.com", accept_textures=False))
    entries = codec.upsert(path, ServerEntry("A2", "a.example.com"))

    assert [(entry.name, entry.address) for entry in entries] == [("B", "b.example.com"), ("A2", "a.example.com")]
    assert not codec.list(path)[0].accept_textures


def test_container_format(tmp_path: Path):

    path = tmp_path / "servers.dat"
    ServerListCodec().write(path, [ServerEntry("Local", "localhost", icon="aWNvbg==")])

    # The container is gzip compressed NBT.
    with gzip.open(path) as fp:
        assert len(fp.read())

    servers = nbtlib.load(path)["servers"]
    assert len(servers) == 1
    assert servers[0]["name"] == "Local"
    assert servers[0]["ip"] == "localhost"
    assert servers[0]["icon"] == "aWNvbg=="
    assert servers[0]["acceptTextures"] == 1


def test_corrupted_container(tmp_path: Path):

    path = tmp_path / "servers.dat"
    path.write_bytes(b"definitely not nbt")
    codec = ServerListCodec()
    watcher = CollectWatcher()

    entries = codec.upsert(path, ServerEntry("Fresh", "fresh.example.com"), watcher=watcher)

    assert entries == [ServerEntry("Fresh", "fresh.example.com")]
    assert codec.read(path) == entries

    reset = watcher.of_type(ServerListResetEvent)
    assert len(reset) == 1
    assert reset[0].path == path


def test_preserve_existing(tmp_path: Path):

    path = tmp_path / "servers.dat"
    codec = ServerListCodec()

    # An empty container is not preserved.
    entries = codec.upsert(path, ServerEntry("User", "user.example.com"), preserve_existing=True)
    assert len(entries) == 1

    entries = codec.upsert(path, ServerEntry("Ours", "ours.example.com"), preserve_existing=True)
    assert entries == [ServerEntry("User", "user.example.com")]
    assert codec.read(path) == entries


def test_read_missing(tmp_path: Path):
    assert ServerListCodec().read(tmp_path / "servers.dat") == []


def test_set_last_server(tmp_path: Path):

    set_last_server(tmp_path, "play.example.com")
    assert (tmp_path / "options.txt").read_text() == "lastServer:play.example.com\n"

    (tmp_path / "options.txt").write_text("version:3700\nlastServer:old.example.com\nlang:en_us\n")
    set_last_server(tmp_path, "play.example.com:25566")

    assert (tmp_path / "options.txt").read_text() == \
        "version:3700\nlang:en_us\nlastServer:play.example.com:25566\n"
