from pathlib import Path
import zipfile
import asyncio
import json
import stat
import sys

import pytest

from provisionmc.standard import Context, CollectWatcher
from provisionmc.result import ErrorKind
from provisionmc.fabric import FABRIC_API, QUILT_API, LoaderProfileComposer, LoaderResolveEvent, \
    LoaderJarSynthesizedEvent, parse_loader_version, loader_profile_id, fill_library_artifacts, \
    merge_libraries, normalize_arguments, compose_profile, synthesize_loader_jar, is_excluded_base_library

from conftest import FakeUpstream


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake installer is a shell script")

PROFILE_URL = f"{FABRIC_API.api_url}versions/loader/1.21.1/0.15.9/profile/json"
LOADERS_URL = f"{FABRIC_API.api_url}versions/loader/1.21.1"
INSTALLERS_URL = f"{FABRIC_API.api_url}versions/installer"
INSTALLER_JAR_URL = "https://maven.test/net/fabricmc/fabric-installer/1.0.1/fabric-installer-1.0.1.jar"


def _base_descriptor() -> dict:
    return {
        "id": "1.21.1",
        "type": "release",
        "time": "2024-08-08T12:24:45+00:00",
        "releaseTime": "2024-08-08T12:24:45+00:00",
        "mainClass": "net.minecraft.client.main.Main",
        "assetIndex": {"id": "17", "url": "https://piston-meta.test/indexes/17.json"},
        "assets": "17",
        "downloads": {"client": {"url": "https://piston-data.test/client.jar", "size": 10}},
        "arguments": {"game": ["--username", "${auth_player_name}"], "jvm": ["-cp", "${classpath}"]},
        "libraries": [
            {"name": "com.mojang:brigadier:1.3.10"},
            {"name": "org.ow2.asm:asm:9.3"},
            {"name": "net.fabricmc:intermediary:1.21.0"},
        ],
    }


def _loader_profile(loader_version: str = "0.15.9") -> dict:
    return {
        "id": f"fabric-loader-{loader_version}-1.21.1",
        "inheritsFrom": "1.21.1",
        "type": "release",
        "mainClass": "net.fabricmc.loader.impl.launch.knot.KnotClient",
        "arguments": {"game": [], "jvm": ["-DFabricMcEmu= net.minecraft.client.main.Main "]},
        "libraries": [
            {"name": "org.ow2.asm:asm:9.6", "url": "https://maven.fabricmc.net/"},
            {"name": "net.fabricmc:intermediary:1.21.1", "url": "https://maven.fabricmc.net/"},
            {"name": f"net.fabricmc:fabric-loader:{loader_version}", "url": "https://maven.fabricmc.net/"},
        ],
    }


def _install_base(context: Context) -> None:
    handle = context.get_version("1.21.1")
    handle.metadata = _base_descriptor()
    handle.write_metadata_file()
    handle.jar_file().write_bytes(b"client jar")


def _write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def test_loader_version():

    assert parse_loader_version("0.15.9") == "0.15.9"
    assert parse_loader_version("fabric-loader-0.15.9-1.21.1") == "0.15.9"
    assert parse_loader_version("fabric-loader-0.15.9-1.21.1", base="1.21.1") == "0.15.9"
    assert parse_loader_version("fabric-loader-0.16.0-24w14a", base="24w14a") == "0.16.0"
    assert parse_loader_version("quilt-loader-0.26.3-1.21.1", "quilt-loader") == "0.26.3"

    assert loader_profile_id("0.15.9", "1.21.1") == "fabric-loader-0.15.9-1.21.1"
    assert loader_profile_id("fabric-loader-0.15.9-1.21.1", "1.21.1") == "fabric-loader-0.15.9-1.21.1"
    assert loader_profile_id("0.26.3", "1.21.1", "quilt-loader") == "quilt-loader-0.26.3-1.21.1"


def test_fill_library_artifacts():

    metadata = {"libraries": [
        {"name": "net.fabricmc:fabric-loader:0.15.9", "url": "https://maven.fabricmc.net"},
        {"name": "org.ow2.asm:asm:9.6"},
        {"name": "com.example:done:1.0", "downloads": {"artifact": {"url": "https://libraries.test/done.jar"}}},
    ]}

    assert fill_library_artifacts(metadata, "https://maven.test/")

    libraries = metadata["libraries"]
    assert libraries[0]["downloads"]["artifact"] == {
        "path": "net/fabricmc/fabric-loader/0.15.9/fabric-loader-0.15.9.jar",
        "url": "https://maven.fabricmc.net/net/fabricmc/fabric-loader/0.15.9/fabric-loader-0.15.9.jar",
    }
    assert libraries[1]["downloads"]["artifact"]["url"] == "https://maven.test/org/ow2/asm/asm/9.6/asm-9.6.jar"
    assert libraries[2]["downloads"]["artifact"] == {"url": "https://libraries.test/done.jar"}

    assert not fill_library_artifacts(metadata)


def test_excluded_base_libraries():
    assert is_excluded_base_library("org.ow2.asm:asm:9.3")
    assert is_excluded_base_library("org.ow2.asm:asm-tree:9.3")
    assert not is_excluded_base_library("org.ow2.asmx:asm:9.3")
    assert not is_excluded_base_library("com.mojang:brigadier:1.3.10")


def test_merge_libraries():

    composed = [
        {"name": "net.fabricmc:intermediary:1.21.1", "url": "https://maven.fabricmc.net/"},
        {"name": "net.fabricmc:fabric-loader:0.15.9"},
    ]
    base = [
        {"name": "com.mojang:brigadier:1.3.10"},
        {"name": "org.ow2.asm:asm:9.3"},
        {"name": "org.ow2.asm:asm-commons:9.3"},
        {"name": "net.fabricmc:intermediary:1.21.0"},
        {"name": "org.lwjgl:lwjgl:3.3.3"},
        {"name": "org.lwjgl:lwjgl:3.3.3:natives-linux"},
    ]

    merged, added = merge_libraries(composed, base)

    assert added == 3
    assert [library["name"] for library in merged] == [
        "com.mojang:brigadier:1.3.10",
        "org.lwjgl:lwjgl:3.3.3",
        "org.lwjgl:lwjgl:3.3.3:natives-linux",
        "net.fabricmc:intermediary:1.21.1",
        "net.fabricmc:fabric-loader:0.15.9",
    ]


def test_merge_libraries_keeps_ruled_duplicates():

    # Some base versions declare the same library twice, one version per OS.
    base = [
        {"name": "org.lwjgl:lwjgl:3.2.2", "rules": [{"action": "allow"}, {"action": "disallow", "os": {"name": "osx"}}]},
        {"name": "org.lwjgl:lwjgl:3.2.1", "rules": [{"action": "allow", "os": {"name": "osx"}}]},
    ]
    composed = [{"name": "net.fabricmc:fabric-loader:0.15.9"}]

    merged, added = merge_libraries(composed, base)

    assert added == 2
    assert [library["name"] for library in merged] == [
        "org.lwjgl:lwjgl:3.2.2",
        "org.lwjgl:lwjgl:3.2.1",
        "net.fabricmc:fabric-loader:0.15.9",
    ]

    # Merging into the result again adds nothing.
    merged_again, added = merge_libraries(merged, base)
    assert added == 0
    assert merged_again == merged


def test_normalize_arguments():

    assert normalize_arguments([
        "--username", "${auth_playerName}",
        "--session", "${auth_sessionId}",
        "--username", "${auth_player_name}",
        "--uuid", "${auth_uuid}",
        {"rules": [], "value": "--demo"},
        "--uuid", "${auth_uuid}",
    ]) == [
        "--username", "${auth_player_name}",
        "--session", "${auth_session}",
        "--uuid", "${auth_uuid}",
        {"rules": [], "value": "--demo"},
    ]

    assert normalize_arguments(["-cp", "${classpath}"]) == ["-cp", "${classpath}"]


def test_compose_profile():

    composed = _loader_profile()
    composed["assetIndex"] = {"id": "24", "url": "https://third-party.test/24.json"}
    composed["arguments"]["game"] = ["--accessToken", "${auth_accessToken}", "--accessToken", "${auth_access_token}"]
    base = _base_descriptor()

    assert compose_profile(composed, base, "1.21.1")

    assert composed["inheritsFrom"] == "1.21.1"
    assert composed["downloads"]["client"] == base["downloads"]["client"]
    assert composed["assetIndex"] == base["assetIndex"]
    assert composed["assets"] == "17"
    assert composed["mainClass"] == "net.fabricmc.loader.impl.launch.knot.KnotClient"
    assert composed["time"] == base["time"]
    assert composed["arguments"]["game"] == ["--accessToken", "${auth_access_token}"]

    names = [library["name"] for library in composed["libraries"]]
    assert names.count("net.fabricmc:intermediary:1.21.1") == 1
    assert "net.fabricmc:intermediary:1.21.0" not in names
    assert "org.ow2.asm:asm:9.3" not in names
    assert names[0] == "com.mojang:brigadier:1.3.10"

    # Composing again changes nothing.
    assert not compose_profile(composed, base, "1.21.1")


def test_compose_profile_keeps_real_asset_index():

    composed = _loader_profile()
    composed["assetIndex"] = {"id": "16", "url": "https://piston-meta.test/indexes/16.json"}
    composed["mainClass"] = ""

    compose_profile(composed, _base_descriptor(), "1.21.1", main_class="org.quiltmc.loader.impl.launch.knot.KnotClient")

    assert composed["assetIndex"]["id"] == "16"
    assert "assets" not in composed
    assert composed["mainClass"] == "org.quiltmc.loader.impl.launch.knot.KnotClient"


def test_synthesize_loader_jar(tmp_path: Path):

    jar_file = tmp_path / "fabric-loader-0.15.9-1.21.1" / "fabric-loader-0.15.9-1.21.1.jar"
    synthesize_loader_jar(jar_file, "0.15.9", "1.21.1")

    with zipfile.ZipFile(jar_file) as jar_fp:
        assert sorted(jar_fp.namelist()) == ["META-INF/MANIFEST.MF", "fabric.mod.json"]
        manifest = jar_fp.read("META-INF/MANIFEST.MF").decode()
        mod = json.loads(jar_fp.read("fabric.mod.json"))

    assert manifest.startswith("Manifest-Version: 1.0\r\n")
    assert f"Main-Class: {FABRIC_API.main_class}\r\n" in manifest
    assert manifest.endswith("\r\n\r\n")
    assert mod["id"] == "fabric-loader-0.15.9-1.21.1"
    assert mod["depends"]["minecraft"] == "1.21.1"


def test_install_from_meta(tmp_context: Context, upstream: FakeUpstream):

    _install_base(tmp_context)
    upstream.add(PROFILE_URL, json_data=_loader_profile())
    watcher = CollectWatcher()

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.15.9", watcher=watcher))

    assert result.ok, result
    assert result.value == "fabric-loader-0.15.9-1.21.1"

    handle = tmp_context.get_version(result.value)
    assert handle.read_metadata_file()
    assert handle.metadata["id"] == "fabric-loader-0.15.9-1.21.1"
    assert handle.metadata["inheritsFrom"] == "1.21.1"
    assert handle.metadata["downloads"]["client"]["url"] == "https://piston-data.test/client.jar"
    loader_library = handle.metadata["libraries"][-1]
    assert loader_library["name"] == "net.fabricmc:fabric-loader:0.15.9"
    assert loader_library["downloads"]["artifact"]["url"] == \
        "https://maven.fabricmc.net/net/fabricmc/fabric-loader/0.15.9/fabric-loader-0.15.9.jar"

    assert zipfile.is_zipfile(handle.jar_file())
    assert len(watcher.of_type(LoaderJarSynthesizedEvent)) == 1
    assert watcher.of_type(LoaderResolveEvent)[-1].loader_version == "0.15.9"

    # Installed, even given as a composed id, nothing is fetched again.
    upstream.requests.clear()
    watcher = CollectWatcher()
    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "fabric-loader-0.15.9-1.21.1", watcher=watcher))

    assert result.ok
    assert upstream.requests == []
    assert watcher.of_type(LoaderJarSynthesizedEvent) == []


def test_install_latest(tmp_context: Context, upstream: FakeUpstream):

    _install_base(tmp_context)
    upstream.add(LOADERS_URL, json_data=[
        {"loader": {"version": "0.16.0-beta.1", "stable": False}},
        {"loader": {"version": "0.15.9", "stable": True}},
        {"loader": {"version": "0.15.8", "stable": True}},
    ])
    upstream.add(PROFILE_URL, json_data=_loader_profile())

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "latest"))

    assert result.ok, result
    assert result.value == "fabric-loader-0.15.9-1.21.1"


def test_install_latest_not_found(tmp_context: Context, upstream: FakeUpstream):

    _install_base(tmp_context)
    upstream.add(LOADERS_URL, json_data=[])

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "latest"))

    assert not result.ok
    assert result.kind == ErrorKind.NOT_FOUND


def test_install_unknown_loader(tmp_context: Context, upstream: FakeUpstream):

    _install_base(tmp_context)

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.0.1"))

    assert not result.ok
    assert result.kind == ErrorKind.NOT_FOUND
    assert "fabric-loader-0.0.1-1.21.1" in result.message


def test_install_base_missing(tmp_context: Context, upstream: FakeUpstream):

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.15.9"))

    assert not result.ok
    assert result.kind == ErrorKind.NOT_FOUND
    assert upstream.requests == []


def test_install_restarts_broken_profile(tmp_context: Context, upstream: FakeUpstream):

    _install_base(tmp_context)
    upstream.add(PROFILE_URL, json_data=_loader_profile())

    # A previous install left an empty JAR and a stale descriptor.
    handle = tmp_context.get_version("fabric-loader-0.15.9-1.21.1")
    handle.metadata = {"id": handle.id, "stale": True}
    handle.write_metadata_file()
    handle.jar_file().write_bytes(b"")

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.15.9"))

    assert result.ok
    assert handle.read_metadata_file()
    assert "stale" not in handle.metadata
    assert upstream.count(PROFILE_URL) == 1


@posix_only
def test_install_with_installer(tmp_context: Context, upstream: FakeUpstream, tmp_path: Path):

    _install_base(tmp_context)
    upstream.add(INSTALLERS_URL, json_data=[
        {"url": INSTALLER_JAR_URL, "maven": "net.fabricmc:fabric-installer:1.0.1", "version": "1.0.1", "stable": True},
    ])
    upstream.add(INSTALLER_JAR_URL, b"installer jar")

    # Arguments: -jar <file> client -mcversion <base> -loader <loader> -dir <dir> -noprofile
    java = _write_script(tmp_path / "java" / "bin" / "java", "\n".join([
        'id="fabric-loader-$7-$5"',
        'mkdir -p "$9/versions/$id"',
        'echo "{\\"id\\": \\"$id\\", \\"inheritsFrom\\": \\"$5\\", \\"libraries\\": [{\\"name\\": \\"net.fabricmc:fabric-loader:$7\\"}]}" > "$9/versions/$id/$id.json"',
        ': > "$9/versions/$id/$id.jar"',
        'echo "installed $id"',
    ]))

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.15.9", java_executable=java))

    assert result.ok, result
    assert upstream.count(INSTALLER_JAR_URL) == 1
    assert upstream.count(PROFILE_URL) == 0

    handle = tmp_context.get_version("fabric-loader-0.15.9-1.21.1")
    assert handle.read_metadata_file()
    assert handle.metadata["mainClass"] == FABRIC_API.main_class
    assert handle.metadata["libraries"][-1]["downloads"]["artifact"]["url"] == \
        "https://maven.fabricmc.net/net/fabricmc/fabric-loader/0.15.9/fabric-loader-0.15.9.jar"
    assert zipfile.is_zipfile(handle.jar_file())


@posix_only
def test_install_installer_failure(tmp_context: Context, upstream: FakeUpstream, tmp_path: Path):

    _install_base(tmp_context)
    upstream.add(INSTALLERS_URL, json_data=[{"url": INSTALLER_JAR_URL, "stable": True}])
    upstream.add(INSTALLER_JAR_URL, b"installer jar")

    java = _write_script(tmp_path / "java" / "bin" / "java", 'echo "boom: unsupported version" >&2\nexit 3')

    result = asyncio.run(LoaderProfileComposer(tmp_context).install("1.21.1", "0.15.9", java_executable=java))

    assert not result.ok
    assert result.kind == ErrorKind.INSTALLER_FAILED
    assert result.error.returncode == 3
    assert "boom: unsupported version" in result.message


def test_installer_args(tmp_path: Path):

    installer = tmp_path / "installer.jar"

    assert FABRIC_API.installer_args(installer, "1.21.1", "0.15.9", tmp_path) == [
        "-jar", str(installer), "client", "-mcversion", "1.21.1", "-loader", "0.15.9",
        "-dir", str(tmp_path), "-noprofile",
    ]
    assert QUILT_API.installer_args(installer, "1.21.1", "0.26.3", tmp_path) == [
        "-jar", str(installer), "install", "client", "1.21.1", "0.26.3",
        f"--install-dir={tmp_path}", "--no-profile",
    ]


def test_installer_url_default(tmp_context: Context, upstream: FakeUpstream):

    async def installer_url(api) -> str:
        return await api.request_installer_url(tmp_context, tmp_context.http_client)

    assert asyncio.run(installer_url(FABRIC_API)) == FABRIC_API.installer_url

    upstream.add(f"{QUILT_API.api_url}versions/installer", json_data=[])
    with pytest.raises(Exception) as error:
        asyncio.run(installer_url(QUILT_API))
    assert getattr(error.value, "kind", None) == ErrorKind.NOT_FOUND
