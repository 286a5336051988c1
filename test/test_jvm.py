from pathlib import Path
import tarfile
import asyncio
import sys
import io

import pytest

from provisionmc.standard import Context, CollectWatcher
from provisionmc.result import ErrorKind
from provisionmc.jvm import RuntimeProvisioner, JvmNotFoundError, JvmLoadedEvent, JvmSmokeTestEvent, \
    ADOPTIUM_API_URL, required_java_version, get_archive_format, flatten_runtime_dir

from conftest import FakeUpstream, write_fake_java


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake runtime is a shell script")

ARCHIVE_NAME = "OpenJDK17U-jre_x64_linux_hotspot_17.0.11_9.tar.gz"
ARCHIVE_URL = f"https://github.test/adoptium/{ARCHIVE_NAME}"


def _make_tar(files: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, (data, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _add_feed(upstream: FakeUpstream, major_version: int, archive: bytes) -> None:
    feed_url = f"{ADOPTIUM_API_URL}assets/latest/{major_version}/hotspot?architecture=x64&image_type=jre&os=linux&vendor=eclipse"
    upstream.add(feed_url, json_data=[{
        "binary": {"package": {"link": ARCHIVE_URL, "name": ARCHIVE_NAME, "size": len(archive)}},
    }])
    upstream.add(ARCHIVE_URL, archive)


def test_required_java_version():

    assert required_java_version("1.8.9") == 8
    assert required_java_version("1.16.5") == 8
    assert required_java_version("1.17.1") == 17
    assert required_java_version("1.20.4") == 17
    assert required_java_version("1.20.5") == 21
    assert required_java_version("1.21.1") == 21
    assert required_java_version("24w14a") == 21
    assert required_java_version("1.16.5", {"javaVersion": {"component": "jre-legacy", "majorVersion": 16}}) == 16


def test_archive_format():
    assert get_archive_format("jre.tar.gz") == "tar"
    assert get_archive_format("jre.tgz") == "tar"
    assert get_archive_format("jre.zip") == "zip"
    assert get_archive_format("jre.msi") is None


def test_ensure_exact_installed(tmp_context: Context, upstream: FakeUpstream):

    write_fake_java(tmp_context.jvm_dir / "java-17")
    watcher = CollectWatcher()

    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(17, watcher=watcher))

    assert result.ok
    assert result.value.major_version == 17
    assert result.value.executable_path == tmp_context.jvm_dir / "java-17" / "bin" / "java"
    assert watcher.of_type(JvmLoadedEvent)[0].kind == JvmLoadedEvent.INSTALLED
    assert upstream.requests == []


def test_ensure_accepts_newer(tmp_context: Context, upstream: FakeUpstream):

    write_fake_java(tmp_context.jvm_dir / "java-8")
    write_fake_java(tmp_context.jvm_dir / "java-21")
    watcher = CollectWatcher()

    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(17, watcher=watcher))

    assert result.ok
    assert result.value.major_version == 21
    assert watcher.of_type(JvmLoadedEvent)[0].kind == JvmLoadedEvent.COMPATIBLE
    assert upstream.requests == []


@posix_only
def test_ensure_download_nested(tmp_context: Context, upstream: FakeUpstream):

    # An older runtime never satisfies a newer requirement.
    write_fake_java(tmp_context.jvm_dir / "java-8")

    _add_feed(upstream, 17, _make_tar({
        "jdk-17.0.11+9-jre/bin/java": (b"#!/bin/sh\necho 'openjdk version \"17.0.11\"'\n", 0o755),
        "jdk-17.0.11+9-jre/release": (b"JAVA_VERSION=\"17.0.11\"\n", 0o644),
    }))

    watcher = CollectWatcher()
    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(17, watcher=watcher))

    assert result.ok, result
    root = tmp_context.jvm_dir / "java-17"
    assert result.value.root_path == root
    assert result.value.executable_path == root / "bin" / "java"
    assert (root / "release").is_file()
    assert not (tmp_context.jvm_dir / "temp" / ARCHIVE_NAME).exists()

    assert watcher.of_type(JvmLoadedEvent)[0].kind == JvmLoadedEvent.DOWNLOADED
    smoke_test = watcher.of_type(JvmSmokeTestEvent)[0]
    assert smoke_test.ok
    assert "17.0.11" in smoke_test.output

    # Now installed, nothing else is fetched.
    upstream.requests.clear()
    assert asyncio.run(RuntimeProvisioner(tmp_context).ensure(17)).ok
    assert upstream.requests == []


def test_ensure_executable_not_found(tmp_context: Context, upstream: FakeUpstream):

    _add_feed(upstream, 17, _make_tar({
        "jdk-17.0.11+9-jre/README": (b"nothing here", 0o644),
    }))

    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(17))

    assert not result.ok
    assert result.kind == ErrorKind.FATAL_STRUCTURAL
    assert isinstance(result.error, JvmNotFoundError)
    assert result.error.code == JvmNotFoundError.EXECUTABLE_NOT_FOUND
    assert upstream.count(ARCHIVE_URL) == 1


def test_ensure_unsupported_os(tmp_path: Path, upstream: FakeUpstream):

    context = Context(tmp_path, os_name="solaris", arch="x86_64", http_client=upstream.client())
    result = asyncio.run(RuntimeProvisioner(context).ensure(17))

    assert not result.ok
    assert result.kind == ErrorKind.NOT_FOUND
    assert result.error.code == JvmNotFoundError.UNSUPPORTED_OS
    assert upstream.requests == []


def test_ensure_no_release(tmp_context: Context, upstream: FakeUpstream):

    upstream.add(f"{ADOPTIUM_API_URL}assets/latest/99/hotspot?architecture=x64&image_type=jre&os=linux&vendor=eclipse", json_data=[])
    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(99))

    assert not result.ok
    assert result.error.code == JvmNotFoundError.UNSUPPORTED_VERSION


def test_find_executable_depth(tmp_context: Context):

    root = tmp_context.jvm_dir / "java-21"
    write_fake_java(root / "a" / "b" / "c")

    assert RuntimeProvisioner(tmp_context).find_executable(root) == root / "a" / "b" / "c" / "bin" / "java"
    assert RuntimeProvisioner(tmp_context, search_depth=2).find_executable(root) is None


def test_flatten_runtime_dir(tmp_path: Path):

    root = tmp_path / "java-21"
    (root / "jdk-21" / "bin").mkdir(parents=True)
    (root / "jdk-21" / "bin" / "java").write_bytes(b"")

    assert flatten_runtime_dir(root)
    assert (root / "bin" / "java").is_file()
    assert not (root / "jdk-21").exists()

    # Already flat, or ambiguous roots are kept as is.
    assert not flatten_runtime_dir(root)
    (root / "other" / "bin").mkdir(parents=True)
    (root / "another" / "bin").mkdir(parents=True)
    assert not flatten_runtime_dir(root)


@posix_only
def test_smoke_test_failure(tmp_context: Context):

    exe = write_fake_java(tmp_context.jvm_dir / "java-21", returncode=1)
    provisioner = RuntimeProvisioner(tmp_context)
    installation = provisioner.find_installed(21)
    assert installation is not None and installation.executable_path == exe

    watcher = CollectWatcher()
    assert not asyncio.run(provisioner.smoke_test(installation, watcher))

    event = watcher.of_type(JvmSmokeTestEvent)[0]
    assert not event.ok
    assert "fake java -version" in event.output


def test_ensure_filesystem_error(tmp_context: Context, upstream: FakeUpstream):

    _add_feed(upstream, 17, _make_tar({
        "jdk-17.0.11+9-jre/bin/java": (b"#!/bin/sh\n", 0o755),
    }))

    # A regular file where the runtime directory should be extracted.
    tmp_context.jvm_dir.mkdir(parents=True)
    (tmp_context.jvm_dir / "java-17").write_bytes(b"")

    result = asyncio.run(RuntimeProvisioner(tmp_context).ensure(17))

    assert not result.ok
    assert result.kind == ErrorKind.FATAL_STRUCTURAL
    assert isinstance(result.error, OSError)
    assert not (tmp_context.jvm_dir / "temp" / ARCHIVE_NAME).exists()
