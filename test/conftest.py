from pathlib import Path
import hashlib
import json
import stat

import httpx
import pytest

from typing import Optional, Dict, List, Any


class FakeUpstream:
    """A fake set of upstream servers, each URL is given a sequence of responses, the
    last one being repeated, unknown URLs respond 404. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.requests: List[str] = []
        self.versions: List[dict] = []

    def add(self, url: str, content: Optional[bytes] = None, *,
        json_data: Any = None,
        status: int = 200,
        headers: Optional[dict] = None,
        error: Optional[type] = None
    ) -> None:
        if json_data is not None:
            content = json.dumps(json_data).encode()
        self.routes.setdefault(url, []).append((status, content or b"", headers or {}, error))

    def put(self, url: str, content: Optional[bytes] = None, **kwargs) -> None:
        self.routes.pop(url, None)
        self.add(url, content, **kwargs)

    def handle(self, request: httpx.Request) -> httpx.Response:

        url = str(request.url)
        self.requests.append(url)

        responses = self.routes.get(url)
        if not responses:
            return httpx.Response(404)

        status, content, headers, error = responses[0] if len(responses) == 1 else responses.pop(0)
        if error is not None:
            raise error("fake upstream error", request=request)

        return httpx.Response(status, content=content, headers=headers)

    def count(self, url: str) -> int:
        return self.requests.count(url)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def write_fake_java(root: Path, returncode: int = 0) -> Path:
    """Write a shell script standing for a Java executable under the given root.
    """
    exe = root / "bin" / "java"
    exe.parent.mkdir(parents=True, exist_ok=True)
    exe.write_text(f"#!/bin/sh\necho \"fake java $@\"\nexit {returncode}\n")
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return exe


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def tmp_context(tmp_path, upstream):
    """This fixture is used to create a game's install context in a temporary directory,
    all requests go to the fake upstream and retries are immediate.
    """

    from provisionmc.standard import Context
    return Context(tmp_path / "minecraft",
        os_name="linux",
        arch="x86_64",
        retry_backoff=0.0,
        resource_cooldown=0.0,
        http_client=upstream.client())


def add_vanilla_version(upstream: FakeUpstream, version_id: str = "1.21.1", *,
    java_version: int = 21,
    libraries: Optional[list] = None
) -> dict:
    """Serve a complete vanilla version from the fake upstream: manifest entry,
    descriptor, client JAR, libraries, assets index and asset objects.

    :return: The served data, keyed by what it is.
    """

    from provisionmc.standard import VERSION_MANIFEST_URL, RESOURCES_URL

    jar = f"client jar of {version_id}".encode()
    jar_url = f"https://piston-data.test/{version_id}/client.jar"
    upstream.add(jar_url, jar)

    def library(name: str, path: str, data: bytes, **extra) -> dict:
        url = f"https://libraries.test/{path}"
        upstream.add(url, data)
        return {"name": name, "downloads": {"artifact": {"path": path, "url": url, "sha1": sha1(data), "size": len(data)}}, **extra}

    assets = {
        "icons/icon_16x16.png": b"small icon",
        "icons/icon_32x32.png": b"big icon",
        "icons/icon_copy.png": b"small icon",
    }
    objects = {}
    for name, data in assets.items():
        objects[name] = {"hash": sha1(data), "size": len(data)}
        upstream.add(f"{RESOURCES_URL}{sha1(data)[:2]}/{sha1(data)}", data)

    assets_index = json.dumps({"objects": objects}).encode()
    assets_index_url = "https://piston-meta.test/indexes/17.json"
    upstream.add(assets_index_url, assets_index)

    descriptor = {
        "id": version_id,
        "type": "release",
        "time": "2024-08-08T12:24:45+00:00",
        "releaseTime": "2024-08-08T12:24:45+00:00",
        "mainClass": "net.minecraft.client.main.Main",
        "javaVersion": {"component": "java-runtime-delta", "majorVersion": java_version},
        "arguments": {
            "game": ["--username", "${auth_player_name}", "--version", "${version_name}"],
            "jvm": ["-cp", "${classpath}"],
        },
        "assetIndex": {"id": "17", "url": assets_index_url, "sha1": sha1(assets_index), "size": len(assets_index)},
        "assets": "17",
        "downloads": {"client": {"url": jar_url, "sha1": sha1(jar), "size": len(jar)}},
        "libraries": [
            library("com.mojang:brigadier:1.3.10", "com/mojang/brigadier/1.3.10/brigadier-1.3.10.jar", b"brigadier"),
            library("org.ow2.asm:asm:9.3", "org/ow2/asm/asm/9.3/asm-9.3.jar", b"asm 9.3"),
            library("com.example:no-linux:1.0", "com/example/no-linux/1.0/no-linux-1.0.jar", b"no linux", rules=[
                {"action": "allow"},
                {"action": "disallow", "os": {"name": "linux"}},
            ]),
            *(libraries or []),
        ],
    }

    descriptor_data = json.dumps(descriptor).encode()
    descriptor_url = f"https://piston-meta.test/v1/packages/{version_id}.json"
    upstream.add(descriptor_url, descriptor_data)

    upstream.versions.append({"id": version_id, "type": "release", "url": descriptor_url, "sha1": sha1(descriptor_data)})
    upstream.put(VERSION_MANIFEST_URL, json_data={
        "latest": {"release": version_id, "snapshot": version_id},
        "versions": upstream.versions,
    })

    return {
        "descriptor": descriptor,
        "descriptor_data": descriptor_data,
        "descriptor_url": descriptor_url,
        "jar": jar,
        "jar_url": jar_url,
        "assets_index": assets_index,
        "assets": assets,
    }
