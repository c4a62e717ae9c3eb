"""Shared fixtures: an in-memory HTTP session and a small published game version."""
import asyncio
import hashlib
import json
import threading

import pytest

from mclauncher.config import Paths
from mclauncher.download import ASSET_BASE_URL, ContentFetcher
from mclauncher.versions import CATALOG_URL, VersionResolver

BASE_URL = "https://files.test"


def sha1(data):
    return hashlib.sha1(data).hexdigest()


def _as_bytes(body):
    if isinstance(body, (dict, list)):
        return json.dumps(body).encode()
    if isinstance(body, str):
        return body.encode()
    return body


class _DummyContent:
    def __init__(self, body):
        self._body = body

    async def iter_chunked(self, size):
        for start in range(0, len(self._body), size):
            yield self._body[start:start + size]


class _DummyResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self._body = body
        self.content = _DummyContent(body)

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _StallingContent:
    def __init__(self, head):
        self._head = head

    async def iter_chunked(self, size):
        yield self._head
        await asyncio.sleep(3600)


class StallingResponse(_DummyResponse):
    """Sends ``head`` and then hangs, like a connection that stopped mid-body."""

    def __init__(self, head):
        super().__init__(200, head)
        self.content = _StallingContent(head)


async def wait_for_file(path, timeout=5.0):
    """Polls until ``path`` exists, then gives the writer a moment to reach its next await."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not path.exists() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)


class DummySession:
    """
    Stands in for ``aiohttp.ClientSession``.

    A route is a body (bytes, str or JSON-able), a ``(status, body)`` tuple,
    an exception to raise, a ready response object, or a list of those served one per request (the
    last one repeats). Unknown URLs answer 404.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.closed = False

    def add(self, url, body, status=200):
        self.routes[url] = (status, body)

    def get(self, url, **kwargs):
        self.requests.append(url)
        route = self.routes.get(url, (404, b"not found"))
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, Exception):
            raise route
        if isinstance(route, _DummyResponse):
            return route
        status, body = route if isinstance(route, tuple) else (200, route)
        return _DummyResponse(status, _as_bytes(body))

    def count(self, url=None):
        if url is None:
            return len(self.requests)
        return self.requests.count(url)

    async def close(self):
        self.closed = True


class RecordingSink:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def emit(self, event, payload):
        with self._lock:
            self.events.append((event, payload))

    def named(self, event):
        with self._lock:
            return [payload for name, payload in self.events if name == event]


class GameServer:
    """Publishes versions, libraries and assets on a ``DummySession``."""

    def __init__(self, session):
        self.session = session
        self.catalog = {"latest": {}, "versions": []}
        self.session.add(CATALOG_URL, self.catalog)

    def publish_file(self, path, data):
        url = f"{BASE_URL}/{path}"
        self.session.add(url, data)
        return {"url": url, "sha1": sha1(data), "size": len(data)}

    def publish_asset(self, data):
        digest = sha1(data)
        self.session.add(f"{ASSET_BASE_URL}/{digest[:2]}/{digest}", data)
        return {"hash": digest, "size": len(data)}

    def publish_version(self, version_id="1.20.1", assets=(b"sound-data", b"texture-data")):
        client = self.publish_file(f"{version_id}/client.jar", f"client {version_id}".encode())
        core_path = "com/example/core/1.0/core-1.0.jar"
        core = dict(self.publish_file(core_path, b"core library"), path=core_path)

        objects = {}
        for number, data in enumerate(assets):
            objects[f"minecraft/file{number}"] = self.publish_asset(data)
        if objects:
            # Two names sharing one object.
            objects["minecraft/alias"] = dict(objects["minecraft/file0"])
        index_bytes = json.dumps({"objects": objects}).encode()
        index = self.publish_file(f"indexes/{version_id}.json", index_bytes)

        descriptor = {
            "id": version_id,
            "type": "release",
            "releaseTime": "2023-06-12T13:25:51+00:00",
            "mainClass": "net.minecraft.client.main.Main",
            "downloads": {"client": client},
            "assetIndex": dict(index, id=version_id),
            "javaVersion": {"component": "java-runtime-gamma", "majorVersion": 17},
            "libraries": [
                {"name": "com.example:core:1.0", "downloads": {"artifact": core}},
                {
                    "name": "com.example:elsewhere:1.0",
                    "downloads": {"artifact": {"path": "com/example/elsewhere/1.0/elsewhere-1.0.jar",
                                               "url": f"{BASE_URL}/unpublished.jar", "sha1": "", "size": 1}},
                    "rules": [{"action": "allow", "os": {"name": "plan9"}}],
                },
            ],
            "arguments": {"game": ["--username", "${auth_player_name}"]},
        }
        body = json.dumps(descriptor, indent=2).encode()
        descriptor_url = f"{BASE_URL}/{version_id}.json"
        self.session.add(descriptor_url, body)
        self.catalog["versions"].append(
            {"id": version_id, "type": "release", "url": descriptor_url, "sha1": sha1(body)})
        return descriptor


@pytest.fixture
def session():
    return DummySession()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def paths(tmp_path):
    return Paths(tmp_path / ".minecraft")


@pytest.fixture
def fetcher(session, sink):
    return ContentFetcher(session, retry_delay=0, sink=sink)


@pytest.fixture
def versions(paths, fetcher, sink):
    return VersionResolver(paths, fetcher, sink)


@pytest.fixture
def game(session):
    return GameServer(session)
