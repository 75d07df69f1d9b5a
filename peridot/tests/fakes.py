"""
Test doubles for both sides of the worker boundary and for the registry.

  ScriptedTransport  — records what the channel sends, replies on demand
  FakeCompiler       — a tiny compiler with the real missing-package contract
  Registry           — serves package archives through httpx.MockTransport
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import io
import re
import tarfile
from collections.abc import Callable
from typing import Any

import httpx

from peridot.channel import WorkerTransport
from peridot.protocol import READY
from peridot.types import LinkRect, Package, RenderRequest, RenderResult
from peridot.worker import CompileError, Compiler

REGISTRY_URL = "https://registry.test"
VAULT = "/vault"


# ============================================================================
# Worker side
# ============================================================================


class ScriptedTransport(WorkerTransport):
    """
    In-process transport whose worker is the test itself.

    Every message the channel sends lands in `sent`. A responder, when set,
    answers each message; otherwise the test calls reply() by hand.
    """

    def __init__(
        self,
        responder: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None,
        *,
        auto_ready: bool = True,
        fail_start: bool = False,
    ):
        self.sent: list[dict[str, Any]] = []
        self.responder = responder
        self.auto_ready = auto_ready
        self.fail_start = fail_start
        self.started = False
        self.close_calls = 0
        self._inbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def start(self) -> None:
        if self.fail_start:
            raise OSError("worker binary missing")
        self.started = True

    async def send(self, message: dict[str, Any]) -> None:
        self.sent.append(message)
        if self.auto_ready and message["type"] == "INIT":
            self.reply({"id": message["id"], "type": READY})
            return
        if self.responder is not None:
            answer = self.responder(message)
            if answer is not None:
                self.reply(answer)

    async def receive(self) -> dict[str, Any] | None:
        return await self._inbox.get()

    async def close(self) -> None:
        self.close_calls += 1
        self._inbox.put_nowait(None)

    def reply(self, message: dict[str, Any]) -> None:
        self._inbox.put_nowait(message)

    def eof(self) -> None:
        self._inbox.put_nowait(None)

    def sent_types(self) -> list[str]:
        return [m["type"] for m in self.sent]


IMPORT_PATTERN = re.compile(r'#import "(@[^"]+)"')
LINK_PATTERN = re.compile(r'#link\("([^"]+)"\)')
ERROR_PATTERN = re.compile(r'#error\("([^"]+)"\)')


class FakeCompiler(Compiler):
    """
    Understands three directives:
      #import "@ns/name:ver"  fails with `searched for <spec>` until the package is added
      #link("url")            emits a 100x40 link rectangle per occurrence
      #error("text")          fails with text verbatim

    Pages are 4x2 pixels scaled by dpi. Specs in `stubborn` stay missing
    even after they are added.
    """

    def __init__(self, stubborn: set[str] | None = None):
        self.packages: dict[str, Package] = {}
        self.stubborn = stubborn or set()
        self.requests: list[RenderRequest] = []

    def add_package(self, package: Package) -> None:
        self.packages[package.spec] = package

    def render(self, request: RenderRequest) -> RenderResult:
        self.requests.append(request)
        error = ERROR_PATTERN.search(request.source)
        if error:
            raise CompileError(error.group(1))

        missing = [
            spec for spec in IMPORT_PATTERN.findall(request.source)
            if spec not in self.packages or spec in self.stubborn
        ]
        if missing:
            raise CompileError("\n".join(f"error: file not found (searched for {spec})" for spec in missing))

        scale = request.dpi
        links = [
            LinkRect(x=20 * scale, y=(20 + 50 * i) * scale, width=100 * scale, height=40 * scale, url=url)
            for i, url in enumerate(LINK_PATTERN.findall(request.source))
        ]
        width, height = int(4 * scale), int(2 * scale)
        shade = len(request.source) % 256
        return RenderResult(width=width, height=height, pixels=bytes([shade, 0, 0, 255]) * (width * height), links=links)


def frame_reply(request_id: int, width: int = 2, height: int = 1, links: list[dict] | None = None, fill: int = 7) -> dict:
    """A RENDER success reply as the worker would send it."""
    pixels = bytes([fill, fill, fill, 255]) * (width * height)
    return {
        "id": request_id,
        "result": {
            "width": width,
            "height": height,
            "data": base64.b64encode(pixels).decode("ascii"),
            "links": links or [],
        },
    }


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0)


# ============================================================================
# Registry side
# ============================================================================


def make_tarball(
    files: dict[str, bytes],
    *,
    dirs: tuple[str, ...] = (),
    symlinks: dict[str, str] | None = None,
    raw_names: dict[str, bytes] | None = None,
) -> bytes:
    """Build a .tar.gz in memory. raw_names adds file entries without any path cleanup."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, data in {**files, **(raw_names or {})}.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
    return gzip.compress(buffer.getvalue())


EXAMPLE_FILES = {
    "typst.toml": b'[package]\nname = "example"\nversion = "0.1.0"\nentrypoint = "lib.typ"\n',
    "lib.typ": b"#let hello = [Hello]\n",
    "src/util.typ": b"#let double(x) = 2 * x\n",
}


class Registry:
    """Archives keyed by URL path, e.g. /preview/example-0.1.0.tar.gz."""

    def __init__(self) -> None:
        self.archives: dict[str, bytes] = {}
        self.statuses: dict[str, int] = {}
        self.requests: list[str] = []
        self.gate: asyncio.Event | None = None

    def publish(self, namespace: str, name: str, version: str, archive: bytes) -> None:
        self.archives[f"/{namespace}/{name}-{version}.tar.gz"] = archive

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if self.gate is not None:
            await self.gate.wait()
        path = request.url.path
        if path in self.statuses:
            return httpx.Response(self.statuses[path])
        if path not in self.archives:
            return httpx.Response(404)
        return httpx.Response(200, content=self.archives[path])
