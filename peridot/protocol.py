"""
Worker wire protocol.

One JSON object per line over the transport. Every message carries the
numeric `id` that the client assigned; the worker echoes it back. Binary
payloads (frame pixels, package file contents) travel as base64 strings.

Client -> worker:
    {"id": 1, "type": "INIT"}
    {"id": 2, "type": "RENDER", "source": "...", "filePath": "...", "dpi": 2.0}
    {"id": 3, "type": "ADD_PACKAGE", "package": {"spec": "...", "files": [{"path": "...", "bytes": "<b64>"}]}}

Worker -> client:
    {"id": 1, "type": "READY"}
    {"id": 2, "result": {"width": 10, "height": 5, "data": "<b64>", "links": [...]}}
    {"id": 2, "error": "diagnostic text"}
    {"id": 3}
"""

from __future__ import annotations

import base64
import binascii
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from peridot.types import LinkRect, Package, PackageFile, RenderRequest, RenderResult


class ProtocolError(Exception):
    """A message on the worker transport could not be decoded or validated."""

    pass


class Command(str, Enum):
    INIT = "INIT"
    RENDER = "RENDER"
    ADD_PACKAGE = "ADD_PACKAGE"


READY = "READY"


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class WireLink(BaseModel):
    x: float
    y: float
    width: float
    height: float
    url: str


class WireRenderResult(BaseModel):
    width: int = Field(ge=0)
    height: int = Field(ge=0)
    data: str
    links: list[WireLink] = Field(default_factory=list)


class WireFile(BaseModel):
    path: str
    content: str = Field(alias="bytes")


class WirePackage(BaseModel):
    spec: str
    files: list[WireFile] = Field(default_factory=list)


class WireRender(BaseModel):
    source: str
    file_path: str = Field(alias="filePath")
    dpi: float = Field(gt=0)


class WorkerReply(BaseModel):
    """What the worker sends back for any command."""

    id: int
    type: str | None = None
    result: Any = None
    error: Any = None


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize one message as a newline-terminated UTF-8 JSON line."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode("utf-8") + b"\n"


def decode_message(line: bytes | str) -> dict[str, Any]:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        decoded = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed worker message: {line[:200]!r}") from e
    if not isinstance(decoded, dict):
        raise ProtocolError(f"Worker message is not an object: {line[:200]!r}")
    return decoded


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Invalid base64 payload: {e}") from e


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def render_payload(request: RenderRequest) -> dict[str, Any]:
    return {"source": request.source, "filePath": request.file_path, "dpi": request.dpi}


def package_payload(package: Package) -> dict[str, Any]:
    return {
        "package": {
            "spec": package.spec,
            "files": [{"path": f.path, "bytes": b64encode(f.data)} for f in package.files],
        }
    }


def parse_render_command(message: dict[str, Any]) -> RenderRequest:
    try:
        wire = WireRender.model_validate(message)
    except ValidationError as e:
        raise ProtocolError(f"Invalid RENDER command: {e}") from e
    return RenderRequest(source=wire.source, file_path=wire.file_path, dpi=wire.dpi)


def parse_package_command(message: dict[str, Any]) -> Package:
    try:
        wire = WirePackage.model_validate(message.get("package"))
    except ValidationError as e:
        raise ProtocolError(f"Invalid ADD_PACKAGE command: {e}") from e
    files = [PackageFile(path=f.path, data=b64decode(f.content)) for f in wire.files]
    return Package(spec=wire.spec, files=files)


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


def parse_reply(message: dict[str, Any]) -> WorkerReply:
    try:
        return WorkerReply.model_validate(message)
    except ValidationError as e:
        raise ProtocolError(f"Invalid worker reply: {e}") from e


def render_result_to_wire(result: RenderResult) -> dict[str, Any]:
    return {
        "width": result.width,
        "height": result.height,
        "data": b64encode(result.pixels),
        "links": [link.to_dict() for link in result.links],
    }


def parse_render_result(payload: Any) -> RenderResult:
    """Validate a RENDER result and decode its frame. Size mismatches raise ProtocolError."""
    try:
        wire = WireRenderResult.model_validate(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid RENDER result: {e}") from e
    links = tuple(LinkRect(x=w.x, y=w.y, width=w.width, height=w.height, url=w.url) for w in wire.links)
    try:
        return RenderResult(width=wire.width, height=wire.height, pixels=b64decode(wire.data), links=links)
    except ValueError as e:
        raise ProtocolError(str(e)) from e
