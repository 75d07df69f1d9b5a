"""
Peridot — Shared Types

Data classes passed between the coordinator, the worker channel, the
package cache and the worker host. These are the contracts that bind the
render pipeline together.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BYTES_PER_PIXEL = 4  # RGBA, 8 bits per channel

# namespace/name/version after separator normalization
_SPEC_PART = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InvalidPackageSpec(ValueError):
    """Package spec string does not have namespace, name and version."""

    pass


# ---------------------------------------------------------------------------
# Render data
# ---------------------------------------------------------------------------


@dataclass
class RenderRequest:
    """One compile request: the full compile input, the file it stands for, and the scale."""

    source: str
    file_path: str
    dpi: float


@dataclass(frozen=True)
class LinkRect:
    """An interactive region in device-pixel document space."""

    x: float
    y: float
    width: float
    height: float
    url: str

    def contains(self, px: float, py: float) -> bool:
        """Inclusive on all four edges."""
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height, "url": self.url}


@dataclass(frozen=True)
class RenderResult:
    """
    A rendered page.

    pixels is the raw RGBA buffer, row-major, width * height * 4 bytes.
    links keeps the order in which the document declares them.
    """

    width: int
    height: int
    pixels: bytes
    links: tuple[LinkRect, ...] = ()

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Negative frame size {self.width}x{self.height}")
        expected = self.width * self.height * BYTES_PER_PIXEL
        if len(self.pixels) != expected:
            raise ValueError(
                f"Pixel buffer is {len(self.pixels)} bytes, expected {expected} "
                f"for a {self.width}x{self.height} RGBA frame"
            )
        if not isinstance(self.links, tuple):
            object.__setattr__(self, "links", tuple(self.links))


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PackageSpec:
    """
    Identifies a versioned package.

    Accepts `@preview/example:0.1.0`, `preview/example:0.1.0` or
    `preview/example/0.1.0`. The canonical form `@preview/example:0.1.0`
    is both the cache key and the spec handed to the worker.
    """

    namespace: str
    name: str
    version: str

    @classmethod
    def parse(cls, raw: str) -> PackageSpec:
        text = raw.strip()
        if text.startswith("@"):
            text = text[1:]
        parts = text.replace(":", "/").split("/")
        if len(parts) != 3 or not all(_SPEC_PART.match(p) for p in parts):
            raise InvalidPackageSpec(f"Invalid package spec: {raw!r}")
        namespace, name, version = parts
        return cls(namespace=namespace, name=name, version=version)

    @property
    def canonical(self) -> str:
        return f"@{self.namespace}/{self.name}:{self.version}"

    @property
    def archive_name(self) -> str:
        return f"{self.name}-{self.version}.tar.gz"

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class PackageFile:
    """A file inside a package. path is POSIX and relative to the package root."""

    path: str
    data: bytes


@dataclass
class Package:
    """A resolved package: canonical spec plus its files, sorted by path."""

    spec: str
    files: list[PackageFile] = field(default_factory=list)

    def file_map(self) -> dict[str, bytes]:
        return {f.path: f.data for f in self.files}
