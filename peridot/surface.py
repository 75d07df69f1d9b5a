"""Presentation surfaces the coordinator paints frames onto."""

from __future__ import annotations

from peridot.types import BYTES_PER_PIXEL, RenderResult


class FrameFormatError(ValueError):
    """Pixel buffer does not match the frame size."""

    pass


class Surface:
    """
    Abstract presentation surface.
    Implement over a GUI canvas, or use FrameBuffer headless and in tests.
    Pixels are RGBA, 8 bits per channel, row-major.
    """

    def resize(self, width: int, height: int) -> None:
        raise NotImplementedError

    def blit(self, pixels: bytes) -> None:
        raise NotImplementedError


class FrameBuffer(Surface):
    """In-memory RGBA surface."""

    def __init__(self) -> None:
        self.width = 0
        self.height = 0
        self.pixels = b""
        self.frames_painted = 0

    def resize(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def blit(self, pixels: bytes) -> None:
        if len(pixels) != self.width * self.height * BYTES_PER_PIXEL:
            raise FrameFormatError(f"{len(pixels)} bytes do not fill a {self.width}x{self.height} surface")
        self.pixels = bytes(pixels)
        self.frames_painted += 1

    def pixel(self, x: int, y: int) -> tuple[int, int, int, int]:
        offset = (y * self.width + x) * BYTES_PER_PIXEL
        r, g, b, a = self.pixels[offset:offset + BYTES_PER_PIXEL]
        return r, g, b, a


def paint(surface: Surface, result: RenderResult) -> None:
    """
    Resize the surface to exactly the frame size and copy the pixels verbatim.

    The buffer is checked before the surface is touched so a bad frame
    leaves the previous one on screen.
    """
    expected = result.width * result.height * BYTES_PER_PIXEL
    if len(result.pixels) != expected:
        raise FrameFormatError(f"Frame is {len(result.pixels)} bytes, expected {expected}")
    surface.resize(result.width, result.height)
    surface.blit(result.pixels)
