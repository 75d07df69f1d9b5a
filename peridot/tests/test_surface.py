"""Frame painting tests."""

import pytest

from peridot.surface import FrameBuffer, FrameFormatError, paint
from peridot.types import RenderResult


def test_paint_resizes_to_frame_and_copies_pixels():
    surface = FrameBuffer()
    pixels = bytes(range(24))

    paint(surface, RenderResult(width=3, height=2, pixels=pixels))

    assert (surface.width, surface.height) == (3, 2)
    assert surface.pixels == pixels
    assert surface.pixel(2, 1) == (20, 21, 22, 23)
    assert surface.frames_painted == 1


def test_blit_checks_length():
    surface = FrameBuffer()
    surface.resize(2, 2)
    with pytest.raises(FrameFormatError):
        surface.blit(bytes(15))
    assert surface.frames_painted == 0


def test_bad_frame_leaves_surface_untouched():
    """A result whose buffer no longer matches its size is refused before resizing."""
    surface = FrameBuffer()
    paint(surface, RenderResult(width=1, height=1, pixels=b"\x01\x02\x03\x04"))

    bad = RenderResult(width=1, height=1, pixels=b"\x00" * 4)
    object.__setattr__(bad, "width", 2)
    with pytest.raises(FrameFormatError):
        paint(surface, bad)

    assert (surface.width, surface.height) == (1, 1)
    assert surface.pixels == b"\x01\x02\x03\x04"
