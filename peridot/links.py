"""
Link hit testing for a rendered page.

Link rectangles come back from the worker in device pixels. Pointer events
arrive in window coordinates, so they are shifted by the surface origin and
scaled by the device pixel ratio before the lookup. The ratio must be the
dpi the page was rendered at, or the rectangles will not line up.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from peridot.types import LinkRect

LINK_SCHEME = "peridot://"
NOTE_EXTENSION = ".typ"


@dataclass(frozen=True)
class Point:
    x: float
    y: float


ORIGIN = Point(0.0, 0.0)


class LinkHitTester:
    """Holds the link table of the most recent successful render."""

    def __init__(self) -> None:
        self._links: tuple[LinkRect, ...] = ()
        self._dpr = 1.0

    @property
    def links(self) -> tuple[LinkRect, ...]:
        return self._links

    @property
    def device_pixel_ratio(self) -> float:
        return self._dpr

    def update(self, links: Iterable[LinkRect], dpr: float) -> None:
        """Replace the whole table. Never merged with the previous one."""
        self._links = tuple(links)
        self._dpr = dpr

    def to_device(self, event: Point, origin: Point = ORIGIN) -> Point:
        return Point((event.x - origin.x) * self._dpr, (event.y - origin.y) * self._dpr)

    def hit_test(self, event: Point, origin: Point = ORIGIN) -> LinkRect | None:
        """First link in document order containing the event, or None."""
        point = self.to_device(event, origin)
        for link in self._links:
            if link.contains(point.x, point.y):
                return link
        return None


def note_file_for_link(url: str) -> str | None:
    """Map `peridot://<note>` to the note's file name; None for any other url."""
    if not url.startswith(LINK_SCHEME):
        return None
    name = url[len(LINK_SCHEME):]
    if not name:
        return None
    return f"{name}{NOTE_EXTENSION}"
