"""
Peridot — the render pipeline for a vault of markup notes.

Four components:
  channel      — request/response multiplexing to an isolated render worker
  packages     — vault-local package cache backed by the remote registry
  links        — pointer hit testing against rendered link rectangles
  coordinator  — per-view single-flight renders with missing-package recovery

The worker side lives in peridot.worker; the CLI in peridot.main.
"""

__version__ = "0.1.0"

from peridot.channel import (
    ChannelClosed,
    LoopbackTransport,
    RenderWorkerChannel,
    SubprocessTransport,
    WorkerCommandError,
    WorkerInitError,
)
from peridot.coordinator import RenderCoordinator, RenderDiagnosticError, RenderState, open_view
from peridot.links import LinkHitTester, Point
from peridot.packages import PackageCache, PackageFetchError, PackageNotFound
from peridot.types import InvalidPackageSpec, LinkRect, Package, PackageSpec, RenderRequest, RenderResult

__all__ = [
    "RenderWorkerChannel",
    "SubprocessTransport",
    "LoopbackTransport",
    "ChannelClosed",
    "WorkerInitError",
    "WorkerCommandError",
    "PackageCache",
    "PackageNotFound",
    "PackageFetchError",
    "LinkHitTester",
    "Point",
    "RenderCoordinator",
    "RenderDiagnosticError",
    "RenderState",
    "open_view",
    "InvalidPackageSpec",
    "LinkRect",
    "Package",
    "PackageSpec",
    "RenderRequest",
    "RenderResult",
]
