"""
Peridot — Render Coordinator

One coordinator per open document view. It owns the view's worker channel,
paints results onto the view's surface and keeps the link table.

A render that fails because the document imports a package the worker has
not seen is recovered in place: every package named in the diagnostic is
resolved through the package cache, injected with ADD_PACKAGE, and the
render is retried. The whole loop runs under the view's lock, so at most one
render per view is in flight and a newer edit waits for the current one.

State transitions:
    IDLE -> RENDERING -> SUCCESS -> IDLE
                      -> MISSING_DEPENDENCY -> FETCHING -> RENDERING (retry)
                      -> TERMINAL_FAILURE -> IDLE
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Protocol

from peridot.channel import ChannelClosed, RenderWorkerChannel, SubprocessTransport, WorkerCommandError
from peridot.config import VaultSettings, settings
from peridot.diagnostics import find_missing_packages
from peridot.links import ORIGIN, LinkHitTester, Point
from peridot.packages import PackageCache
from peridot.surface import FrameBuffer, Surface, paint
from peridot.types import InvalidPackageSpec, LinkRect, PackageSpec, RenderRequest, RenderResult

logger = logging.getLogger(__name__)


class RenderState(str, Enum):
    IDLE = "idle"
    RENDERING = "rendering"
    SUCCESS = "success"
    MISSING_DEPENDENCY = "missing_dependency"
    FETCHING = "fetching"
    TERMINAL_FAILURE = "terminal_failure"


class RenderDiagnosticError(Exception):
    """
    The document could not be rendered.

    diagnostic is the compiler's text. unresolved lists package specs that
    were still reported missing after they had been injected. attempts is
    set when the retry limit was reached; diagnostic is then the last one seen.
    """

    def __init__(self, diagnostic: str, unresolved: tuple[str, ...] = (), attempts: int | None = None):
        message = diagnostic
        if unresolved:
            message = f"{diagnostic} (still missing after injection: {', '.join(unresolved)})"
        if attempts is not None:
            message = f"Gave up after {attempts} render attempts: {message}"
        super().__init__(message)
        self.diagnostic = diagnostic
        self.unresolved = tuple(unresolved)
        self.attempts = attempts


class PreambleProvider(Protocol):
    """Anything exposing the vault preamble; VaultSettings satisfies it."""

    preamble: str


class RenderCoordinator:
    def __init__(
        self,
        channel: RenderWorkerChannel,
        packages: PackageCache,
        settings_provider: PreambleProvider | Callable[[], PreambleProvider],
        vault_root: Path,
        surface: Surface,
        *,
        file_path: str = "",
        dpi: float = 1.0,
        max_attempts: int | None = None,
        render_timeout: float | None = None,
        init_timeout: float | None = None,
        debounce: float | None = None,
        on_link: Callable[[str], None] | None = None,
        on_state: Callable[[RenderState], None] | None = None,
    ):
        self._channel = channel
        self._packages = packages
        self._settings_provider = settings_provider
        self.vault_root = Path(vault_root)
        self._surface = surface
        self._file_path = file_path
        self._dpi = dpi
        self._max_attempts = max_attempts or settings.RENDER_MAX_ATTEMPTS
        self._render_timeout = settings.RENDER_TIMEOUT_SECONDS if render_timeout is None else render_timeout
        self._init_timeout = settings.WORKER_INIT_TIMEOUT_SECONDS if init_timeout is None else init_timeout
        self._debounce = settings.RENDER_DEBOUNCE_SECONDS if debounce is None else debounce
        self._on_link = on_link
        self._on_state = on_state

        self._lock = asyncio.Lock()
        self._hit_tester = LinkHitTester()
        self._state = RenderState.IDLE
        self._last_result: RenderResult | None = None
        self._last_error: Exception | None = None
        self._debounce_task: asyncio.Task | None = None
        # tasks currently inside render(), waiting on the lock or running
        self._active: set[asyncio.Task] = set()
        self._closed = False

    # -- view state --

    @property
    def state(self) -> RenderState:
        return self._state

    def _set_state(self, state: RenderState) -> None:
        if state is self._state:
            return
        logger.debug("coordinator: %r %s -> %s", self._file_path, self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            self._on_state(state)

    @property
    def file_path(self) -> str:
        return self._file_path

    @file_path.setter
    def file_path(self, value: str) -> None:
        self._file_path = value

    @property
    def device_pixel_ratio(self) -> float:
        return self._dpi

    def set_device_pixel_ratio(self, dpr: float) -> None:
        """Takes effect on the next render; the current link table keeps its own ratio."""
        if dpr <= 0:
            raise ValueError(f"Device pixel ratio must be positive, got {dpr}")
        self._dpi = dpr

    @property
    def links(self) -> tuple[LinkRect, ...]:
        return self._hit_tester.links

    @property
    def last_result(self) -> RenderResult | None:
        return self._last_result

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    # -- rendering --

    async def _preamble(self) -> str:
        provider = self._settings_provider
        if callable(provider):
            # providers may read the vault config from disk
            provider = await asyncio.to_thread(provider)
        return provider.preamble or ""

    async def _ensure_initialized(self) -> None:
        if not self._channel.ready:
            await self._channel.initialize(timeout=self._init_timeout or None)

    async def render(self, source: str) -> RenderResult:
        """
        Render source for this view, recovering missing packages.

        On failure the surface keeps its last frame and the link table is
        left as it was; the error is also kept in last_error.

        Raises:
            RenderDiagnosticError: the compiler rejected the document
            PackageNotFound / PackageFetchError: a missing package could not be resolved
            WorkerInitError / ChannelClosed: the worker is unavailable
        """
        if self._closed:
            raise ChannelClosed("View is closed")
        task = asyncio.current_task()
        self._active.add(task)
        try:
            async with self._lock:
                self._set_state(RenderState.RENDERING)
                try:
                    result = await self._render_locked(source)
                except asyncio.CancelledError:
                    self._set_state(RenderState.TERMINAL_FAILURE)
                    raise
                except Exception as e:
                    self._last_error = e
                    self._set_state(RenderState.TERMINAL_FAILURE)
                    logger.warning("coordinator: render of %r failed: %s", self._file_path, e)
                    raise
                else:
                    self._last_error = None
                    self._set_state(RenderState.SUCCESS)
                    return result
                finally:
                    self._set_state(RenderState.IDLE)
        finally:
            self._active.discard(task)

    async def _render_locked(self, source: str) -> RenderResult:
        await self._ensure_initialized()
        compile_input = f"{await self._preamble()}\n{source}"
        injected: set[str] = set()
        last_diagnostic = ""

        for attempt in range(1, self._max_attempts + 1):
            self._set_state(RenderState.RENDERING)
            dpi = self._dpi
            request = RenderRequest(source=compile_input, file_path=self._file_path, dpi=dpi)
            try:
                result = await self._channel.render(request, timeout=self._render_timeout or None)
            except WorkerCommandError as e:
                last_diagnostic = e.diagnostic
                missing = self._package_markers(e.diagnostic)
                if not missing:
                    raise RenderDiagnosticError(e.diagnostic) from e

                repeated = tuple(spec for spec in missing if spec in injected)
                if repeated:
                    raise RenderDiagnosticError(e.diagnostic, unresolved=repeated) from e

                self._set_state(RenderState.MISSING_DEPENDENCY)
                logger.info("coordinator: attempt %d missing %s", attempt, ", ".join(missing))
                await self._inject(missing)
                injected.update(missing)
                continue

            paint(self._surface, result)
            self._hit_tester.update(result.links, dpi)
            self._last_result = result
            if injected:
                logger.info("coordinator: rendered %r after injecting %d package(s)", self._file_path, len(injected))
            return result

        raise RenderDiagnosticError(last_diagnostic, attempts=self._max_attempts)

    @staticmethod
    def _package_markers(diagnostic: str) -> list[str]:
        """Canonical specs named by the diagnostic; markers that are plain file paths are skipped."""
        specs: list[str] = []
        for raw in find_missing_packages(diagnostic):
            try:
                spec = PackageSpec.parse(raw).canonical
            except InvalidPackageSpec:
                logger.debug("coordinator: %r is not a package spec", raw)
                continue
            if spec not in specs:
                specs.append(spec)
        return specs

    async def _inject(self, specs: list[str]) -> None:
        self._set_state(RenderState.FETCHING)
        for spec in specs:
            package = await self._packages.resolve(spec, self.vault_root)
            await self._channel.add_package(package, timeout=self._render_timeout or None)
            logger.info("coordinator: injected %s", package.spec)

    # -- scheduling --

    def schedule(self, source: str) -> asyncio.Task:
        """
        Debounced fire-and-forget render. A newer call replaces a pending one
        that has not started rendering yet; renders already started run to
        completion and queue the newer one behind them.
        """
        if self._closed:
            raise ChannelClosed("View is closed")
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        task = asyncio.create_task(self._debounced(source))
        self._debounce_task = task
        return task

    async def _debounced(self, source: str) -> None:
        if self._debounce > 0:
            await asyncio.sleep(self._debounce)
        # past this point schedule() no longer cancels us
        if self._debounce_task is asyncio.current_task():
            self._debounce_task = None
        try:
            await self.render(source)
        except Exception:
            # already logged and kept in last_error
            pass

    # -- links --

    def hit_test(self, event: Point, origin: Point = ORIGIN) -> LinkRect | None:
        return self._hit_tester.hit_test(event, origin)

    def activate(self, event: Point, origin: Point = ORIGIN) -> str | None:
        """Hit test a click and hand the link's url to on_link. Returns the url."""
        link = self.hit_test(event, origin)
        if link is None:
            return None
        if self._on_link is not None:
            self._on_link(link.url)
        return link.url

    # -- teardown --

    async def close(self) -> None:
        """Cancel pending and running renders (including fetches) and terminate the worker."""
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        tasks = [t for t in self._active if t is not current]
        if self._debounce_task is not None:
            tasks.append(self._debounce_task)
            self._debounce_task = None
        for task in tasks:
            task.cancel()
        # renders must observe their cancellation before terminate() settles
        # their pending futures with ChannelClosed
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._channel.terminate()
        logger.info("coordinator: closed view %r", self._file_path)


def open_view(
    vault_root: Path,
    file_path: str,
    *,
    compiler: str | None = None,
    dpi: float = 1.0,
    surface: Surface | None = None,
    packages: PackageCache | None = None,
    on_link: Callable[[str], None] | None = None,
) -> RenderCoordinator:
    """Wire a worker subprocess, its channel and a coordinator for one view."""
    vault_root = Path(vault_root)
    transport = SubprocessTransport(compiler=compiler or settings.WORKER_COMPILER or None)
    return RenderCoordinator(
        channel=RenderWorkerChannel(transport),
        packages=packages or PackageCache(),
        # loaded off the event loop on every render
        settings_provider=lambda: VaultSettings.load(vault_root),
        vault_root=vault_root,
        surface=surface or FrameBuffer(),
        file_path=file_path,
        dpi=dpi,
        on_link=on_link,
    )
