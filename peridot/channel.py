"""
Request/response channel to an isolated render worker.

The worker lives on the far side of a WorkerTransport (a child process in
production, an in-process task in tests). The channel assigns monotonic
request ids, keeps a table of pending completions keyed by id, and settles
each one exactly once: with the worker's reply, with the worker's error, or
with ChannelClosed when the channel is torn down.

Replies may arrive in any order.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Protocol

from peridot.protocol import (
    READY,
    Command,
    ProtocolError,
    WorkerReply,
    decode_message,
    encode_message,
    package_payload,
    parse_reply,
    parse_render_result,
    render_payload,
)
from peridot.types import Package, RenderRequest, RenderResult

logger = logging.getLogger(__name__)

# A frame for a full page at 2x is several MB of base64 on a single line
_STREAM_LIMIT = 256 * 1024 * 1024
_TERMINATE_GRACE_SECONDS = 5.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ChannelClosed(Exception):
    """The worker channel was torn down while requests were outstanding."""

    pass


class WorkerInitError(Exception):
    """The worker never reported READY."""

    pass


class WorkerCommandError(Exception):
    """The worker answered a command with an error."""

    def __init__(self, command: Command, diagnostic: str):
        super().__init__(diagnostic)
        self.command = command
        self.diagnostic = diagnostic


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class WorkerTransport:
    """
    Abstract message transport to a worker.
    Implement with a child process for production, or in-process for tests.
    """

    async def start(self) -> None:
        """Bring the worker up. Called once, before the first send."""
        raise NotImplementedError

    async def send(self, message: dict[str, Any]) -> None:
        raise NotImplementedError

    async def receive(self) -> dict[str, Any] | None:
        """Next message from the worker, or None once the worker has gone away."""
        raise NotImplementedError

    async def close(self) -> None:
        """Sever the transport. Safe to call more than once, or before start."""
        raise NotImplementedError


class SubprocessTransport(WorkerTransport):
    """Runs `python -m peridot.worker` and speaks JSON lines over its stdin/stdout."""

    def __init__(self, argv: list[str] | None = None, *, compiler: str | None = None):
        if argv is None:
            argv = [sys.executable, "-m", "peridot.worker"]
            if compiler:
                argv += ["--compiler", compiler]
        self.argv = argv
        self.process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task | None = None

    async def start(self) -> None:
        self.process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
        self._stderr_task = asyncio.create_task(self._forward_stderr(self.process))
        logger.info("channel: started worker pid=%s", self.process.pid)

    async def send(self, message: dict[str, Any]) -> None:
        if self.process is None or self.process.stdin is None:
            raise ChannelClosed("Worker process is not running")
        self.process.stdin.write(encode_message(message))
        await self.process.stdin.drain()

    async def receive(self) -> dict[str, Any] | None:
        if self.process is None or self.process.stdout is None:
            return None
        line = await self.process.stdout.readline()
        if not line:
            return None
        return decode_message(line)

    async def close(self) -> None:
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)
            self._stderr_task = None

    @staticmethod
    async def _forward_stderr(process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.info("worker[%s]: %s", process.pid, text)


class LineHandler(Protocol):
    def handle_line(self, line: bytes) -> bytes | None: ...


class LoopbackTransport(WorkerTransport):
    """
    Hosts a worker in this process: a task drains an inbound queue of
    encoded lines, handles each one in a thread, and posts the encoded reply.
    """

    def __init__(self, host: LineHandler):
        self._host = host
        self._inbound: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._outbound: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    async def start(self) -> None:
        self._task = asyncio.create_task(self._serve())

    async def _serve(self) -> None:
        while True:
            line = await self._inbound.get()
            if line is None:
                break
            reply = await asyncio.to_thread(self._host.handle_line, line)
            if reply is not None:
                await self._outbound.put(reply)
        await self._outbound.put(None)

    async def send(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosed("Loopback worker is closed")
        await self._inbound.put(encode_message(message))

    async def receive(self) -> dict[str, Any] | None:
        line = await self._outbound.get()
        if line is None:
            return None
        return decode_message(line)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._outbound.put_nowait(None)


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


@dataclass
class PendingCompletion:
    id: int
    command: Command
    future: asyncio.Future


class Submission:
    """Handle for one submitted command. Await it for the worker's reply."""

    def __init__(self, pending: PendingCompletion):
        self.id = pending.id
        self.command = pending.command
        self.future = pending.future

    def __await__(self):
        return self.future.__await__()


class RenderWorkerChannel:
    """
    Multiplexes concurrent commands to one worker over one transport.

    The transport is started lazily by the first submit. INIT must be
    awaited before other commands are issued; the channel does not enforce
    that ordering.
    """

    def __init__(self, transport: WorkerTransport):
        self._transport = transport
        self._next_id = 1
        self._pending: dict[int, PendingCompletion] = {}
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._closed = False
        self._ready = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def ready(self) -> bool:
        return self._ready and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- submit --

    def submit(self, command: Command | str, payload: dict[str, Any] | None = None) -> Submission:
        """Queue a command for the worker. Never blocks."""
        if self._closed:
            raise ChannelClosed("Worker channel is closed")
        command = Command(command)
        loop = asyncio.get_running_loop()

        request_id = self._next_id
        self._next_id += 1
        future = loop.create_future()
        pending = PendingCompletion(id=request_id, command=command, future=future)
        self._pending[request_id] = pending
        # Cancellation and timeouts settle the future without a reply
        future.add_done_callback(lambda _f: self._pending.pop(request_id, None))

        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._run_writer())
        self._outbox.put_nowait({"id": request_id, "type": command.value, **(payload or {})})
        logger.debug("channel: submitted %s id=%d", command.value, request_id)
        return Submission(pending)

    async def request(
        self,
        command: Command | str,
        payload: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> WorkerReply:
        submission = self.submit(command, payload)
        if timeout:
            return await asyncio.wait_for(submission.future, timeout)
        return await submission.future

    # -- typed commands --

    async def initialize(self, timeout: float | None = None) -> None:
        """Send INIT and wait for READY."""
        try:
            reply = await self.request(Command.INIT, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise WorkerInitError(f"Worker did not report READY within {timeout}s") from e
        except (ChannelClosed, WorkerCommandError) as e:
            raise WorkerInitError(f"Worker failed to initialize: {e}") from e
        if reply.type != READY:
            raise WorkerInitError(f"Expected READY from worker, got {reply.type!r}")
        self._ready = True
        logger.info("channel: worker ready")

    async def render(self, request: RenderRequest, *, timeout: float | None = None) -> RenderResult:
        reply = await self.request(Command.RENDER, render_payload(request), timeout=timeout)
        return parse_render_result(reply.result)

    async def add_package(self, package: Package, *, timeout: float | None = None) -> None:
        await self.request(Command.ADD_PACKAGE, package_payload(package), timeout=timeout)

    # -- teardown --

    async def terminate(self) -> None:
        """Reject every outstanding completion and sever the transport."""
        await self._shutdown("Worker channel terminated")

    async def _shutdown(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready = False

        outstanding = list(self._pending.values())
        self._pending.clear()
        for pending in outstanding:
            if not pending.future.done():
                pending.future.set_exception(ChannelClosed(reason))
        if outstanding:
            logger.warning("channel: %s with %d request(s) outstanding", reason, len(outstanding))

        current = asyncio.current_task()
        tasks = [t for t in (self._writer_task, self._reader_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        try:
            await self._transport.close()
        except Exception:
            logger.warning("channel: transport close failed", exc_info=True)

    # -- background tasks --

    async def _run_writer(self) -> None:
        try:
            await self._transport.start()
        except Exception as e:
            logger.warning("channel: worker transport failed to start: %s", e)
            await self._shutdown(f"Worker transport failed to start: {e}")
            return
        self._reader_task = asyncio.create_task(self._run_reader())

        while True:
            message = await self._outbox.get()
            if message["id"] not in self._pending:
                # settled (cancelled or timed out) before it went out
                continue
            try:
                await self._transport.send(message)
            except Exception as e:
                logger.warning("channel: failed to send %s id=%s: %s", message["type"], message["id"], e)
                await self._shutdown(f"Failed to send {message['type']} to worker: {e}")
                return

    async def _run_reader(self) -> None:
        reason = "Worker transport closed"
        try:
            while True:
                try:
                    message = await self._transport.receive()
                except ProtocolError as e:
                    logger.warning("channel: skipping malformed message: %s", e)
                    continue
                if message is None:
                    break
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("channel: reading from worker failed: %s", e)
            reason = f"Worker transport failed: {e}"
        await self._shutdown(reason)

    def _dispatch(self, message: dict[str, Any]) -> None:
        try:
            reply = parse_reply(message)
        except ProtocolError as e:
            logger.warning("channel: dropping uncorrelatable reply: %s", e)
            return

        pending = self._pending.pop(reply.id, None)
        if pending is None:
            logger.warning("channel: dropping reply for unknown request id=%s", reply.id)
            return
        if pending.future.done():
            return
        if reply.error is not None:
            pending.future.set_exception(WorkerCommandError(pending.command, str(reply.error)))
        else:
            pending.future.set_result(reply)
