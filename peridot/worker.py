"""
Peridot — Render Worker Host

The compute side of the worker boundary. Reads one JSON command per line,
hands it to a Compiler, and writes one JSON reply per line carrying the same
id. The typesetting engine itself is opaque: it is supplied as a factory
(`module:attr`) and built on INIT.

Usage:
    python -m peridot.worker --compiler mypackage.engine:make_compiler
"""

from __future__ import annotations

import importlib
import logging
import re
import sys
from collections.abc import Callable
from typing import Any

from peridot.config import settings
from peridot.links import LINK_SCHEME
from peridot.protocol import (
    READY,
    Command,
    ProtocolError,
    decode_message,
    encode_message,
    parse_package_command,
    parse_render_command,
    render_result_to_wire,
)
from peridot.types import Package, RenderRequest, RenderResult

logger = logging.getLogger(__name__)

WIKI_LINK_PATTERN = re.compile(r"\[\[(.+?)\]\]")


class CompileError(Exception):
    """The compiler rejected the document. diagnostic is shown to the user verbatim."""

    def __init__(self, diagnostic: str):
        super().__init__(diagnostic)
        self.diagnostic = diagnostic


class Compiler:
    """
    Abstract typesetting engine.

    render() compiles one page to an RGBA frame at the requested scale and
    reports link rectangles in device pixels. A document importing a package
    that was never added must fail with a CompileError whose text contains
    `searched for <spec>`.
    """

    def render(self, request: RenderRequest) -> RenderResult:
        raise NotImplementedError

    def add_package(self, package: Package) -> None:
        raise NotImplementedError


CompilerFactory = Callable[[], Compiler]


def expand_wiki_links(source: str) -> str:
    """Rewrite `[[note]]` as a link to the note."""
    return WIKI_LINK_PATTERN.sub(lambda m: f'#link("{LINK_SCHEME}{m.group(1)}")[{m.group(1)}]', source)


class WorkerHost:
    """Dispatches decoded commands to a compiler built on INIT."""

    def __init__(self, compiler_factory: CompilerFactory):
        self._factory = compiler_factory
        self._compiler: Compiler | None = None

    @property
    def ready(self) -> bool:
        return self._compiler is not None

    def handle(self, message: dict[str, Any]) -> dict[str, Any]:
        """Reply for one command. Never raises for a bad command."""
        request_id = message["id"]
        kind = message.get("type")

        try:
            if kind == Command.INIT.value:
                if self._compiler is None:
                    self._compiler = self._factory()
                return {"id": request_id, "type": READY}

            if kind not in (Command.RENDER.value, Command.ADD_PACKAGE.value):
                return {"id": request_id, "error": f"Unknown command: {kind!r}"}

            if self._compiler is None:
                return {"id": request_id, "error": f"{kind} received before INIT"}

            if kind == Command.RENDER.value:
                request = parse_render_command(message)
                request.source = expand_wiki_links(request.source)
                result = self._compiler.render(request)
                return {"id": request_id, "result": render_result_to_wire(result)}

            package = parse_package_command(message)
            self._compiler.add_package(package)
            logger.info("worker: loaded package %s (%d files)", package.spec, len(package.files))
            return {"id": request_id}

        except CompileError as e:
            return {"id": request_id, "error": e.diagnostic}
        except ProtocolError as e:
            logger.warning("worker: bad %s command: %s", kind, e)
            return {"id": request_id, "error": str(e)}
        except Exception as e:
            logger.exception("worker: %s id=%s failed", kind, request_id)
            return {"id": request_id, "error": f"{type(e).__name__}: {e}"}

    def handle_line(self, line: bytes) -> bytes | None:
        """Encoded reply for one encoded command, or None if it cannot be answered."""
        try:
            message = decode_message(line)
        except ProtocolError as e:
            logger.warning("worker: %s", e)
            return None
        if not isinstance(message.get("id"), int):
            logger.warning("worker: dropping command without a numeric id: %r", message.get("type"))
            return None
        return encode_message(self.handle(message))


def load_compiler_factory(target: str) -> CompilerFactory:
    """Import `package.module:attr` and return the attribute."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Compiler must be given as module:attr, got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target} is not callable")
    return factory


def _unconfigured() -> Compiler:
    raise CompileError("No compiler configured. Pass --compiler module:attr or set PERIDOT_COMPILER.")


def parse_args(args: list[str]) -> dict:
    result = {"compiler": None}
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--compiler":
            if i + 1 < len(args):
                result["compiler"] = args[i + 1]
                i += 1
            else:
                print("Error: --compiler requires module:attr", file=sys.stderr)
                sys.exit(2)
        else:
            print(f"Unknown option: {arg}", file=sys.stderr)
            sys.exit(2)
        i += 1
    return result


def serve(host: WorkerHost, stdin, stdout) -> None:
    """Answer commands line by line until stdin closes."""
    for line in stdin:
        if not line.strip():
            continue
        reply = host.handle_line(line)
        if reply is not None:
            stdout.write(reply)
            stdout.flush()


def main():
    """Worker process entry point. Logs go to stderr; stdout carries only replies."""
    logging.basicConfig(
        stream=sys.stderr,
        level=settings.LOG_LEVEL,
        format="%(levelname)s %(name)s: %(message)s",
    )
    args = parse_args(sys.argv[1:])
    target = args["compiler"] or settings.WORKER_COMPILER

    factory: CompilerFactory = _unconfigured
    if target:
        try:
            factory = load_compiler_factory(target)
        except (ImportError, ValueError) as e:
            print(f"Error: cannot load compiler {target}: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        logger.warning("worker: no compiler configured")

    serve(WorkerHost(factory), sys.stdin.buffer, sys.stdout.buffer)


if __name__ == "__main__":
    main()
