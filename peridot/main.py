"""Main entry point for the Peridot CLI."""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from peridot import __version__
from peridot.channel import ChannelClosed, WorkerInitError
from peridot.config import settings
from peridot.coordinator import RenderDiagnosticError, open_view
from peridot.packages import PackageCache, PackageFetchError, PackageNotFound
from peridot.protocol import ProtocolError
from peridot.surface import FrameBuffer
from peridot.types import InvalidPackageSpec


def print_help():
    """Print help message."""
    print(f"""
Peridot v{__version__}

Usage:
  peridot [options] <command> [args]

Commands:
  fetch <vault> <spec>...     Download packages into the vault's cache
  packages <vault>            List packages cached in the vault
  render <vault> <file>       Render a note headless and report its links

Options:
  --dpi N                     Device pixel ratio for render (default: 1)
  --compiler MODULE:ATTR      Compiler factory for the worker
  --out PATH                  Write the rendered RGBA frame to PATH
  -h, --help                  Show this help
  -v, --version               Show version

Environment:
  PERIDOT_PACKAGE_REGISTRY    Package registry (default: https://packages.typst.org)
  PERIDOT_COMPILER            Compiler factory (same as --compiler)
  PERIDOT_LOG_LEVEL           Log level (default: INFO)

Examples:
  peridot fetch ~/notes @preview/example:0.1.0
  peridot render ~/notes index.typ --dpi 2 --out page.rgba
""")


def parse_args(args: list[str]) -> dict:
    """
    Parse command line arguments.

    Returns dict with:
        command: str | None (fetch, packages, render)
        positional: list[str]
        dpi: float
        compiler: str | None
        out: str | None
        show_help: bool
        show_version: bool
    """
    result = {
        "command": None,
        "positional": [],
        "dpi": 1.0,
        "compiler": None,
        "out": None,
        "show_help": False,
        "show_version": False,
    }

    i = 0
    while i < len(args):
        arg = args[i]

        if arg in ("--dpi", "--compiler", "--out"):
            if i + 1 >= len(args):
                print(f"Error: {arg} requires a value")
                sys.exit(1)
            value = args[i + 1]
            i += 1
            if arg == "--dpi":
                try:
                    result["dpi"] = float(value)
                except ValueError:
                    print(f"Error: --dpi must be a number, got {value!r}")
                    sys.exit(1)
                if result["dpi"] <= 0:
                    print("Error: --dpi must be positive")
                    sys.exit(1)
            else:
                result[arg[2:]] = value
        elif arg in ("--help", "-h"):
            result["show_help"] = True
        elif arg in ("--version", "-v"):
            result["show_version"] = True
        elif arg.startswith("-"):
            print(f"Unknown option: {arg}")
            print("Run 'peridot --help' for usage.")
            sys.exit(1)
        elif result["command"] is None:
            if arg not in ("fetch", "packages", "render"):
                print(f"Unknown command: {arg}")
                print("Run 'peridot --help' for usage.")
                sys.exit(1)
            result["command"] = arg
        else:
            result["positional"].append(arg)

        i += 1

    return result


async def fetch(vault: Path, specs: list[str]) -> bool:
    cache = PackageCache()
    ok = True
    for spec in specs:
        try:
            package = await cache.resolve(spec, vault)
        except (InvalidPackageSpec, PackageNotFound, PackageFetchError) as e:
            print(f"  {spec}: {e}")
            ok = False
            continue
        print(f"  {package.spec} ({len(package.files)} files)")
    return ok


async def list_packages(vault: Path) -> bool:
    specs = await PackageCache().list_cached(vault)
    if not specs:
        print("  No cached packages")
    for spec in specs:
        print(f"  {spec}")
    return True


async def render(vault: Path, file: str, dpi: float, compiler: str | None, out: str | None) -> bool:
    source_path = vault / file
    try:
        source = source_path.read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error: cannot read {source_path}: {e}")
        return False

    surface = FrameBuffer()
    view = open_view(vault, file, compiler=compiler, dpi=dpi, surface=surface)
    try:
        result = await view.render(source)
    except (
        RenderDiagnosticError,
        InvalidPackageSpec,
        PackageNotFound,
        PackageFetchError,
        WorkerInitError,
        ChannelClosed,
        ProtocolError,
        asyncio.TimeoutError,
        ValidationError,
        json.JSONDecodeError,
    ) as e:
        print(f"Render failed: {str(e) or type(e).__name__}")
        return False
    finally:
        await view.close()

    print(f"  {file}: {result.width}x{result.height} at {dpi}x")
    for link in result.links:
        print(f"  link {link.url} at ({link.x:g}, {link.y:g}) {link.width:g}x{link.height:g}")
    if out:
        Path(out).write_bytes(surface.pixels)
        print(f"  Wrote {len(surface.pixels)} bytes to {out}")
    return True


def main():
    """Main entry point."""
    args = parse_args(sys.argv[1:])

    # Handle help and version first
    if args["show_help"]:
        print_help()
        return

    if args["show_version"]:
        print(f"peridot {__version__}")
        return

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")

    command = args["command"]
    positional = args["positional"]

    if command == "fetch":
        if len(positional) < 2:
            print("Usage: peridot fetch <vault> <spec>...")
            sys.exit(1)
        success = asyncio.run(fetch(Path(positional[0]), positional[1:]))
        sys.exit(0 if success else 1)

    elif command == "packages":
        if len(positional) != 1:
            print("Usage: peridot packages <vault>")
            sys.exit(1)
        success = asyncio.run(list_packages(Path(positional[0])))
        sys.exit(0 if success else 1)

    elif command == "render":
        if len(positional) != 2:
            print("Usage: peridot render <vault> <file> [--dpi N] [--compiler MODULE:ATTR] [--out PATH]")
            sys.exit(1)
        vault, file = positional
        success = asyncio.run(render(Path(vault), file, args["dpi"], args["compiler"], args["out"]))
        sys.exit(0 if success else 1)

    else:
        print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
