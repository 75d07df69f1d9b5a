"""
Vault filesystem capability.

The package cache only touches the disk through this interface, so tests
can swap in MemoryFileSystem and count writes.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path, PurePosixPath


class VaultFileSystem:
    """
    Abstract filesystem interface.
    Implement with the local disk for production, or in-memory for tests.
    """

    async def exists(self, path: Path) -> bool:
        raise NotImplementedError

    async def mkdir(self, path: Path) -> None:
        """Create a directory and any missing parents. Existing directories are fine."""
        raise NotImplementedError

    async def read_bytes(self, path: Path) -> bytes:
        raise NotImplementedError

    async def write_bytes(self, path: Path, data: bytes) -> None:
        """Write a file. The parent directory must already exist."""
        raise NotImplementedError

    async def list_files(self, root: Path) -> list[str]:
        """Every regular file under root, recursively, as sorted POSIX paths relative to root."""
        raise NotImplementedError

    async def rename(self, src: Path, dst: Path) -> None:
        """Move src to dst. Raises OSError if dst already exists."""
        raise NotImplementedError

    async def remove_tree(self, path: Path) -> None:
        """Delete a directory tree. Missing paths are ignored."""
        raise NotImplementedError


class LocalFileSystem(VaultFileSystem):
    """Local disk. Blocking calls run in a thread."""

    async def exists(self, path: Path) -> bool:
        return await asyncio.to_thread(Path(path).exists)

    async def mkdir(self, path: Path) -> None:
        await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)

    async def read_bytes(self, path: Path) -> bytes:
        return await asyncio.to_thread(Path(path).read_bytes)

    async def write_bytes(self, path: Path, data: bytes) -> None:
        await asyncio.to_thread(Path(path).write_bytes, data)

    async def list_files(self, root: Path) -> list[str]:
        def walk() -> list[str]:
            base = Path(root)
            return sorted(p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_file())

        return await asyncio.to_thread(walk)

    async def rename(self, src: Path, dst: Path) -> None:
        def move() -> None:
            target = Path(dst)
            if target.exists():
                raise FileExistsError(str(target))
            Path(src).rename(target)

        await asyncio.to_thread(move)

    async def remove_tree(self, path: Path) -> None:
        await asyncio.to_thread(shutil.rmtree, path, ignore_errors=True)


class MemoryFileSystem(VaultFileSystem):
    """In-memory filesystem for testing. `writes` counts every mutating call."""

    def __init__(self) -> None:
        self.files: dict[PurePosixPath, bytes] = {}
        self.dirs: set[PurePosixPath] = set()
        self.writes = 0

    @staticmethod
    def _key(path: Path | str) -> PurePosixPath:
        return PurePosixPath(str(path))

    def _under(self, path: PurePosixPath, root: PurePosixPath) -> bool:
        return path == root or root in path.parents

    async def exists(self, path: Path) -> bool:
        key = self._key(path)
        return key in self.files or key in self.dirs

    async def mkdir(self, path: Path) -> None:
        self.writes += 1
        key = self._key(path)
        if key in self.files:
            raise FileExistsError(str(key))
        self.dirs.add(key)
        self.dirs.update(p for p in key.parents if p != PurePosixPath("/"))

    async def read_bytes(self, path: Path) -> bytes:
        key = self._key(path)
        if key not in self.files:
            raise FileNotFoundError(str(key))
        return self.files[key]

    async def write_bytes(self, path: Path, data: bytes) -> None:
        self.writes += 1
        key = self._key(path)
        if key.parent != PurePosixPath("/") and key.parent not in self.dirs:
            raise FileNotFoundError(f"No such directory: {key.parent}")
        self.files[key] = bytes(data)

    async def list_files(self, root: Path) -> list[str]:
        base = self._key(root)
        if base not in self.dirs:
            raise FileNotFoundError(str(base))
        return sorted(p.relative_to(base).as_posix() for p in self.files if base in p.parents)

    async def rename(self, src: Path, dst: Path) -> None:
        self.writes += 1
        source, target = self._key(src), self._key(dst)
        if target in self.files or target in self.dirs:
            raise FileExistsError(str(target))
        if source not in self.dirs and source not in self.files:
            raise FileNotFoundError(str(source))
        self.files = {
            (target / p.relative_to(source) if self._under(p, source) else p): data for p, data in self.files.items()
        }
        moved = {target / p.relative_to(source) for p in self.dirs if self._under(p, source)}
        self.dirs = {p for p in self.dirs if not self._under(p, source)} | moved
        self.dirs.update(p for p in target.parents if p != PurePosixPath("/"))

    async def remove_tree(self, path: Path) -> None:
        self.writes += 1
        root = self._key(path)
        self.files = {p: d for p, d in self.files.items() if not self._under(p, root)}
        self.dirs = {p for p in self.dirs if not self._under(p, root)}
