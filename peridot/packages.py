"""
Package cache.

Resolves a package spec to its files. A package is looked up in the vault's
cache directory first and only downloaded from the registry when it is not
there. Downloads are extracted into a staging directory and renamed into
place, so the cache directory for a spec either does not exist or mirrors
the archive completely.

Layout:
    <vault>/<packages_dir>/@<namespace>/<name>:<version>/...
"""

from __future__ import annotations

import asyncio
import gzip
import io
import logging
import tarfile
import uuid
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from peridot.config import settings
from peridot.types import Package, PackageFile, PackageSpec
from peridot.vault import LocalFileSystem, VaultFileSystem

logger = logging.getLogger(__name__)

STAGING_DIR = ".staging"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PackageNotFound(Exception):
    """The registry has no archive for this spec (HTTP 404)."""

    def __init__(self, spec: str):
        super().__init__(f"Package not found in registry: {spec}")
        self.spec = spec


class PackageFetchError(Exception):
    """Network or storage failure while resolving a package."""

    pass


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


@dataclass
class ArchiveEntry:
    path: str
    is_dir: bool
    data: bytes = b""


def _member_path(name: str) -> str | None:
    """Normalize a tar member name; None for the root entry or anything escaping it."""
    path = PurePosixPath(name)
    if path.is_absolute():
        return None
    parts = [p for p in path.parts if p not in ("", ".")]
    if not parts or ".." in parts:
        return None
    return "/".join(parts)


def extract_archive(archive: bytes) -> list[ArchiveEntry]:
    """
    Gunzip and walk a tar stream, in archive order.

    Directories and regular files are returned; symlinks, hard links and
    device entries are dropped. Nothing touches the disk here.
    """
    try:
        tar_bytes = gzip.decompress(archive)
    except (OSError, EOFError, zlib.error) as e:
        raise PackageFetchError(f"Archive is not valid gzip: {e}") from e

    entries: list[ArchiveEntry] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(tar_bytes), mode="r:") as tar:
            for member in tar:
                path = _member_path(member.name)
                if path is None:
                    if member.name.strip("./"):
                        logger.warning("package_cache: skipping unsafe archive path %r", member.name)
                    continue
                if member.isdir():
                    entries.append(ArchiveEntry(path=path, is_dir=True))
                elif member.isfile():
                    handle = tar.extractfile(member)
                    data = handle.read() if handle is not None else b""
                    entries.append(ArchiveEntry(path=path, is_dir=False, data=data))
                else:
                    logger.debug("package_cache: ignoring non-regular entry %r (type %r)", member.name, member.type)
    except tarfile.TarError as e:
        raise PackageFetchError(f"Archive is not a valid tar stream: {e}") from e
    return entries


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class PackageCache:
    """
    Vault-local package cache backed by the remote registry.

    One instance can serve every view of a vault; concurrent resolves of the
    same spec are serialized so only one of them downloads.
    """

    def __init__(
        self,
        fs: VaultFileSystem | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        registry_url: str | None = None,
        packages_dir: str | None = None,
        timeout: float | None = None,
    ):
        self._fs = fs or LocalFileSystem()
        self._client = client
        self.registry_url = (registry_url or settings.PACKAGE_REGISTRY_URL).rstrip("/")
        self.packages_dir = packages_dir or settings.PACKAGES_DIR
        self._timeout = timeout or settings.FETCH_TIMEOUT_SECONDS
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, key: str) -> asyncio.Lock:
        """Per-spec lock so one download serves all waiting resolvers."""
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def archive_url(self, spec: PackageSpec) -> str:
        return f"{self.registry_url}/{spec.namespace}/{spec.archive_name}"

    def cache_dir(self, spec: PackageSpec, vault_root: Path) -> Path:
        return Path(vault_root) / self.packages_dir / spec.canonical

    # -- resolve --

    async def resolve(self, spec: str | PackageSpec, vault_root: Path) -> Package:
        """
        Return the package's files, from the cache or from the registry.

        Raises:
            InvalidPackageSpec: spec is malformed
            PackageNotFound: the registry answered 404 (nothing is written)
            PackageFetchError: any other network or storage failure
        """
        parsed = spec if isinstance(spec, PackageSpec) else PackageSpec.parse(spec)
        cache_dir = self.cache_dir(parsed, vault_root)

        async with self._get_lock(parsed.canonical):
            if await self._fs.exists(cache_dir):
                logger.debug("package_cache: hit for %s", parsed)
                return await self._read_cached(parsed, cache_dir)

            archive = await self._download(parsed)
            entries = extract_archive(archive)
            files = await self._publish(parsed, Path(vault_root), cache_dir, entries)
            if files is None:
                return await self._read_cached(parsed, cache_dir)
            logger.info("package_cache: cached %s (%d files)", parsed, len(files))
            return Package(spec=parsed.canonical, files=files)

    async def list_cached(self, vault_root: Path) -> list[str]:
        """Canonical specs of every package in the vault's cache."""
        root = Path(vault_root) / self.packages_dir
        if not await self._fs.exists(root):
            return []
        specs: set[str] = set()
        for relative in await self._fs.list_files(root):
            parts = relative.split("/")
            if len(parts) >= 3 and parts[0].startswith("@"):
                specs.add(f"{parts[0]}/{parts[1]}")
        return sorted(specs)

    # -- internals --

    async def _read_cached(self, spec: PackageSpec, cache_dir: Path) -> Package:
        try:
            paths = await self._fs.list_files(cache_dir)
            files = [PackageFile(path=p, data=await self._fs.read_bytes(cache_dir / p)) for p in paths]
        except OSError as e:
            raise PackageFetchError(f"Could not read cached package {spec} at {cache_dir}: {e}") from e
        return Package(spec=spec.canonical, files=files)

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url)
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            return await client.get(url)

    async def _download(self, spec: PackageSpec) -> bytes:
        url = self.archive_url(spec)
        logger.info("package_cache: fetching %s", url)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise PackageFetchError(f"Could not download {spec} from {url}: {e}") from e

        if response.status_code == 404:
            raise PackageNotFound(spec.canonical)
        if response.status_code != 200:
            raise PackageFetchError(f"Registry returned HTTP {response.status_code} for {spec}")
        return response.content

    async def _publish(
        self,
        spec: PackageSpec,
        vault_root: Path,
        cache_dir: Path,
        entries: list[ArchiveEntry],
    ) -> list[PackageFile] | None:
        """
        Write the entries to a staging directory and rename it to cache_dir.

        Returns the written files, or None if another writer published the
        spec first (the staged copy is discarded and the existing one wins).
        """
        staging = vault_root / self.packages_dir / STAGING_DIR / uuid.uuid4().hex
        written: dict[str, bytes] = {}
        try:
            await self._fs.mkdir(staging)
            for entry in entries:
                target = staging / entry.path
                if entry.is_dir:
                    await self._fs.mkdir(target)
                    continue
                # archives are not required to list parent directories
                await self._fs.mkdir(target.parent)
                await self._fs.write_bytes(target, entry.data)
                written[entry.path] = entry.data

            await self._fs.mkdir(cache_dir.parent)
            try:
                await self._fs.rename(staging, cache_dir)
            except OSError:
                if not await self._fs.exists(cache_dir):
                    raise
                logger.info("package_cache: %s was cached concurrently, reusing it", spec)
                return None
        except OSError as e:
            raise PackageFetchError(f"Could not write package {spec} to {cache_dir}: {e}") from e
        finally:
            await self._fs.remove_tree(staging)

        return [PackageFile(path=p, data=written[p]) for p in sorted(written)]
