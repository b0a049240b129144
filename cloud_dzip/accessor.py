"""Tile access for Deep Zoom pyramids, stored either as loose files or inside a .dzip archive.

An Accessor pairs a PyramidDescriptor with one of two backings:

- ``DirectBacking``: tiles are separate remote files under ``<name>_files/``.
- ``ArchivedBacking``: tiles are stored entries of a remote ZIP archive.

Both resolve a tile to ``<level>/<column>_<row>.<format>`` below the files
directory; only the final fetch differs.
"""

import asyncio
import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import unquote, urlsplit, urlunsplit

from .archive import ZipArchive
from .errors import DziError, PathConventionError, TileFetchError
from .pyramid import PyramidDescriptor, PyramidLevel
from .source import ByteRangeSource, cat_url, close_filesystem, filesystem_for

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = ".dzip"
DESCRIPTOR_EXTENSION = ".dzi"
# Archives produced by some tools name the descriptor .xml instead.
ARCHIVED_DESCRIPTOR_EXTENSIONS = (DESCRIPTOR_EXTENSION, ".xml")
FILES_DIR_SUFFIX = "_files"

_LEVEL_FRAGMENT = re.compile(r"^level=(\d+)\b")


def resolve_tile_path(level: int, column: int, row: int, fmt: str) -> str:
    return f"{level}/{column}_{row}.{fmt}"


def files_dir_name(descriptor_name: str) -> str:
    """``image.dzi`` -> ``image_files``."""
    return posixpath.splitext(descriptor_name)[0] + FILES_DIR_SUFFIX


@dataclass(frozen=True)
class DirectBacking:
    files_dir_url: str
    fs: Any = field(default=None, compare=False, repr=False)
    owns_fs: bool = field(default=False, compare=False, repr=False)

    kind: ClassVar[str] = "direct"

    def to_plain(self) -> Dict[str, Any]:
        return {"kind": self.kind, "filesDirUrl": self.files_dir_url}

    @classmethod
    def from_plain(cls, value: Dict[str, Any], fs=None) -> "DirectBacking":
        url = value["filesDirUrl"]
        if fs is None:
            return cls(url, fs=filesystem_for(url), owns_fs=True)
        return cls(url, fs=fs)


@dataclass(frozen=True)
class ArchivedBacking:
    archive: ZipArchive = field(compare=False)
    files_dir_path: str

    kind: ClassVar[str] = "archived"

    def to_plain(self) -> Dict[str, Any]:
        return {"kind": self.kind, "archive": self.archive.to_plain(), "filesDirPath": self.files_dir_path}

    @classmethod
    def from_plain(cls, value: Dict[str, Any], fs=None) -> "ArchivedBacking":
        return cls(ZipArchive.from_plain(value["archive"], fs=fs), value["filesDirPath"])


Backing = Union[DirectBacking, ArchivedBacking]


async def _fetch_direct(backing: DirectBacking, tile_path: str) -> bytes:
    url = backing.files_dir_url.rstrip("/") + "/" + tile_path
    try:
        return await cat_url(backing.fs, url)
    except DziError as e:
        raise TileFetchError(url, str(e)) from e


async def _fetch_archived(backing: ArchivedBacking, tile_path: str) -> bytes:
    name = posixpath.join(backing.files_dir_path, tile_path).lstrip("/")
    try:
        return await backing.archive.get(name)
    except DziError as e:
        raise TileFetchError(name, str(e)) from e


async def _close_direct(backing: DirectBacking) -> None:
    if backing.owns_fs:
        await close_filesystem(backing.fs)


async def _close_archived(backing: ArchivedBacking) -> None:
    await backing.archive.source.close()


_FETCHERS = {DirectBacking.kind: _fetch_direct, ArchivedBacking.kind: _fetch_archived}
_CLOSERS = {DirectBacking.kind: _close_direct, ArchivedBacking.kind: _close_archived}
_BACKINGS = {DirectBacking.kind: DirectBacking, ArchivedBacking.kind: ArchivedBacking}


async def fetch_tile_bytes(backing: Backing, tile_path: str) -> bytes:
    """Fetch the bytes of `tile_path` (relative to the files directory) from `backing`."""
    return await _FETCHERS[backing.kind](backing, tile_path)


class Accessor:
    def __init__(self, descriptor: PyramidDescriptor, backing: Backing, level_index: Optional[int] = None):
        if level_index is not None:
            descriptor.level(level_index)
        self.descriptor = descriptor
        self.backing = backing
        self.level_index = level_index

    @property
    def levels(self) -> List[PyramidLevel]:
        """Levels exposed by this accessor: all of them, or the pinned one."""
        if self.level_index is None:
            return list(self.descriptor.levels)
        return [self.descriptor.level(self.level_index)]

    def resolve_tile_path(self, level: int, column: int, row: int) -> str:
        return resolve_tile_path(level, column, row, self.descriptor.format)

    async def fetch_tile(self, level: int, column: int, row: int) -> bytes:
        tile_path = self.resolve_tile_path(level, column, row)
        logger.debug("Fetching tile %s (%s)", tile_path, self.backing.kind)
        return await fetch_tile_bytes(self.backing, tile_path)

    async def fetch_tiles(self, coords: Iterable[Tuple[int, int, int]]) -> List[Union[bytes, TileFetchError]]:
        """Fetch several tiles concurrently.

        Each result is either the tile's bytes or the TileFetchError for that
        tile; one missing tile does not affect the others.
        """
        results = await asyncio.gather(
            *(self.fetch_tile(level, column, row) for level, column, row in coords),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, TileFetchError):
                raise result
        return results

    async def close(self) -> None:
        await _CLOSERS[self.backing.kind](self.backing)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def to_plain(self) -> Dict[str, Any]:
        return {
            "descriptor": self.descriptor.to_plain(),
            "backing": self.backing.to_plain(),
            "levelIndex": self.level_index,
        }

    @classmethod
    def from_plain(cls, value: Dict[str, Any], fs=None) -> "Accessor":
        raw_backing = value["backing"]
        backing_type = _BACKINGS.get(raw_backing.get("kind"))
        if backing_type is None:
            raise DziError(f"Unknown accessor backing: {raw_backing.get('kind')!r}")
        return cls(
            PyramidDescriptor.from_plain(value["descriptor"]),
            backing_type.from_plain(raw_backing, fs=fs),
            value.get("levelIndex"),
        )


def _pinned_level(fragment: str, descriptor: PyramidDescriptor) -> Optional[int]:
    match = _LEVEL_FRAGMENT.match(fragment)
    if match is None:
        return None
    level_index = int(match.group(1))
    if level_index > descriptor.max_level_index:
        raise PathConventionError(f"No level {level_index} in pyramid (max is {descriptor.max_level_index})")
    return level_index


def _find_descriptor_entry(archive: ZipArchive) -> Optional[str]:
    for name in archive:
        if "/" in name:
            continue
        if name.lower().endswith(ARCHIVED_DESCRIPTOR_EXTENSIONS):
            return name
    return None


async def _open_archived(url: str, components: List[str], archive_at: int, fs, storage_options) -> Accessor:
    parts = urlsplit(url)
    root = "/" if parts.path.startswith("/") else ""
    archive_path = root + "/".join(components[:archive_at + 1])
    archive_url = urlunsplit((parts.scheme, parts.netloc, archive_path, parts.query, ""))
    internal_path = "/".join(unquote(c) for c in components[archive_at + 1:])

    if internal_path and not internal_path.lower().endswith(ARCHIVED_DESCRIPTOR_EXTENSIONS):
        raise PathConventionError(f"Bad internal dzi path: {url}")

    source = await ByteRangeSource.open(archive_url, fs=fs, **storage_options)
    try:
        archive = await ZipArchive.open(source)
        descriptor_name = internal_path or _find_descriptor_entry(archive)
        if descriptor_name is None:
            raise PathConventionError(f"Could not find DZI files inside {url}")
        descriptor = PyramidDescriptor.parse(await archive.get(descriptor_name))
        level_index = _pinned_level(parts.fragment, descriptor)
    except Exception:
        await source.close()
        raise

    files_dir_path = "/" + files_dir_name(descriptor_name)
    logger.debug("Opened archived pyramid %s (files at %s)", archive_url, files_dir_path)
    return Accessor(descriptor, ArchivedBacking(archive, files_dir_path), level_index)


async def _open_direct(url: str, fs, storage_options) -> Accessor:
    parts = urlsplit(url)
    descriptor_url = urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))
    owns_fs = fs is None
    if fs is None:
        fs = filesystem_for(descriptor_url, **storage_options)
    try:
        descriptor = PyramidDescriptor.parse(await cat_url(fs, descriptor_url))
        level_index = _pinned_level(parts.fragment, descriptor)
    except Exception:
        if owns_fs:
            await close_filesystem(fs)
        raise

    files_path = files_dir_name(parts.path)
    files_dir_url = urlunsplit((parts.scheme, parts.netloc, files_path, "", ""))
    logger.debug("Opened pyramid %s (files at %s)", descriptor_url, files_dir_url)
    backing = DirectBacking(files_dir_url, fs=fs, owns_fs=owns_fs)
    return Accessor(descriptor, backing, level_index)


async def open_accessor(url: str, fs=None, **storage_options) -> Accessor:
    """Build an Accessor for a ``.dzi`` URL or a URL pointing into a ``.dzip`` archive.

    Any path component ending in ``.dzip`` marks the archive; what follows it,
    if anything, is the descriptor path inside the archive. Otherwise the URL
    itself must name a ``.dzi`` file. A ``#level=N`` fragment pins the
    accessor to a single level.
    """
    parts = urlsplit(url)
    components = [c for c in parts.path.split("/") if c]
    archive_at = next(
        (i for i, c in enumerate(components) if c.lower().endswith(ARCHIVE_EXTENSION)),
        None,
    )
    if archive_at is not None:
        return await _open_archived(url, components, archive_at, fs, storage_options)
    if components and components[-1].lower().endswith(DESCRIPTOR_EXTENSION):
        return await _open_direct(url, fs, storage_options)
    raise PathConventionError(f"Path does not seem to point to a dzi file: {url}")
