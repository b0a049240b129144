"""Read-only access to stored (uncompressed) ZIP archives over byte-range reads.

Only the end of the archive and the central directory are fetched when the
archive is opened; each member is then pulled with a single ranged read and
checked against the CRC32 recorded in the central directory.
"""

import logging
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional

from .cursor import BinaryCursor, CursorError
from .errors import (
    ArchiveFormatError,
    DuplicateEntryError,
    EntryNotFoundError,
    IntegrityError,
    UnsupportedFeatureError,
)
from .source import ByteRangeSource

logger = logging.getLogger(__name__)

# 22-byte end of central directory record plus the largest possible comment.
EOCD_SEARCH_SIZE = 65557
# 30-byte local header plus the largest possible name and extra field.
LOCAL_HEADER_SLACK = 65565

CENTRAL_HEADER_SIGNATURE = b"PK\x01\x02"
LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"
EOCD_SIGNATURE = b"PK\x05\x06"
ZIP64_EOCD_SIGNATURE = b"PK\x06\x06"
ZIP64_LOCATOR_SIGNATURE = b"PK\x06\x07"

ZIP64_LOCATOR_SIZE = 20
ZIP64_EOCD_SIZE = 56
ZIP64_EOCD_BODY_SIZE = 44
ZIP64_EXTRA_ID = 0x0001
ZIP64_EXTRA_SIZES = (8, 16, 24, 28)

UINT16_SENTINEL = 0xFFFF
UINT32_SENTINEL = 0xFFFFFFFF

# Names are stored without the UTF-8 flag, so they are single-byte encoded.
NAME_ENCODING = "cp437"

MULTI_DISK = "Multi-disk archives"
COMPRESSION = "Compressed archives"

_FLAG_FEATURES = (
    (0x0001, "Encrypted archives"),
    (0x0008, "Data descriptor"),
    (0x0020, "Compressed patched data"),
    (0x0040, "Strong encryption"),
    (0x0800, "UTF-8"),
    (0x2000, "Encrypted central directory"),
)


@dataclass(frozen=True)
class Entry:
    name: str
    offset: int
    size: int
    crc32: int
    comment: bytes = b""

    def to_plain(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "offset": self.offset,
            "size": self.size,
            "crc32": self.crc32,
            "comment": list(self.comment),
        }

    @classmethod
    def from_plain(cls, value: Dict[str, Any]) -> "Entry":
        return cls(
            name=value["name"],
            offset=int(value["offset"]),
            size=int(value["size"]),
            crc32=int(value["crc32"]),
            comment=bytes(value.get("comment", [])),
        )


class _Directory(NamedTuple):
    entry_count: int
    cd_size: int
    cd_offset: int
    comment: bytes

    @property
    def needs_zip64(self) -> bool:
        return (
            self.entry_count == UINT16_SENTINEL
            or self.cd_size == UINT32_SENTINEL
            or self.cd_offset == UINT32_SENTINEL
        )


@contextmanager
def _parsing(what: str):
    """Turn cursor failures inside a parsing step into ArchiveFormatError."""
    try:
        yield
    except CursorError as e:
        raise ArchiveFormatError(f"Malformed {what}: {e}") from e


def _parse_eocd(block: bytes) -> _Directory:
    eocd = BinaryCursor(block)
    eocd.match(EOCD_SIGNATURE)
    eocd.expect_uint(2, 0, MULTI_DISK, UnsupportedFeatureError)
    eocd.expect_uint(2, 0, MULTI_DISK, UnsupportedFeatureError)
    entry_count = eocd.read_uint(2)
    eocd.expect_uint(2, entry_count, MULTI_DISK, UnsupportedFeatureError)
    cd_size = eocd.read_uint(4)
    cd_offset = eocd.read_uint(4)
    comment = eocd.read(eocd.read_uint(2))
    if not eocd.at_end():
        raise ArchiveFormatError("Unexpected data after end of central directory")
    return _Directory(entry_count, cd_size, cd_offset, comment)


def _parse_zip64_locator(block: bytes) -> int:
    loc = BinaryCursor(block)
    loc.match(ZIP64_LOCATOR_SIGNATURE)
    loc.expect_uint(4, 0, MULTI_DISK, UnsupportedFeatureError)
    eocd64_offset = loc.read_uint(8)
    # Writers record a total disk count of 1 for single-disk archives.
    if loc.read_uint(4) not in (0, 1):
        raise UnsupportedFeatureError(MULTI_DISK)
    return eocd64_offset


def _parse_zip64_eocd(block: bytes, comment: bytes) -> _Directory:
    eocd64 = BinaryCursor(block)
    eocd64.match(ZIP64_EOCD_SIGNATURE)
    eocd64.expect_uint(8, ZIP64_EOCD_BODY_SIZE, "ZIP64 extensible data", UnsupportedFeatureError)
    eocd64.move(4)  # version made by, version needed
    eocd64.expect_uint(4, 0, MULTI_DISK, UnsupportedFeatureError)
    eocd64.expect_uint(4, 0, MULTI_DISK, UnsupportedFeatureError)
    entry_count = eocd64.read_uint(8)
    eocd64.expect_uint(8, entry_count, MULTI_DISK, UnsupportedFeatureError)
    cd_size = eocd64.read_uint(8)
    cd_offset = eocd64.read_uint(8)
    return _Directory(entry_count, cd_size, cd_offset, comment)


def _apply_zip64_extra(extra_block: bytes, size: int, offset: int):
    """Replace sentinel size/offset values with those of the ZIP64 extra block."""
    extra = BinaryCursor(extra_block)
    while not extra.at_end():
        block_id = extra.read_uint(2)
        block_size = extra.read_uint(2)
        if block_id != ZIP64_EXTRA_ID:
            extra.read(block_size)
            continue
        if block_size not in ZIP64_EXTRA_SIZES:
            raise ArchiveFormatError("Invalid ZIP64 extra data size")
        # A full block carries every field; a short one only those whose
        # header value is the sentinel, in header order.
        full = block_size >= 24
        if full or size == UINT32_SENTINEL:
            size = extra.read_uint(8)
            if full or block_size >= 16:
                extra.expect_uint(8, size, COMPRESSION, UnsupportedFeatureError)
        if full or offset == UINT32_SENTINEL:
            offset = extra.read_uint(8)
        if block_size == 28:
            extra.expect_uint(4, 0, MULTI_DISK, UnsupportedFeatureError)
        break
    return size, offset


def _parse_central_directory(block: bytes, entry_count: int, archive_size: int) -> Dict[str, Entry]:
    cd = BinaryCursor(block)
    entries: Dict[str, Entry] = {}
    for _ in range(entry_count):
        cd.match(CENTRAL_HEADER_SIGNATURE)
        cd.move(4)  # version made by, version needed
        flags = cd.read_uint(2)
        for bit, feature in _FLAG_FEATURES:
            if flags & bit:
                raise UnsupportedFeatureError(feature)
        cd.expect_uint(2, 0, COMPRESSION, UnsupportedFeatureError)
        cd.move(4)  # modification time and date
        crc32 = cd.read_uint(4)
        size = cd.read_uint(4)
        cd.expect_uint(4, size, COMPRESSION, UnsupportedFeatureError)
        name_length = cd.read_uint(2)
        extra_length = cd.read_uint(2)
        comment_length = cd.read_uint(2)
        cd.expect_uint(2, 0, MULTI_DISK, UnsupportedFeatureError)
        cd.move(6)  # internal and external attributes
        offset = cd.read_uint(4)
        name = cd.read(name_length).decode(NAME_ENCODING)
        extra_block = cd.read(extra_length)
        comment = cd.read(comment_length)

        if size == UINT32_SENTINEL or offset == UINT32_SENTINEL:
            size, offset = _apply_zip64_extra(extra_block, size, offset)

        if offset + size > archive_size:
            raise ArchiveFormatError(f"File {name} is outside of the archive")
        if name in entries:
            raise DuplicateEntryError(name)
        entries[name] = Entry(name=name, offset=offset, size=size, crc32=crc32, comment=comment)

    if not cd.at_end():
        raise ArchiveFormatError("Central directory has trailing data")
    return entries


class ZipArchive:
    """An opened remote archive: its source, entry table and comment.

    Instances are immutable; use `ZipArchive.open` to parse one from a
    ByteRangeSource.
    """

    def __init__(self, source: ByteRangeSource, entries: Mapping[str, Entry], comment: bytes = b""):
        self.source = source
        self._entries = MappingProxyType(dict(entries))
        self.comment = bytes(comment)

    @classmethod
    async def open(cls, source: ByteRangeSource) -> "ZipArchive":
        tail = await source.read(-EOCD_SEARCH_SIZE)
        eocd_offset = tail.rfind(EOCD_SIGNATURE)
        if eocd_offset < 0:
            raise ArchiveFormatError("Could not find end of central directory")

        with _parsing("end of central directory"):
            directory = _parse_eocd(tail[eocd_offset:])

        if directory.needs_zip64:
            if eocd_offset < ZIP64_LOCATOR_SIZE:
                raise ArchiveFormatError("ZIP64 end of central directory locator not found")
            with _parsing("ZIP64 end of central directory locator"):
                eocd64_offset = _parse_zip64_locator(tail[eocd_offset - ZIP64_LOCATOR_SIZE:eocd_offset])
            block = await source.read(eocd64_offset, ZIP64_EOCD_SIZE)
            with _parsing("ZIP64 end of central directory"):
                directory = _parse_zip64_eocd(block, directory.comment)

        if directory.cd_offset + directory.cd_size > source.size:
            raise ArchiveFormatError("Central directory is outside of the file")
        block = await source.read(directory.cd_offset, directory.cd_size)
        with _parsing("central directory"):
            entries = _parse_central_directory(block, directory.entry_count, source.size)

        logger.debug("Parsed %d entries from %s", len(entries), source.url)
        return cls(source, entries, directory.comment)

    @property
    def entries(self) -> Mapping[str, Entry]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def namelist(self) -> List[str]:
        return list(self._entries)

    def getinfo(self, name: str) -> Entry:
        entry = self._entries.get(name)
        if entry is None:
            raise EntryNotFoundError(name)
        return entry

    async def get(self, name: str) -> bytes:
        """Fetch one member's bytes, verified against its CRC32."""
        entry = self.getinfo(name)
        data = await self.source.read(entry.offset, entry.size + LOCAL_HEADER_SLACK)
        with _parsing(f"local header of {name}"):
            local = BinaryCursor(data)
            local.match(LOCAL_HEADER_SIGNATURE)
            local.move(24)
            local.move(len(entry.name.encode(NAME_ENCODING)) + local.read_uint(2))
            payload = local.read(entry.size)

        if zlib.crc32(payload) & 0xFFFFFFFF != entry.crc32:
            raise IntegrityError(f"CRC32 mismatch for {name}")
        return payload

    def to_plain(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_plain(),
            "entries": {name: entry.to_plain() for name, entry in self._entries.items()},
            "comment": list(self.comment),
        }

    @classmethod
    def from_plain(cls, value: Dict[str, Any], fs: Optional[Any] = None) -> "ZipArchive":
        entries = {name: Entry.from_plain(raw) for name, raw in value["entries"].items()}
        return cls(ByteRangeSource.from_plain(value["source"], fs=fs), entries, bytes(value.get("comment", [])))

    def __repr__(self):
        return f"ZipArchive({self.source.url!r}, {len(self._entries)} entries)"
