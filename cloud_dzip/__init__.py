from .accessor import (
    Accessor,
    ArchivedBacking,
    DirectBacking,
    fetch_tile_bytes,
    open_accessor,
    resolve_tile_path,
)
from .archive import Entry, ZipArchive
from .core import RemoteArchiveExtractor, print_zip_tree
from .cursor import BinaryCursor, CursorError
from .errors import (
    ArchiveFormatError,
    AttributeParseError,
    DescriptorError,
    DuplicateEntryError,
    DziError,
    EntryNotFoundError,
    IntegrityError,
    LevelNotFoundError,
    MissingSizeError,
    PathConventionError,
    TileFetchError,
    TransportError,
    UnknownFormatError,
    UnsupportedFeatureError,
)
from .pyramid import PyramidDescriptor, PyramidLevel
from .source import ByteRangeSource

__all__ = [
    "Accessor",
    "ArchiveFormatError",
    "ArchivedBacking",
    "AttributeParseError",
    "BinaryCursor",
    "ByteRangeSource",
    "CursorError",
    "DescriptorError",
    "DirectBacking",
    "DuplicateEntryError",
    "DziError",
    "Entry",
    "EntryNotFoundError",
    "IntegrityError",
    "LevelNotFoundError",
    "MissingSizeError",
    "PathConventionError",
    "PyramidDescriptor",
    "PyramidLevel",
    "RemoteArchiveExtractor",
    "TileFetchError",
    "TransportError",
    "UnknownFormatError",
    "UnsupportedFeatureError",
    "ZipArchive",
    "fetch_tile_bytes",
    "open_accessor",
    "print_zip_tree",
    "resolve_tile_path",
]
