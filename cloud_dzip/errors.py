class DziError(Exception):
    """Base class for every failure raised by cloud_dzip."""


class TransportError(DziError):
    """The remote blob could not be probed or read."""


class ArchiveFormatError(DziError):
    """The bytes do not form a ZIP archive this reader accepts."""


class UnsupportedFeatureError(ArchiveFormatError):
    def __init__(self, feature: str):
        super().__init__(f"Unsupported ZIP feature: {feature}")
        self.feature = feature


class DuplicateEntryError(ArchiveFormatError):
    def __init__(self, name: str):
        super().__init__(f"Duplicate file name {name}")
        self.name = name


class IntegrityError(DziError):
    """Entry payload does not match the CRC32 recorded in the central directory."""


class EntryNotFoundError(DziError):
    def __init__(self, name: str):
        super().__init__(f"File not found: {name}")
        self.name = name


class DescriptorError(DziError):
    """The DZI descriptor could not be parsed."""


class MissingSizeError(DescriptorError):
    pass


class AttributeParseError(DescriptorError):
    pass


class UnknownFormatError(DescriptorError):
    pass


class LevelNotFoundError(DescriptorError, IndexError):
    """The pyramid has no level with the requested index."""


class PathConventionError(DziError):
    """The URL does not follow the .dzi / .dzip naming convention."""


class TileFetchError(DziError):
    def __init__(self, path: str, reason: str = ""):
        message = f"Failed fetching tile {path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.path = path
