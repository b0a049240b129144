import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union

from .errors import AttributeParseError, DescriptorError, LevelNotFoundError, MissingSizeError, UnknownFormatError

FORMATS = ("jpg", "jpeg", "png")

_UNSIGNED_INT = re.compile(r"[0-9]+")


def _ceil_half(n: int) -> int:
    return (n + 1) // 2


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _int_attribute(element: ET.Element, name: str) -> int:
    raw = element.get(name)
    if raw is None:
        raise AttributeParseError(f"Could not find attribute '{name}' in dzi xml")
    if not _UNSIGNED_INT.fullmatch(raw.strip()):
        raise AttributeParseError(f"Could not parse attribute named '{name}' as int: {raw}")
    return int(raw)


@dataclass(frozen=True)
class PyramidLevel:
    width: int
    height: int
    level_index: int

    def columns(self, tile_size: int) -> int:
        return -(-self.width // tile_size)

    def rows(self, tile_size: int) -> int:
        return -(-self.height // tile_size)

    def to_plain(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height, "levelIndex": self.level_index}


def build_levels(width: int, height: int) -> List[PyramidLevel]:
    """Halve (rounding up) from the base size down to 1x1, smallest level first."""
    sizes = []
    w, h = width, height
    while w > 1 or h > 1:
        sizes.append((w, h))
        w, h = _ceil_half(w), _ceil_half(h)
    sizes.append((w, h))
    sizes.reverse()
    return [PyramidLevel(w, h, index) for index, (w, h) in enumerate(sizes)]


@dataclass(frozen=True)
class PyramidDescriptor:
    """Geometry of a Deep Zoom image: base size, tiling and derived levels."""

    width: int
    height: int
    tile_size: int
    overlap: int
    format: str
    levels: Tuple[PyramidLevel, ...] = field(init=False, repr=False, compare=False)
    max_level_index: int = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.width < 1 or self.height < 1:
            raise DescriptorError(f"Bad dzi size: {self.width}x{self.height}")
        if self.tile_size < 1 or self.overlap < 0:
            raise DescriptorError(f"Bad dzi tiling: TileSize={self.tile_size} Overlap={self.overlap}")
        if self.format not in FORMATS:
            raise UnknownFormatError(f"Bad format in dzi: {self.format}")
        # ceil(log2(n)) without floating point
        object.__setattr__(self, "max_level_index", (max(self.width, self.height) - 1).bit_length())
        object.__setattr__(self, "levels", tuple(build_levels(self.width, self.height)))

    def level(self, level_index: int) -> PyramidLevel:
        if not 0 <= level_index <= self.max_level_index:
            raise LevelNotFoundError(f"No level {level_index} (max is {self.max_level_index})")
        return self.levels[level_index]

    def scale(self, level_index: int) -> int:
        """Downsampling factor of a level relative to the base image."""
        self.level(level_index)
        return 2 ** (self.max_level_index - level_index)

    @classmethod
    def parse(cls, text: Union[str, bytes]) -> "PyramidDescriptor":
        try:
            image = ET.fromstring(text)
        except ET.ParseError as e:
            raise DescriptorError(f"Failed parsing dzi contents: {e}") from e

        size = next((el for el in image.iter() if _local_name(el.tag) == "Size"), None)
        if size is None:
            raise MissingSizeError("Could not retrieve Size element from dzi xml")

        width = _int_attribute(size, "Width")
        height = _int_attribute(size, "Height")
        tile_size = _int_attribute(image, "TileSize")
        overlap = _int_attribute(image, "Overlap")

        fmt = image.get("Format")
        if fmt not in FORMATS:
            raise UnknownFormatError(f"Bad format in dzi: {fmt}")

        return cls(width=width, height=height, tile_size=tile_size, overlap=overlap, format=fmt)

    def to_plain(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "tileSize": self.tile_size,
            "overlap": self.overlap,
            "format": self.format,
            "levels": [level.to_plain() for level in self.levels],
        }

    @classmethod
    def from_plain(cls, value: Dict[str, Any]) -> "PyramidDescriptor":
        # levels are derived, so they are not read back
        return cls(
            width=int(value["width"]),
            height=int(value["height"]),
            tile_size=int(value["tileSize"]),
            overlap=int(value["overlap"]),
            format=value["format"],
        )
