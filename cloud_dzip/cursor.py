import struct
from typing import Optional

# Largest integer a double can hold exactly; wider 64-bit fields are refused.
MAX_SAFE_INTEGER = (1 << 53) - 1

_UINT_FORMATS = {1: "<B", 2: "<H", 4: "<I", 8: "<Q"}


class CursorError(ValueError):
    """Raised on out-of-bounds access or a failed expectation."""


class BinaryCursor:
    """Sequential little-endian reader over an in-memory buffer.

    Every read is bounds-checked against the buffer length; nothing here
    touches the network.
    """

    def __init__(self, data: bytes):
        self.data = memoryview(data)
        self.size = len(self.data)
        self.offset = 0

    def read(self, n: Optional[int] = None) -> bytes:
        """Return the next `n` bytes (or the remainder) and advance past them."""
        start = self.offset
        stop = self.size if n is None else start + n
        if stop < start or stop > self.size:
            raise CursorError("out of bounds")
        self.offset = stop
        return self.data[start:stop].tobytes()

    def move(self, delta: int) -> int:
        new_offset = self.offset + delta
        if not 0 <= new_offset < self.size:
            raise CursorError("out of bounds")
        self.offset = new_offset
        return new_offset

    def at_end(self) -> bool:
        return self.offset >= self.size

    def remaining(self) -> int:
        return self.size - self.offset

    def match(self, expected: bytes) -> None:
        stop = self.offset + len(expected)
        if stop > self.size:
            raise CursorError("out of bounds")
        if self.data[self.offset:stop] != expected:
            raise CursorError("match failed")
        self.offset = stop

    def read_uint(self, width: int) -> int:
        fmt = _UINT_FORMATS.get(width)
        if fmt is None:
            raise CursorError(f"invalid size {width}")
        stop = self.offset + width
        if stop > self.size:
            raise CursorError("out of bounds")
        (value,) = struct.unpack_from(fmt, self.data, self.offset)
        if value > MAX_SAFE_INTEGER:
            raise CursorError("64-bit integer too large")
        self.offset = stop
        return value

    def expect_uint(self, width: int, value: int, message: str, error=CursorError) -> None:
        """Read an integer and raise `error(message)` unless it equals `value`."""
        if self.read_uint(width) != value:
            raise error(message)
