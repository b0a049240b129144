import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
import fsspec
from fsspec.core import split_protocol

from .errors import TransportError

logger = logging.getLogger(__name__)

_ASYNC_HTTP_PROTOCOLS = ("http", "https")


def filesystem_for(url: str, **storage_options) -> fsspec.AbstractFileSystem:
    """Pick the fsspec filesystem able to serve `url`.

    HTTP(S) gets a private, asynchronous aiohttp-backed instance so its
    session belongs to the running event loop; every other protocol uses
    fsspec's regular (cached) filesystem.
    """
    protocol = split_protocol(url)[0] or "file"
    if protocol in _ASYNC_HTTP_PROTOCOLS:
        return fsspec.filesystem(protocol, asynchronous=True, skip_instance_cache=True, **storage_options)
    return fsspec.filesystem(protocol, **storage_options)


def _runs_async(fs: fsspec.AbstractFileSystem) -> bool:
    return getattr(fs, "async_impl", False) and getattr(fs, "asynchronous", False)


async def cat_url(fs: fsspec.AbstractFileSystem, url: str, start: Optional[int] = None,
                  end: Optional[int] = None) -> bytes:
    """Fetch `url[start:end]` in one request; a negative `start` with no `end` is a suffix read."""
    try:
        if _runs_async(fs):
            return await fs._cat_file(url, start=start, end=end)
        return await asyncio.to_thread(fs.cat_file, url, start=start, end=end)
    except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportError(f"Could not retrieve data from {url}: {e}") from e


async def close_filesystem(fs: fsspec.AbstractFileSystem) -> None:
    """Close the aiohttp session behind an asynchronous HTTP filesystem, if any."""
    if _runs_async(fs) and hasattr(fs, "set_session"):
        session = await fs.set_session()
        await session.close()


async def _probe_size(fs: fsspec.AbstractFileSystem, url: str) -> Optional[int]:
    try:
        if _runs_async(fs):
            info = await fs._info(url)
        else:
            info = await asyncio.to_thread(fs.info, url)
    except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportError(f"Could not retrieve size for {url}: {e}") from e
    return info.get("size")


class ByteRangeSource:
    """A remote, immutable blob that is only ever read through byte ranges."""

    def __init__(self, url: str, size: int, fs: Optional[fsspec.AbstractFileSystem] = None):
        self.url = url
        self._size = size
        self._owns_fs = fs is None
        self.fs = fs if fs is not None else filesystem_for(url)

    @classmethod
    async def open(cls, url: str, fs: Optional[fsspec.AbstractFileSystem] = None,
                   **storage_options) -> "ByteRangeSource":
        owns_fs = fs is None
        if fs is None:
            fs = filesystem_for(url, **storage_options)
        try:
            size = await _probe_size(fs, url)
            if size is None:
                raise TransportError(f"Response from {url} had no (accessible) Content-Length header")
            try:
                size = int(size)
            except (TypeError, ValueError):
                raise TransportError(f"Response from {url} had bad Content-Length header: {size}") from None
        except TransportError:
            if owns_fs:
                await close_filesystem(fs)
            raise
        logger.debug("Opened %s (%d bytes)", url, size)
        source = cls(url, size, fs=fs)
        source._owns_fs = owns_fs
        return source

    @property
    def size(self) -> int:
        return self._size

    async def read(self, offset: int, length: Optional[int] = None) -> bytes:
        """Read `length` bytes at `offset`, or the last `-offset` bytes when `offset` is negative.

        A tail read longer than the blob yields the whole blob.
        """
        if offset < 0:
            start, end = offset, None
            first, stop = max(self._size + offset, 0), self._size
        else:
            if length == 0:
                return b""
            start = offset
            end = None if length is None else offset + length
            first, stop = offset, self._size if end is None else min(end, self._size)
        expected = max(stop - first, 0)
        logger.debug("Reading %s start=%s end=%s", self.url, start, end)
        data = await cat_url(self.fs, self.url, start=start, end=end)

        if len(data) == self._size and len(data) != expected:
            # Server ignored the Range header and sent the whole representation
            return data[first:stop]
        if len(data) > expected:
            raise TransportError(f"Unexpected response length from {self.url}: {len(data)}")
        return data

    async def close(self) -> None:
        """Release the HTTP session if this source created its own filesystem."""
        if self._owns_fs:
            await close_filesystem(self.fs)

    def to_plain(self) -> Dict[str, Any]:
        return {"url": self.url, "size": self._size}

    @classmethod
    def from_plain(cls, value: Dict[str, Any], fs: Optional[fsspec.AbstractFileSystem] = None) -> "ByteRangeSource":
        return cls(value["url"], int(value["size"]), fs=fs)

    def __repr__(self):
        return f"ByteRangeSource({self.url!r}, size={self._size})"
