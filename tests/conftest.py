import uuid

import fsspec
import pytest


@pytest.fixture
def memfs():
    fs = fsspec.filesystem("memory")
    yield fs
    fs.store.clear()


@pytest.fixture
def put(memfs):
    """Store bytes in the in-memory filesystem and return their memory:// URL."""
    prefix = f"memory://tests/{uuid.uuid4().hex}"

    def _put(name, data):
        url = f"{prefix}/{name}"
        memfs.pipe_file(url, data)
        return url

    _put.prefix = prefix
    return _put
