import asyncio
import json

import pytest

from cloud_dzip.accessor import Accessor, files_dir_name, open_accessor, resolve_tile_path
from cloud_dzip.errors import DziError, PathConventionError, TileFetchError
from cloud_dzip.pyramid import PyramidDescriptor
from zipbuilder import build_zip, make_dzi

TILE_0 = b"tile zero"
TILE_1 = b"tile one, a little longer"


@pytest.fixture
def dzip_url(put):
    files = [
        ("image.dzi", make_dzi(width=300, height=200, fmt="jpg")),
        ("image_files/0/0_0.jpg", TILE_0),
        ("image_files/9/1_0.jpg", TILE_1),
    ]
    return put("image.dzip", build_zip(files))


@pytest.fixture
def dzi_url(put):
    put("image_files/0/0_0.png", TILE_0)
    put("image_files/2/1_1.png", TILE_1)
    return put("image.dzi", make_dzi(width=4, height=3, fmt="png"))


def test_resolve_tile_path():
    assert resolve_tile_path(2, 3, 4, "jpg") == "2/3_4.jpg"


def test_files_dir_name():
    assert files_dir_name("image.dzi") == "image_files"
    assert files_dir_name("/a/b/slide.dzi") == "/a/b/slide_files"


def test_archived_tiles(dzip_url):
    async def scenario():
        async with await open_accessor(dzip_url) as accessor:
            return accessor, await accessor.fetch_tile(0, 0, 0), await accessor.fetch_tile(9, 1, 0)

    accessor, tile_0, tile_1 = asyncio.run(scenario())
    assert accessor.backing.kind == "archived"
    assert accessor.backing.files_dir_path == "/image_files"
    assert accessor.descriptor == PyramidDescriptor(width=300, height=200, tile_size=256, overlap=1, format="jpg")
    assert accessor.resolve_tile_path(9, 1, 0) == "9/1_0.jpg"
    assert tile_0 == TILE_0
    assert tile_1 == TILE_1


def test_archived_missing_tile(dzip_url):
    async def scenario():
        accessor = await open_accessor(dzip_url)
        return await accessor.fetch_tile(3, 0, 0)

    with pytest.raises(TileFetchError, match="image_files/3/0_0.jpg"):
        asyncio.run(scenario())


def test_fetch_tiles_reports_failures_per_tile(dzip_url):
    async def scenario():
        accessor = await open_accessor(dzip_url)
        return await accessor.fetch_tiles([(0, 0, 0), (5, 5, 5), (9, 1, 0)])

    first, missing, last = asyncio.run(scenario())
    assert first == TILE_0
    assert isinstance(missing, TileFetchError)
    assert last == TILE_1


def test_internal_descriptor_path(put):
    files = [
        ("readme.xml", b"<not-a-dzi/>"),
        ("slides/slide.dzi", make_dzi(width=10, height=10, fmt="png")),
        ("slides/slide_files/0/0_0.png", TILE_0),
    ]
    url = put("bundle.dzip", build_zip(files)) + "/slides/slide.dzi"

    async def scenario():
        accessor = await open_accessor(url)
        return accessor, await accessor.fetch_tile(0, 0, 0)

    accessor, tile = asyncio.run(scenario())
    assert accessor.backing.files_dir_path == "/slides/slide_files"
    assert tile == TILE_0


def test_bad_internal_path(put):
    url = put("bundle.dzip", build_zip([("a.dzi", make_dzi())])) + "/notes.txt"
    with pytest.raises(PathConventionError):
        asyncio.run(open_accessor(url))


def test_archive_without_descriptor(put):
    url = put("bundle.dzip", build_zip([("nested/a.dzi", make_dzi()), ("tile.jpg", TILE_0)]))
    with pytest.raises(PathConventionError, match="Could not find DZI"):
        asyncio.run(open_accessor(url))


def test_direct_tiles(dzi_url):
    async def scenario():
        async with await open_accessor(dzi_url) as accessor:
            return accessor, await accessor.fetch_tile(0, 0, 0), await accessor.fetch_tile(2, 1, 1)

    accessor, tile_0, tile_1 = asyncio.run(scenario())
    assert accessor.backing.kind == "direct"
    assert accessor.backing.files_dir_url == dzi_url[:-len("image.dzi")] + "image_files"
    assert tile_0 == TILE_0
    assert tile_1 == TILE_1


def test_direct_missing_tile(dzi_url):
    async def scenario():
        accessor = await open_accessor(dzi_url)
        return await accessor.fetch_tile(1, 0, 0)

    with pytest.raises(TileFetchError):
        asyncio.run(scenario())


def test_url_without_dzi(put):
    url = put("image.png", TILE_0)
    with pytest.raises(PathConventionError):
        asyncio.run(open_accessor(url))


def test_level_fragment(dzi_url):
    accessor = asyncio.run(open_accessor(dzi_url + "#level=1"))
    assert accessor.level_index == 1
    assert [(level.width, level.height) for level in accessor.levels] == [(2, 2)]

    with pytest.raises(PathConventionError):
        asyncio.run(open_accessor(dzi_url + "#level=7"))


@pytest.mark.parametrize("fixture_name", ["dzip_url", "dzi_url"])
def test_plain_round_trip(request, fixture_name):
    url = request.getfixturevalue(fixture_name)
    accessor = asyncio.run(open_accessor(url))
    plain = json.loads(json.dumps(accessor.to_plain()))

    restored = Accessor.from_plain(plain)
    assert restored.to_plain() == accessor.to_plain()
    assert restored.descriptor == accessor.descriptor
    assert restored.backing == accessor.backing
    assert asyncio.run(restored.fetch_tile(0, 0, 0)) == TILE_0


def test_from_plain_unknown_backing():
    plain = {
        "descriptor": PyramidDescriptor(10, 10, 256, 0, "png").to_plain(),
        "backing": {"kind": "s3-bucket"},
        "levelIndex": None,
    }
    with pytest.raises(DziError, match="s3-bucket"):
        Accessor.from_plain(plain)


def test_from_plain_missing_level(dzi_url):
    plain = asyncio.run(open_accessor(dzi_url)).to_plain()
    plain["levelIndex"] = 99
    with pytest.raises(DziError, match="No level 99"):
        Accessor.from_plain(plain)
