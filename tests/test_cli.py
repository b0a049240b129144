import pytest

from cloud_dzip.core import _output_path, format_size, main, match_files
from cloud_dzip.errors import ArchiveFormatError
from zipbuilder import build_zip, make_dzi

TILE = b"\x89PNG pretend tile"


@pytest.fixture
def dzip_url(put):
    files = [
        ("image.dzi", make_dzi(width=600, height=400, tile_size=256, fmt="png")),
        ("image_files/0/0_0.png", TILE),
        ("image_files/10/2_1.png", TILE * 2),
    ]
    return put("image.dzip", build_zip(files))


def test_format_size():
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.00 KB"


def test_match_files():
    names = ["image.dzi", "image_files/0/0_0.png", "image_files/10/2_1.png"]
    assert match_files(names, ["*.png"]) == ["image_files/0/0_0.png", "image_files/10/2_1.png"]
    assert match_files(names, [r"/10/"], use_regex=True) == ["image_files/10/2_1.png"]


def test_info(dzip_url, capsys):
    assert main([dzip_url, "--info"]) == 0
    out = capsys.readouterr().out
    assert "Size: 600x400" in out
    assert "Storage: archived" in out
    assert "10: 600x400 (3x2 tiles)" in out


def test_list(dzip_url, capsys):
    assert main([dzip_url, "-l"]) == 0
    err = capsys.readouterr().err
    assert "Files in the ZIP archive (3):" in err
    assert "image_files/10/2_1.png" in err


def test_extract(dzip_url, tmp_path):
    assert main([dzip_url, "-e", "image_files/*.png", "-o", str(tmp_path)]) == 0
    assert (tmp_path / "image_files" / "0" / "0_0.png").read_bytes() == TILE
    assert (tmp_path / "image_files" / "10" / "2_1.png").read_bytes() == TILE * 2


def test_extract_flatten_parallel(dzip_url, tmp_path):
    assert main([dzip_url, "-e", "*.png", "-o", str(tmp_path), "-p", "--flatten"]) == 0
    assert sorted(p.name for p in tmp_path.iterdir()) == ["0_0.png", "2_1.png"]


def test_tile_to_file(dzip_url, tmp_path):
    target = tmp_path / "tile.png"
    assert main([dzip_url, "--tile", "10/2_1", "-o", str(target)]) == 0
    assert target.read_bytes() == TILE * 2


def test_missing_entry(dzip_url, tmp_path, capsys):
    assert main([dzip_url, "-e", "nope.txt", "-o", str(tmp_path)]) == 1
    assert "File not found: nope.txt" in capsys.readouterr().err


def test_missing_tile(dzip_url, capsys):
    assert main([dzip_url, "--tile", "3/0_0"]) == 1
    assert "Failed fetching tile" in capsys.readouterr().err


@pytest.fixture
def escaping_url(put):
    return put("evil.zip", build_zip([("../escaped.txt", b"outside"), ("ok.txt", b"inside")]))


def test_extract_refuses_parent_paths(escaping_url, tmp_path, capsys):
    out = tmp_path / "out"
    assert main([escaping_url, "-e", "../escaped.txt", "-o", str(out)]) == 1
    assert not (tmp_path / "escaped.txt").exists()
    assert "outside of" in capsys.readouterr().err


def test_parallel_extract_skips_escaping_entries(escaping_url, tmp_path):
    out = tmp_path / "out"
    assert main([escaping_url, "-e", "*.txt", "-o", str(out), "-p"]) == 0
    assert not (tmp_path / "escaped.txt").exists()
    assert (out / "ok.txt").read_bytes() == b"inside"


@pytest.mark.parametrize("name", ["/etc/passwd", "a/../../b", ".."])
def test_output_path_stays_in_directory(tmp_path, name):
    with pytest.raises(ArchiveFormatError):
        _output_path(str(tmp_path), name, flatten=False)


def test_output_path_inside_directory(tmp_path):
    assert _output_path(str(tmp_path), "a/../b/c.png", flatten=False) == str(tmp_path / "a/../b/c.png")
    assert _output_path(str(tmp_path), "x/y/c.png", flatten=True) == str(tmp_path / "c.png")
