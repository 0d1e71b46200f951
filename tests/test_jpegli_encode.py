from pathlib import Path
import os
import sys

import pytest

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from jpeg_metadata import is_already_processed
from jpeg_segments import APP1, APP15, app_segments
import jpeg_recompress
from jpegli_encode import SIGNATURE, encode_file, main

OLD_MTIME_NS = 1_400_000_000 * 10**9


def make_source(path: Path) -> Path:
    exif = Image.Exif()
    exif[0x0110] = "Model X"
    Image.linear_gradient("L").convert("RGB").resize((64, 48)).save(
        path, format="JPEG", quality=100, exif=exif.tobytes()
    )
    os.chmod(path, 0o600)
    os.utime(path, ns=(OLD_MTIME_NS, OLD_MTIME_NS))
    return path


def test_encode_file_to_output(tmp_path: Path):
    infile = make_source(tmp_path / "in.jpg")
    outfile = tmp_path / "out" / "result.jpg"
    size_before, size_after = encode_file(infile, outfile, quality=80)

    data = outfile.read_bytes()
    assert size_before == infile.stat().st_size
    assert size_after == len(data)
    assert is_already_processed(data, SIGNATURE)
    markers = [s.marker for s in app_segments(data)]
    assert APP15 in markers and APP1 in markers
    assert outfile.stat().st_mtime_ns == OLD_MTIME_NS
    assert outfile.stat().st_mode & 0o777 == 0o600
    with Image.open(outfile) as im:
        assert im.size == (64, 48)


def test_main_in_place(tmp_path: Path, capsys):
    infile = make_source(tmp_path / "in.jpg")
    main([str(infile), "-q", "75"])
    out = capsys.readouterr().out
    assert "Successfully encoded" in out
    assert "(quality 75)" in out
    assert is_already_processed(infile.read_bytes(), SIGNATURE)
    assert not (tmp_path / "in.jpg.tmp_jpegli").exists()


@pytest.mark.parametrize("entry", [main, jpeg_recompress.main])
def test_help_names_the_jpeglib_writer(entry, capsys, monkeypatch):
    monkeypatch.setenv("COLUMNS", "200")
    with pytest.raises(SystemExit) as exc:
        entry(["--help"])
    assert exc.value.code == 0
    assert "jpeglib (libjpeg)" in capsys.readouterr().out
