from pathlib import Path
import errno
import os
import stat
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
import atomic_replace
from atomic_replace import commit, copy_through, publish, restore_attributes, temp_path_for, verify
from recompress_errors import PublishError

OLD_MTIME_NS = 1_500_000_000 * 10**9


def make_source(tmp_path: Path, data: bytes = b"original bytes") -> Path:
    src = tmp_path / "src.jpg"
    src.write_bytes(data)
    os.chmod(src, 0o640)
    os.utime(src, ns=(OLD_MTIME_NS, OLD_MTIME_NS))
    return src


def test_publish_renames(tmp_path: Path):
    temp = tmp_path / "a.tmp"
    final = tmp_path / "a.jpg"
    temp.write_bytes(b"new")
    final.write_bytes(b"old")
    publish(temp, final)
    assert final.read_bytes() == b"new"
    assert not temp.exists()


def test_publish_cross_device_fallback(tmp_path: Path, monkeypatch):
    temp = tmp_path / "a.tmp"
    final = tmp_path / "a.jpg"
    temp.write_bytes(b"new")
    real_replace = os.replace
    calls = []

    def fake_replace(src, dst):
        calls.append((Path(src).name, Path(dst).name))
        if len(calls) == 1:
            raise OSError(errno.EXDEV, "Invalid cross-device link")
        return real_replace(src, dst)

    monkeypatch.setattr(atomic_replace.os, "replace", fake_replace)
    publish(temp, final)
    assert final.read_bytes() == b"new"
    assert not temp.exists()
    # second rename comes from the staging copy beside the destination
    assert calls[1] == (".a.jpg.publish", "a.jpg")
    assert not (tmp_path / ".a.jpg.publish").exists()


def test_publish_other_errors_propagate(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        publish(tmp_path / "missing.tmp", tmp_path / "a.jpg")


def test_restore_attributes(tmp_path: Path):
    src = make_source(tmp_path)
    other = tmp_path / "other.jpg"
    other.write_bytes(b"x")
    restore_attributes(other, src.stat())
    assert stat.S_IMODE(other.stat().st_mode) == 0o640
    assert other.stat().st_mtime_ns == OLD_MTIME_NS


def test_commit_to_new_directory(tmp_path: Path):
    src = make_source(tmp_path)
    final = tmp_path / "nested" / "dir" / "out.jpg"
    temp = temp_path_for(src)
    commit(b"short", temp, final, src.stat())
    assert final.read_bytes() == b"short"
    assert not temp.exists()
    check = verify(final, src.stat())
    assert check.passed


def test_commit_failure_cleans_temp(tmp_path: Path, monkeypatch):
    src = make_source(tmp_path)
    temp = temp_path_for(src)

    def broken_publish(temp_path, final_path):
        raise OSError(errno.EACCES, "Permission denied")

    monkeypatch.setattr(atomic_replace, "publish", broken_publish)
    with pytest.raises(PublishError) as excinfo:
        commit(b"data", temp, tmp_path / "out.jpg", src.stat())
    assert excinfo.value.stage == "publish"
    assert not temp.exists()
    assert not (tmp_path / "out.jpg").exists()


def test_copy_through(tmp_path: Path):
    src = make_source(tmp_path)
    final = tmp_path / "copy" / "src.jpg"
    copy_through(src, final, src.stat())
    assert final.read_bytes() == src.read_bytes()
    assert verify(final, src.stat()).passed


def test_verify_detects_differences(tmp_path: Path):
    src = make_source(tmp_path)
    other = tmp_path / "bigger.jpg"
    other.write_bytes(b"a much longer content than the source")
    check = verify(other, src.stat())
    assert not check.is_smaller_or_equal
    assert not check.same_mod_time
    assert not verify(tmp_path / "missing.jpg", src.stat()).passed
