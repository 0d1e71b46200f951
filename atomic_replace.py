"""Crash-safe publication of result files.

A result is written to a temporary sibling of the source and renamed into
place.  When the destination lives on another filesystem the bytes are
copied to a hidden staging name next to the destination and renamed from
there, so no reader ever sees a half-written file.
"""

from __future__ import annotations

import errno
import os
import shutil
import stat
from dataclasses import asdict, dataclass
from pathlib import Path

from recompress_errors import PublishError

TEMP_SUFFIX = ".tmp_recompress"


@dataclass(frozen=True)
class Verification:
    is_smaller_or_equal: bool = False
    same_permissions: bool = False
    same_mod_time: bool = False

    @property
    def passed(self) -> bool:
        return self.is_smaller_or_equal and self.same_permissions and self.same_mod_time

    def to_dict(self) -> dict:
        return asdict(self)


def temp_path_for(path: Path, suffix: str = TEMP_SUFFIX) -> Path:
    return path.with_name(path.name + suffix)


def _staging_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.publish")


def publish(temp_path: Path, final_path: Path) -> None:
    """Move ``temp_path`` onto ``final_path``."""
    try:
        os.replace(temp_path, final_path)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise

    staging = _staging_path(final_path)
    try:
        shutil.copyfile(temp_path, staging)
        os.replace(staging, final_path)
    except BaseException:
        staging.unlink(missing_ok=True)
        raise
    temp_path.unlink()


def restore_attributes(path: Path, original: os.stat_result) -> None:
    """Give ``path`` the permission bits and timestamps of ``original``."""
    os.chmod(path, stat.S_IMODE(original.st_mode))
    os.utime(path, ns=(original.st_atime_ns, original.st_mtime_ns))


def commit(data: bytes, temp_path: Path, final_path: Path, original: os.stat_result) -> None:
    """Write ``data`` through ``temp_path`` to ``final_path``.

    The temporary file never outlives this call.
    """
    try:
        temp_path.write_bytes(data)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        publish(temp_path, final_path)
        restore_attributes(final_path, original)
    except OSError as exc:
        raise PublishError(f"cannot publish {final_path}: {exc}") from exc
    finally:
        temp_path.unlink(missing_ok=True)


def copy_through(source: Path, final_path: Path, original: os.stat_result) -> None:
    """Publish an unchanged copy of ``source`` at ``final_path``."""
    temp_path = temp_path_for(source)
    try:
        shutil.copy2(source, temp_path)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        publish(temp_path, final_path)
        restore_attributes(final_path, original)
    except OSError as exc:
        raise PublishError(f"cannot copy {source} to {final_path}: {exc}") from exc
    finally:
        temp_path.unlink(missing_ok=True)


def verify(final_path: Path, original: os.stat_result) -> Verification:
    try:
        final = final_path.stat()
    except OSError:
        return Verification()
    return Verification(
        is_smaller_or_equal=final.st_size <= original.st_size,
        same_permissions=stat.S_IMODE(final.st_mode) == stat.S_IMODE(original.st_mode),
        same_mod_time=final.st_mtime_ns == original.st_mtime_ns,
    )
