"""Marker-by-marker walker for JPEG byte streams.

Only the header area is interpreted.  Scanning stops at the first frame or
scan header (or, in boundary mode, at the first marker that is neither an
APPn nor a comment); everything from there on is compressed image data and
is handed back untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator

SOI = 0xD8
SOF0 = 0xC0
SOF2 = 0xC2
SOS = 0xDA
COM = 0xFE
APP0 = 0xE0
APP1 = 0xE1
APP2 = 0xE2
APP13 = 0xED
APP15 = 0xEF

SOI_BYTES = b"\xff\xd8"

IMAGE_DATA_MARKERS = frozenset((SOS, SOF0, SOF2))


class SegmentKind(Enum):
    START_OF_IMAGE = "soi"
    APPLICATION = "app"
    COMMENT = "com"
    START_OF_FRAME = "sof"
    START_OF_SCAN = "sos"
    OTHER = "other"


def is_app_marker(marker: int) -> bool:
    return APP0 <= marker <= APP15


def classify(marker: int) -> SegmentKind:
    if marker == SOI:
        return SegmentKind.START_OF_IMAGE
    if is_app_marker(marker):
        return SegmentKind.APPLICATION
    if marker == COM:
        return SegmentKind.COMMENT
    if marker in (SOF0, SOF2):
        return SegmentKind.START_OF_FRAME
    if marker == SOS:
        return SegmentKind.START_OF_SCAN
    return SegmentKind.OTHER


@dataclass(frozen=True)
class Segment:
    """A length-prefixed record; ``raw`` holds ``FF``, marker, length and payload."""

    offset: int
    marker: int
    raw: bytes

    @property
    def length(self) -> int:
        return int.from_bytes(self.raw[2:4], "big")

    @property
    def payload(self) -> bytes:
        return self.raw[4:]

    @property
    def kind(self) -> SegmentKind:
        return classify(self.marker)

    @property
    def is_app(self) -> bool:
        return is_app_marker(self.marker)


def _halts_on_image_data(marker: int) -> bool:
    return marker in IMAGE_DATA_MARKERS


def _halts_on_non_metadata(marker: int) -> bool:
    return not is_app_marker(marker) and marker != COM


class SegmentReader:
    """Pull-based cursor over the header segments of ``data``.

    ``next()`` returns the following :class:`Segment` or ``None`` once the
    headers are exhausted.  A truncated or malformed length field ends the
    walk quietly.  When the walk stopped on a halting marker its offset is
    kept in ``halted_at``.
    """

    def __init__(
        self,
        data: bytes,
        halt: Callable[[int], bool] = _halts_on_image_data,
    ) -> None:
        self._data = data
        self._halt = halt
        self._pos = 0
        self._done = False
        self.halted_at: int | None = None

    def __iter__(self) -> Iterator[Segment]:
        return self

    def __next__(self) -> Segment:
        segment = self.next()
        if segment is None:
            raise StopIteration
        return segment

    def next(self) -> Segment | None:
        data = self._data
        size = len(data)
        while not self._done and self._pos < size - 1:
            pos = self._pos
            if data[pos] != 0xFF:
                self._pos += 1
                continue
            marker = data[pos + 1]
            # byte stuffing and fill bytes
            if marker in (0x00, 0xFF):
                self._pos += 1
                continue
            if marker == SOI:
                self._pos += 2
                continue
            if self._halt(marker):
                self.halted_at = pos
                break
            if pos + 4 > size:
                break
            length = int.from_bytes(data[pos + 2:pos + 4], "big")
            end = pos + 2 + length
            if length < 2 or end > size:
                break
            self._pos = end
            return Segment(pos, marker, bytes(data[pos:end]))
        self._done = True
        return None

    def trailing_block(self) -> bytes:
        """Bytes from the halting marker to the end, or ``b""``."""
        if self.halted_at is None:
            return b""
        return bytes(self._data[self.halted_at:])


def app_segments(data: bytes) -> list[Segment]:
    """All APP0-APP15 segments located before the frame/scan headers."""
    return [seg for seg in SegmentReader(data) if seg.is_app]


def find_image_data_offset(data: bytes) -> int | None:
    """Offset of the first marker that is not SOI, APPn or COM.

    This is where quantization tables, Huffman tables and frame headers of a
    freshly encoded stream begin.
    """
    reader = SegmentReader(data, halt=_halts_on_non_metadata)
    for _ in reader:
        pass
    return reader.halted_at


def count_metadata_segments(data: bytes) -> int:
    """Number of APPn/extension/COM records (0xE0-0xFE) ahead of image data."""
    return sum(1 for seg in SegmentReader(data) if APP0 <= seg.marker <= COM)
