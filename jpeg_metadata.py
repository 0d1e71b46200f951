"""Carry APPn metadata from an original JPEG into a fresh encode.

The fresh encode only contributes its tables, frame/scan headers and
entropy-coded data.  The header area is rebuilt from the original file:

    SOI, JFIF APP0 (if any), APP15 signature, remaining APPn, image data

The APP15 signature marks the file as already processed so that a second
run can leave it alone.
"""

from __future__ import annotations

from typing import Iterable

from jpeg_segments import (
    APP0,
    APP1,
    APP2,
    APP13,
    APP15,
    SOI_BYTES,
    Segment,
    SegmentReader,
    app_segments,
    find_image_data_offset,
)

DEFAULT_SIGNATURE = "jpeg-recompress.py"

# (marker, minimum length field, payload prefix) of payloads dropped unless
# everything is kept: extended XMP continuation blocks, Photoshop IRB blobs
# and FlashPix streams.
BULKY_SEGMENTS = (
    (APP1, 35, b"http://ns.adobe.com/xmp/exten"),
    (APP13, 14, b"Photoshop "),
    (APP2, 10, b"FPXR"),
)

JFIF_ID = b"JFIF\x00"


def signature_segment(signature: str) -> bytes:
    """Build the APP15 record holding ``signature``."""
    payload = signature.encode("utf-8")
    if len(payload) + 2 > 0xFFFF:
        raise ValueError("signature does not fit in a single segment")
    return b"\xff\xef" + (len(payload) + 2).to_bytes(2, "big") + payload


def is_bulky(segment: Segment) -> bool:
    for marker, min_length, prefix in BULKY_SEGMENTS:
        if segment.marker != marker or segment.length <= min_length:
            continue
        payload = segment.payload
        if len(payload) >= len(prefix) and payload[:len(prefix)] == prefix:
            return True
    return False


def is_jfif(segment: Segment) -> bool:
    return segment.marker == APP0 and segment.payload[:len(JFIF_ID)] == JFIF_ID


def carries_signature(segment: Segment, signature: str) -> bool:
    return segment.marker == APP15 and signature.encode("utf-8") in segment.payload


def select_segments(
    source: bytes, *, keep_all: bool = False, skip_all: bool = False
) -> list[Segment]:
    """APPn records of ``source`` that survive the metadata policy."""
    if skip_all or not source.startswith(SOI_BYTES):
        return []
    segments = app_segments(source)
    if not keep_all:
        segments = [seg for seg in segments if not is_bulky(seg)]
    return segments


def assemble(
    segments: Iterable[Segment], encoded: bytes, signature: str
) -> bytes:
    """Rebuild ``encoded`` with ``segments`` and the signature in its header."""
    if not encoded.startswith(SOI_BYTES):
        raise ValueError("encoded stream does not start with SOI")

    kept = [seg for seg in segments if not carries_signature(seg, signature)]
    jfif = next((seg for seg in kept if is_jfif(seg)), None)

    parts = [SOI_BYTES]
    if jfif is not None:
        parts.append(jfif.raw)
        kept.remove(jfif)
    parts.append(signature_segment(signature))
    parts.extend(seg.raw for seg in kept)

    boundary = find_image_data_offset(encoded)
    parts.append(encoded[boundary:] if boundary is not None else encoded[2:])
    return b"".join(parts)


def transplant(
    source: bytes,
    encoded: bytes,
    *,
    keep_all: bool = False,
    skip_all: bool = False,
    signature: str = DEFAULT_SIGNATURE,
) -> bytes:
    """Merge metadata of ``source`` into the freshly ``encoded`` JPEG."""
    segments = select_segments(source, keep_all=keep_all, skip_all=skip_all)
    return assemble(segments, encoded, signature)


def is_already_processed(data: bytes, signature: str = DEFAULT_SIGNATURE) -> bool:
    """True if an APP15 record of ``data`` starts with ``signature``."""
    needle = signature.encode("utf-8")
    # quick reject before walking the markers
    if needle not in data:
        return False
    for segment in SegmentReader(data):
        if segment.marker == APP15 and segment.payload.startswith(needle):
            return True
    return False
