from pathlib import Path
import sys
from io import BytesIO

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
from jpeg_metadata import (
    DEFAULT_SIGNATURE,
    is_already_processed,
    signature_segment,
    transplant,
)
from jpeg_segments import APP0, APP1, APP2, APP13, APP15, app_segments, find_image_data_offset


def seg(marker: int, payload: bytes) -> bytes:
    return bytes([0xFF, marker]) + (len(payload) + 2).to_bytes(2, "big") + payload


JFIF = seg(APP0, b"JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00")
EXIF = seg(APP1, b"Exif\x00\x00MM\x00*\x00\x00\x00\x08")
ICC = seg(APP2, b"ICC_PROFILE\x00\x01\x01" + bytes(32))
EXT_XMP = seg(APP1, b"http://ns.adobe.com/xmp/extension/\x00" + bytes(40))
PHOTOSHOP = seg(APP13, b"Photoshop 3.0\x008BIM" + bytes(20))
FPXR = seg(APP2, b"FPXR\x00\x00" + bytes(20))
IMAGE_DATA = b"\xff\xdb\x00\x43\x00" + bytes(64) + b"\xff\xda\x00\x08\x01\x01\x00\x00\x3f\x00\x55\xff\xd9"


def source_jpeg(*segments: bytes) -> bytes:
    return b"\xff\xd8" + b"".join(segments) + IMAGE_DATA


def fresh_encode() -> bytes:
    bufio = BytesIO()
    Image.new("RGB", (16, 16), color="green").save(bufio, format="JPEG", quality=80)
    return bufio.getvalue()


def test_layout_jfif_then_signature_then_rest():
    source = source_jpeg(EXIF, JFIF, ICC)
    encoded = fresh_encode()
    out = transplant(source, encoded)

    sig = signature_segment(DEFAULT_SIGNATURE)
    assert out.startswith(b"\xff\xd8" + JFIF + sig + EXIF + ICC)
    boundary = find_image_data_offset(encoded)
    assert out.endswith(encoded[boundary:])


def test_fresh_encode_headers_are_replaced():
    out = transplant(source_jpeg(EXIF), fresh_encode())
    markers = [s.marker for s in app_segments(out)]
    # Pillow's own JFIF header is not carried over
    assert markers == [APP15, APP1]


def test_bulky_segments_dropped_by_default():
    source = source_jpeg(JFIF, EXT_XMP, PHOTOSHOP, FPXR, EXIF)
    out = transplant(source, fresh_encode())
    raws = [s.raw for s in app_segments(out)]
    assert raws == [JFIF, signature_segment(DEFAULT_SIGNATURE), EXIF]


def test_short_segments_with_bulky_prefix_are_kept():
    tiny = seg(APP2, b"FPXR")
    out = transplant(source_jpeg(tiny), fresh_encode())
    assert tiny in out


def test_keep_all_preserves_every_segment():
    segments = [EXIF, EXT_XMP, JFIF, PHOTOSHOP, FPXR, ICC]
    out = transplant(source_jpeg(*segments), fresh_encode(), keep_all=True)
    raws = [s.raw for s in app_segments(out)]
    assert raws[0] == JFIF
    assert raws[1] == signature_segment(DEFAULT_SIGNATURE)
    assert raws[2:] == [EXIF, EXT_XMP, PHOTOSHOP, FPXR, ICC]


def test_skip_all_leaves_only_signature():
    out = transplant(source_jpeg(JFIF, EXIF, ICC), fresh_encode(), skip_all=True)
    segments = app_segments(out)
    assert len(segments) == 1
    assert segments[0].marker == APP15
    assert segments[0].payload == DEFAULT_SIGNATURE.encode()


def test_existing_signature_not_duplicated():
    source = source_jpeg(signature_segment(DEFAULT_SIGNATURE), EXIF)
    out = transplant(source, fresh_encode())
    assert out.count(DEFAULT_SIGNATURE.encode()) == 1


def test_custom_signature():
    out = transplant(source_jpeg(EXIF), fresh_encode(), signature="unit-test")
    assert is_already_processed(out, "unit-test")
    assert not is_already_processed(out)


def test_non_jpeg_source_gets_signature_only():
    bufio = BytesIO()
    Image.new("RGB", (8, 8)).save(bufio, format="PNG")
    out = transplant(bufio.getvalue(), fresh_encode())
    assert [s.marker for s in app_segments(out)] == [APP15]


def test_is_already_processed_requires_app15():
    # signature text elsewhere in the file does not count
    com = bytes([0xFF, 0xFE]) + (len(DEFAULT_SIGNATURE) + 2).to_bytes(2, "big") + DEFAULT_SIGNATURE.encode()
    assert not is_already_processed(source_jpeg(com))
    assert not is_already_processed(source_jpeg(EXIF))
    assert is_already_processed(source_jpeg(EXIF, signature_segment(DEFAULT_SIGNATURE)))


def test_is_already_processed_behind_large_segment():
    big = seg(APP1, b"http://ns.adobe.com/xap/1.0/\x00" + bytes(60000))
    data = source_jpeg(big, signature_segment(DEFAULT_SIGNATURE))
    assert is_already_processed(data)
