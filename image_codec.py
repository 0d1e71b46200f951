"""Decoding and encoding of raster images.

Two JPEG backends are available: Pillow, used for every search iteration,
and jpeglib, which can be used for the final artifact once the search has
settled on a quality.
"""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import jpeglib
import numpy as np
from PIL import Image

from recompress_errors import CodecError

# The recompressor applies its own 128 MP ceiling.
Image.MAX_IMAGE_PIXELS = None

CHROMA_MODES = ("444", "422", "420")

# Pillow's ``subsampling`` values
_PIL_SUBSAMPLING = {"444": 0, "422": 1, "420": 2}

# Luma and chroma sampling factors; jpeglib reads each pair as (v, h)
_JPEGLIB_SAMP_FACTOR = {
    "444": ((1, 1), (1, 1), (1, 1)),
    "422": ((1, 2), (1, 1), (1, 1)),
    "420": ((2, 2), (1, 1), (1, 1)),
}

# Baseline (Pillow) quality -> jpeglib quality.  Each row is
# (lowest baseline quality of the band, downward adjustment).  The lower the
# quality, the more jpeglib needs to be pulled down to land on a visually
# equivalent file.  Measured empirically; not derived from any formula.
JPEGLIB_CALIBRATION = (
    (90, 1),   # 90-100
    (80, 3),   # 80-89
    (70, 5),   # 70-79
    (50, 8),   # 50-69
    (1, 12),   # 1-49
)


@dataclass(frozen=True, eq=False)
class RasterImage:
    """Decoded RGB pixels, ``uint8`` array of shape ``(height, width, 3)``."""

    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError("expected an (height, width, 3) array")
        if self.pixels.flags.writeable:
            pixels = self.pixels.view()
            pixels.flags.writeable = False
            object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_pil(cls, im: Image.Image) -> "RasterImage":
        return cls(np.asarray(im.convert("RGB"), dtype=np.uint8))

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def to_pil(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.pixels))


def probe_size(data: bytes) -> tuple[int, int]:
    """Return ``(width, height)`` from the image header without decoding."""
    try:
        with Image.open(BytesIO(data)) as im:
            return im.size
    except OSError as exc:
        raise CodecError(f"cannot identify image: {exc}", stage="decode") from exc


def decode(data: bytes) -> RasterImage:
    if not data:
        raise CodecError("empty image data", stage="decode")
    try:
        with Image.open(BytesIO(data)) as im:
            im.load()
            return RasterImage.from_pil(im)
    except (OSError, ValueError, SyntaxError) as exc:
        raise CodecError(f"cannot decode image: {exc}", stage="decode") from exc


def _encode_pillow(image: RasterImage, quality: int, chroma: str, progressive: bool) -> bytes:
    bufio = BytesIO()
    image.to_pil().save(
        bufio,
        format="JPEG",
        quality=quality,
        optimize=True,
        progressive=progressive,
        subsampling=_PIL_SUBSAMPLING[chroma],
    )
    return bufio.getvalue()


def _encode_jpeglib(image: RasterImage, quality: int, chroma: str) -> bytes:
    # jpeglib only writes to files
    with tempfile.TemporaryDirectory() as tmp:
        out = Path(tmp) / "out.jpg"
        jpeg_img = jpeglib.from_spatial(np.ascontiguousarray(image.pixels))
        jpeg_img.samp_factor = np.array(_JPEGLIB_SAMP_FACTOR[chroma])
        jpeg_img.write_spatial(str(out), qt=quality)
        return out.read_bytes()


def encode(
    image: RasterImage,
    quality: int,
    chroma: str = "444",
    *,
    codec: str = "pillow",
    progressive: bool = True,
) -> bytes:
    """Encode ``image`` as JPEG at ``quality`` (1-100)."""
    if not 1 <= quality <= 100:
        raise ValueError(f"quality {quality} outside 1-100")
    if chroma not in CHROMA_MODES:
        raise ValueError(f"unknown chroma mode {chroma!r}")
    try:
        if codec == "pillow":
            data = _encode_pillow(image, quality, chroma, progressive)
        elif codec == "jpeglib":
            data = _encode_jpeglib(image, quality, chroma)
        else:
            raise ValueError(f"unknown codec {codec!r}")
    except (OSError, RuntimeError) as exc:
        raise CodecError(f"{codec} failed at q={quality}: {exc}", stage="encode") from exc
    if not data:
        raise CodecError(f"{codec} produced no data at q={quality}", stage="encode")
    return data


def calibrate_quality(quality: int, table=JPEGLIB_CALIBRATION) -> int:
    """Map a baseline quality onto the alternate codec's scale."""
    for lowest, adjustment in table:
        if quality >= lowest:
            return max(1, min(100, quality - adjustment))
    return max(1, quality)


