"""Fidelity metrics between an original image and a re-encoded candidate.

PSNR, SSIM and MSE are computed on a grid sampled every ``sample`` pixels so
that large images stay affordable.  The Butteraugli distance is delegated to
the ``butteraugli_main`` tool from libjxl on images scaled down to a fixed
pixel budget.
"""

from __future__ import annotations

import math
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np
from PIL import Image
from skimage.metrics import mean_squared_error
from skimage.util import view_as_blocks

from image_codec import RasterImage
from recompress_errors import MetricError

PSNR_CEILING = 100.0

# 8-bit SSIM stabilisers: (0.01 * 255) ** 2 and (0.03 * 255) ** 2
SSIM_C1 = 6.5025
SSIM_C2 = 58.5225
SSIM_BLOCK = 8

LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])

BUTTERAUGLI_MAX_PIXELS = 500_000

# (largest pixel count, sample stride); beyond the last band nothing is sampled
SAMPLE_BANDS = (
    (1_000_000, 1),
    (4_000_000, 2),
    (16_000_000, 4),
    (64_000_000, 8),
    (128_000_000, 16),
)

DistanceFunc = Callable[[RasterImage, RasterImage], float]


@dataclass(frozen=True)
class Metric:
    """A metric name with its polarity and default acceptance threshold."""

    name: str
    default_threshold: float
    lower_is_better: bool = False

    def is_better(self, score: float, threshold: float) -> bool:
        if self.lower_is_better:
            return score <= threshold
        return score >= threshold


METRICS = {
    "psnr": Metric("psnr", 38.5),
    "ssim": Metric("ssim", 0.99),
    # scored as 1 - mse so that higher is better
    "mse": Metric("mse", 0.99995),
    "butteraugli": Metric("butteraugli", 1.0, lower_is_better=True),
}


@dataclass(frozen=True)
class MetricResult:
    kind: str
    score: float
    sample: int


def adaptive_sample(width: int, height: int) -> int:
    """Sampling stride for an image of this size; ``0`` means too large."""
    pixels = width * height
    for limit, sample in SAMPLE_BANDS:
        if pixels <= limit:
            return sample
    return 0


def _check_shapes(orig: RasterImage, comp: RasterImage) -> None:
    if orig.pixels.shape != comp.pixels.shape:
        raise MetricError(
            f"image sizes differ: {orig.width}x{orig.height} vs {comp.width}x{comp.height}"
        )


def _raw_mse(orig: RasterImage, comp: RasterImage, sample: int) -> float:
    _check_shapes(orig, comp)
    a = orig.pixels[::sample, ::sample]
    b = comp.pixels[::sample, ::sample]
    return float(mean_squared_error(a, b))


def calculate_mse(orig: RasterImage, comp: RasterImage, sample: int = 1) -> float:
    """Mean squared channel error scaled to ``[0, 1]``."""
    return _raw_mse(orig, comp, sample) / (255.0 * 255.0)


def calculate_psnr(orig: RasterImage, comp: RasterImage, sample: int = 1) -> float:
    mse = _raw_mse(orig, comp, sample)
    if mse == 0:
        return PSNR_CEILING
    return 20 * math.log10(255) - 10 * math.log10(mse)


def _sampled_luma(image: RasterImage, sample: int) -> np.ndarray:
    """Luminance of the 8x8 blocks that start every ``8 * sample`` pixels.

    The selected blocks are packed next to each other, so the result can be
    tiled with a plain 8x8 grid.
    """
    pixels = image.pixels
    if sample > 1:
        rows = np.flatnonzero((np.arange(image.height) // SSIM_BLOCK) % sample == 0)
        cols = np.flatnonzero((np.arange(image.width) // SSIM_BLOCK) % sample == 0)
        pixels = pixels[np.ix_(rows, cols)]
    return pixels.astype(np.float64) @ LUMA_WEIGHTS


def _block_ssim(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """SSIM of each row of ``a``/``b``, one flattened block per row."""
    n = a.shape[1]
    mean_a = a.mean(axis=1)
    mean_b = b.mean(axis=1)
    if n > 1:
        da = a - mean_a[:, None]
        db = b - mean_b[:, None]
        var_a = (da * da).sum(axis=1) / (n - 1)
        var_b = (db * db).sum(axis=1) / (n - 1)
        cov = (da * db).sum(axis=1) / (n - 1)
    else:
        var_a = var_b = cov = np.zeros_like(mean_a)
    num = (2 * mean_a * mean_b + SSIM_C1) * (2 * cov + SSIM_C2)
    den = (mean_a * mean_a + mean_b * mean_b + SSIM_C1) * (var_a + var_b + SSIM_C2)
    return num / den


def calculate_ssim(orig: RasterImage, comp: RasterImage, sample: int = 1) -> float:
    """Mean SSIM over non-overlapping 8x8 luminance blocks."""
    _check_shapes(orig, comp)
    a = _sampled_luma(orig, sample)
    b = _sampled_luma(comp, sample)
    h, w = a.shape
    h8, w8 = h - h % SSIM_BLOCK, w - w % SSIM_BLOCK

    total = 0.0
    count = 0
    if h8 and w8:
        shape = (SSIM_BLOCK, SSIM_BLOCK)
        blocks_a = view_as_blocks(np.ascontiguousarray(a[:h8, :w8]), shape)
        blocks_b = view_as_blocks(np.ascontiguousarray(b[:h8, :w8]), shape)
        scores = _block_ssim(
            blocks_a.reshape(-1, SSIM_BLOCK * SSIM_BLOCK),
            blocks_b.reshape(-1, SSIM_BLOCK * SSIM_BLOCK),
        )
        total += float(scores.sum())
        count += scores.size

    # clipped blocks along the right and bottom edges
    edges = []
    if w8 < w:
        edges.extend((slice(y, y + SSIM_BLOCK), slice(w8, w)) for y in range(0, h, SSIM_BLOCK))
    if h8 < h:
        edges.extend((slice(h8, h), slice(x, x + SSIM_BLOCK)) for x in range(0, w8, SSIM_BLOCK))
    for rows, cols in edges:
        score = _block_ssim(a[rows, cols].reshape(1, -1), b[rows, cols].reshape(1, -1))
        total += float(score[0])
        count += 1

    return total / count


def butteraugli_distance(orig: RasterImage, comp: RasterImage) -> float:
    """Run ``butteraugli_main`` on the two images and return its score."""
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir_path = Path(tmpdir)
        orig_png = tmpdir_path / "original.png"
        comp_png = tmpdir_path / "candidate.png"
        orig.to_pil().save(orig_png, format="PNG")
        comp.to_pil().save(comp_png, format="PNG")
        cmd = ["butteraugli_main", str(orig_png), str(comp_png)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise MetricError("butteraugli_main not found on PATH") from exc
    if result.returncode != 0:
        raise MetricError(f"butteraugli_main failed: {result.stderr.strip()}")
    try:
        return float(result.stdout.split()[0])
    except (IndexError, ValueError) as exc:
        raise MetricError(f"unexpected butteraugli_main output: {result.stdout!r}") from exc


def _downscale(image: RasterImage, size: tuple[int, int]) -> RasterImage:
    resample = Image.Resampling.BILINEAR
    return RasterImage.from_pil(image.to_pil().resize(size, resample))


def calculate_butteraugli(
    orig: RasterImage,
    comp: RasterImage,
    distance: DistanceFunc | None = None,
    max_pixels: int = BUTTERAUGLI_MAX_PIXELS,
) -> float:
    """Perceptual distance, lower is better.

    Images above ``max_pixels`` are scaled down bilinearly by
    ``sqrt(max_pixels / pixel_count)`` first; this keeps the cost bounded at
    the price of some accuracy.
    """
    _check_shapes(orig, comp)
    distance = distance or butteraugli_distance
    if orig.pixel_count <= max_pixels:
        return float(distance(orig, comp))

    scale = math.sqrt(max_pixels / orig.pixel_count)
    size = (max(1, int(orig.width * scale)), max(1, int(orig.height * scale)))
    return float(distance(_downscale(orig, size), _downscale(comp, size)))


def score(
    kind: str,
    orig: RasterImage,
    comp: RasterImage,
    sample: int = 1,
    *,
    distance: DistanceFunc | None = None,
    max_pixels: int = BUTTERAUGLI_MAX_PIXELS,
) -> MetricResult:
    """Score ``comp`` against ``orig`` with the polarity of ``METRICS[kind]``."""
    if kind == "psnr":
        value = calculate_psnr(orig, comp, sample)
    elif kind == "ssim":
        value = calculate_ssim(orig, comp, sample)
    elif kind == "mse":
        value = 1.0 - calculate_mse(orig, comp, sample)
    elif kind == "butteraugli":
        value = calculate_butteraugli(orig, comp, distance, max_pixels)
    else:
        raise ValueError(f"unknown metric {kind!r}")
    return MetricResult(kind, value, sample)
