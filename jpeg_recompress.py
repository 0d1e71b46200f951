#!/usr/bin/env python3
"""JPEG recompression utility driven by a quality metric.

The encoder quality is binary searched between a minimum and a maximum and
the lowest quality whose PSNR, SSIM, MSE or Butteraugli score still meets the
threshold wins.  Metadata of the original file is carried over and an APP15
signature is written so that processed files are recognised and skipped on
later runs.

The ``recompress`` function can be used programmatically; a command line
interface printing a JSON report is also provided.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from atomic_replace import (
    TEMP_SUFFIX,
    Verification,
    commit,
    copy_through,
    temp_path_for,
    verify,
)
from image_codec import (
    CHROMA_MODES,
    RasterImage,
    calibrate_quality,
    decode,
    encode,
    probe_size,
)
from jpeg_metadata import DEFAULT_SIGNATURE, is_already_processed, transplant
from jpeg_segments import count_metadata_segments
from quality_metrics import (
    BUTTERAUGLI_MAX_PIXELS,
    METRICS,
    DistanceFunc,
    Metric,
    adaptive_sample,
    calculate_butteraugli,
    calculate_mse,
    calculate_psnr,
    calculate_ssim,
    score,
)
from recompress_errors import CodecError, MetadataError, RecompressError

__version__ = "1.0.0"

DEFAULT_THRESHOLDS = {name: metric.default_threshold for name, metric in METRICS.items()}


@dataclass(frozen=True)
class Settings:
    """Constants shared by every run; swap them out in tests."""

    signature: str = DEFAULT_SIGNATURE
    thresholds: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    butteraugli_max_pixels: int = BUTTERAUGLI_MAX_PIXELS
    temp_suffix: str = TEMP_SUFFIX


@dataclass
class SearchState:
    low: int
    high: int
    step: int = 1
    best_quality: int | None = None
    best_bytes: bytes | None = None
    best_score: float | None = None
    attempts: int = 0

    @property
    def done(self) -> bool:
        return self.low > self.high

    def candidate(self) -> int:
        q = (self.low + self.high) // 2
        if self.step > 1:
            aligned = (q // self.step) * self.step
            if aligned >= self.low:
                q = aligned
        return q

    def accept(self, quality: int, data: bytes, value: float) -> None:
        self.best_quality = quality
        self.best_bytes = data
        self.best_score = value
        self.high = quality - self.step

    def reject(self, quality: int) -> None:
        self.low = quality + self.step


@dataclass
class Result:
    size_before: int = 0
    size_after: int = 0
    best_q: int | None = None
    search_q: int | None = None
    sample: int = 0
    scores: dict = field(default_factory=dict)
    skipped: bool = False
    copied: bool = False
    error: RecompressError | None = None
    duration: float = 0.0
    verification: Verification = field(default_factory=Verification)

    @property
    def status(self) -> str:
        if self.error is not None:
            return "ERROR"
        if self.skipped:
            return "SKIPPED"
        if self.copied:
            return "COPIED_NO_GAIN"
        return "SUCCESS"

    @property
    def gain_percent(self) -> float:
        if self.size_before <= 0:
            return 0.0
        return 100 - (self.size_after / self.size_before * 100)


def format_size(size: int) -> str:
    if size >= 1048576:
        return f"{size / 1048576:.2f} MB"
    return f"{size / 1024:.1f} KB"


# ---------------------------------------------------------------------------
# Quality search
# ---------------------------------------------------------------------------


def search_quality(
    encode_candidate: Callable[[int], bytes],
    evaluate: Callable[[bytes], float],
    metric: Metric,
    threshold: float,
    jpeg_min: int,
    jpeg_max: int,
    *,
    step: int = 1,
    quiet: bool = True,
) -> SearchState:
    """Binary search the lowest quality in ``[jpeg_min, jpeg_max]`` that passes.

    ``encode_candidate`` turns a quality into JPEG bytes and ``evaluate``
    scores those bytes against the original.  A candidate whose encode or
    decode fails counts as not good enough.
    """
    state = SearchState(low=jpeg_min, high=jpeg_max, step=step)
    while not state.done:
        q = state.candidate()
        state.attempts += 1
        try:
            buf = encode_candidate(q)
            value = evaluate(buf)
        except CodecError as exc:
            if not quiet:
                print(f"Attempt {state.attempts}: q={q} failed ({exc})", file=sys.stderr)
            state.reject(q)
            continue

        if not quiet:
            print(
                f"Attempt {state.attempts}: q={q}, {metric.name}={value:.5f} (threshold {threshold})",
                file=sys.stderr,
            )
        if metric.is_better(value, threshold):
            # good enough, see whether a lower quality still passes
            state.accept(q, buf, value)
        else:
            state.reject(q)
    return state


# ---------------------------------------------------------------------------
# Recompression logic
# ---------------------------------------------------------------------------


def _finish_without_gain(result: Result, src: Path, dst: Path | None, src_stat: os.stat_result) -> None:
    if dst is not None and dst != src:
        copy_through(src, dst, src_stat)
        result.copied = True
        result.verification = verify(dst, src_stat)
    else:
        result.skipped = True
        result.verification = verify(src, src_stat)
    result.size_after = result.size_before


def _final_scores(
    original: RasterImage,
    data: bytes,
    metric: str,
    sample: int,
    distance: DistanceFunc | None,
    max_pixels: int,
) -> dict:
    final_img = decode(data)
    scores = {
        "mse": calculate_mse(original, final_img, sample),
        "ssim": calculate_ssim(original, final_img, sample),
        "psnr": calculate_psnr(original, final_img, sample),
    }
    if metric == "butteraugli":
        scores["butteraugli"] = calculate_butteraugli(original, final_img, distance, max_pixels)
    return scores


def recompress(
    infile: Path,
    outfile: Path | None = None,
    *,
    metric: str = "psnr",
    target: float | None = None,
    sample: int = 0,
    jpeg_min: int = 70,
    jpeg_max: int = 90,
    subsample: str = "444",
    keep_all_metadata: bool = False,
    skip_metadata: bool = False,
    fast: bool = False,
    jpegli: bool = False,
    progressive: bool = True,
    settings: Settings = Settings(),
    distance: DistanceFunc | None = None,
    quiet: bool = False,
    debug: bool = False,
) -> Result:
    """Recompress ``infile`` and write the result to ``outfile``.

    Without ``outfile`` the source is replaced in place.  ``jpegli`` keeps
    its command line name but selects the jpeglib (libjpeg) writer for the
    final artifact.  The returned :class:`Result` describes the outcome;
    invalid arguments and processing failures alike are reported through
    ``Result.error`` rather than raised.
    """

    start = time.monotonic()
    result = Result()
    try:
        _recompress(
            result,
            Path(infile).resolve(),
            Path(outfile).resolve() if outfile is not None else None,
            metric=metric,
            target=target,
            sample=sample,
            jpeg_min=jpeg_min,
            jpeg_max=jpeg_max,
            subsample=subsample,
            keep_all_metadata=keep_all_metadata,
            skip_metadata=skip_metadata,
            step=2 if fast else 1,
            jpegli=jpegli,
            progressive=progressive,
            settings=settings,
            distance=distance,
            quiet=quiet,
            debug=debug,
        )
    except RecompressError as exc:
        result.error = exc
    result.duration = time.monotonic() - start
    return result


def _recompress(
    result: Result,
    src: Path,
    dst: Path | None,
    *,
    metric: str,
    target: float | None,
    sample: int,
    jpeg_min: int,
    jpeg_max: int,
    subsample: str,
    keep_all_metadata: bool,
    skip_metadata: bool,
    step: int,
    jpegli: bool,
    progressive: bool,
    settings: Settings,
    distance: DistanceFunc | None,
    quiet: bool,
    debug: bool,
) -> None:
    if metric not in METRICS:
        raise RecompressError(f"unknown metric {metric!r}", stage="recompress")
    if subsample not in CHROMA_MODES:
        raise RecompressError(f"unknown chroma mode {subsample!r}", stage="recompress")
    if not 1 <= jpeg_min <= jpeg_max <= 100:
        raise RecompressError(f"invalid quality range {jpeg_min}-{jpeg_max}", stage="recompress")
    metric_info = METRICS[metric]
    threshold = settings.thresholds[metric] if target is None else target

    try:
        src_stat = src.stat()
        orig_buf = src.read_bytes()
    except OSError as exc:
        raise RecompressError(f"cannot read {src}: {exc}", stage="read") from exc
    result.size_before = len(orig_buf)

    if is_already_processed(orig_buf, settings.signature):
        if not quiet:
            print(f"{src.name} already carries the signature; nothing to do.", file=sys.stderr)
        _finish_without_gain(result, src, dst, src_stat)
        return

    width, height = probe_size(orig_buf)
    actual_sample = sample if sample > 0 else adaptive_sample(width, height)
    result.sample = actual_sample
    if actual_sample == 0:
        if not quiet:
            print(f"{width}x{height} is too large to evaluate; skipping.", file=sys.stderr)
        result.skipped = True
        result.size_after = result.size_before
        if dst is None:
            result.verification = verify(src, src_stat)
        return

    original = decode(orig_buf)
    if debug:
        print(
            f"[DEBUG] {src.name}: {width}x{height}, sample={actual_sample}, "
            f"{count_metadata_segments(orig_buf)} metadata segment(s), {format_size(len(orig_buf))}",
            file=sys.stderr,
        )

    def encode_candidate(q: int) -> bytes:
        t0 = time.monotonic()
        buf = encode(original, q, subsample, progressive=progressive)
        if debug:
            gain = 100 - (len(buf) / result.size_before * 100)
            print(
                f"[DEBUG] q={q} encode={time.monotonic() - t0:.3f}s "
                f"size={format_size(len(buf))} gain={gain:.1f}%",
                file=sys.stderr,
            )
        return buf

    def evaluate(buf: bytes) -> float:
        return score(
            metric,
            original,
            decode(buf),
            actual_sample,
            distance=distance,
            max_pixels=settings.butteraugli_max_pixels,
        ).score

    state = search_quality(
        encode_candidate,
        evaluate,
        metric_info,
        threshold,
        jpeg_min,
        jpeg_max,
        step=step,
        quiet=quiet,
    )

    if state.best_bytes is None:
        if not quiet:
            print(f"No quality in {jpeg_min}-{jpeg_max} meets {metric}={threshold}.", file=sys.stderr)
        _finish_without_gain(result, src, dst, src_stat)
        return

    result.search_q = state.best_quality
    final_q = state.best_quality
    final_buf = state.best_bytes
    if jpegli:
        final_q = calibrate_quality(state.best_quality)
        final_buf = encode(original, final_q, subsample, codec="jpeglib")
        if not quiet:
            print(f"Re-encoding with jpeglib at q={final_q} (search q={state.best_quality})", file=sys.stderr)
    result.best_q = final_q

    try:
        final_buf = transplant(
            orig_buf,
            final_buf,
            keep_all=keep_all_metadata,
            skip_all=skip_metadata,
            signature=settings.signature,
        )
    except ValueError as exc:
        raise MetadataError(str(exc)) from exc

    if len(final_buf) >= result.size_before:
        if not quiet:
            print("Result is not smaller than the original; keeping the original.", file=sys.stderr)
        _finish_without_gain(result, src, dst, src_stat)
        return

    result.scores = _final_scores(
        original, final_buf, metric, actual_sample, distance, settings.butteraugli_max_pixels
    )

    target_path = dst if dst is not None else src
    commit(final_buf, temp_path_for(src, settings.temp_suffix), target_path, src_stat)

    result.size_after = target_path.stat().st_size
    result.verification = verify(target_path, src_stat)
    if not quiet:
        saved_kb = (result.size_before - result.size_after) / 1024
        pct = result.size_after * 100 // result.size_before
        print(
            f"New size: {result.size_after/1024:.2f} KB ({pct}% of original), saved {saved_kb:.2f} KB",
            file=sys.stderr,
        )


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def final_output(result: Result, infile: str, outfile: str | None, metric: str, threshold: float) -> dict:
    butteraugli = result.scores.get("butteraugli")
    out = {
        "status": result.status,
        "input": infile,
        "output": outfile or infile,
        "size_before_bytes": result.size_before,
        "size_after_bytes": result.size_after,
        "gain_percent": round(result.gain_percent, 1),
        "best_q": result.best_q,
        "search_q": result.search_q,
        "metric_used": metric.upper(),
        "threshold": threshold,
        "sample": result.sample,
        "mse": result.scores.get("mse"),
        "ssim": result.scores.get("ssim"),
        "psnr_db": round(result.scores["psnr"], 1) if "psnr" in result.scores else None,
        "butteraugli_score": round(butteraugli, 3) if butteraugli is not None else None,
        "execution_time": f"{result.duration:.3f}s",
        "test_results": result.verification.to_dict(),
    }
    if result.error is not None:
        out["error"] = result.error.message
        out["stage"] = result.error.stage
    return out


def exit_code(result: Result) -> int:
    if result.error is not None:
        return 1
    if result.status == "SUCCESS":
        return 0 if result.verification.passed else 1
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Recompress an image to the smallest JPEG meeting a quality threshold (PSNR/SSIM/MSE/Butteraugli)."
    )
    p.add_argument("infile", help="input image")
    p.add_argument("outfile", nargs="?", help="output JPEG (default: replace the input)")
    p.add_argument("-m", "--metric", choices=tuple(METRICS), default="psnr", help="quality metric to use")
    p.add_argument(
        "-t",
        "--target",
        "--threshold",
        type=float,
        dest="target",
        help="threshold (default: PSNR=38.5, SSIM=0.99, MSE=0.99995, Butteraugli=1.0)",
    )
    p.add_argument("-n", "--min", type=int, default=70, dest="qmin", help="minimum JPEG quality")
    p.add_argument("-x", "--max", type=int, default=90, dest="qmax", help="maximum JPEG quality")
    p.add_argument("--sample", type=int, default=0, help="pixel sampling stride (0=auto)")
    p.add_argument(
        "-S",
        "--subsample",
        choices=CHROMA_MODES,
        default="444",
        help="chroma subsampling",
    )
    grp = p.add_mutually_exclusive_group()
    grp.add_argument("-k", "--keep-all-metadata", action="store_true", help="keep all metadata segments")
    grp.add_argument("-s", "--strip", action="store_true", help="strip all metadata")
    p.add_argument("-f", "--fast", action="store_true", help="search qualities in steps of two")
    p.add_argument(
        "-J",
        "--jpegli",
        action="store_true",
        help="re-encode the final file with jpeglib (libjpeg) at a calibrated quality",
    )
    p.add_argument("-p", "--no-progressive", action="store_true", help="disable progressive encoding")
    p.add_argument("-Q", "--quiet", action="store_true", help="quiet mode (errors only)")
    p.add_argument("-D", "--debug", action="store_true", help="print timing and size details")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = p.parse_args(argv)

    if not 1 <= args.qmin <= args.qmax <= 100:
        p.error("qualities must satisfy 1 <= --min <= --max <= 100")
    if args.sample < 0:
        p.error("--sample must not be negative")
    return args


def main(argv=None) -> None:
    args = parse_args(argv)
    settings = Settings()
    target = settings.thresholds[args.metric] if args.target is None else args.target

    result = recompress(
        infile=Path(args.infile),
        outfile=Path(args.outfile) if args.outfile else None,
        metric=args.metric,
        target=target,
        sample=args.sample,
        jpeg_min=args.qmin,
        jpeg_max=args.qmax,
        subsample=args.subsample,
        keep_all_metadata=args.keep_all_metadata,
        skip_metadata=args.strip,
        fast=args.fast,
        jpegli=args.jpegli,
        progressive=not args.no_progressive,
        settings=settings,
        quiet=args.quiet,
        debug=args.debug,
    )

    report = final_output(result, args.infile, args.outfile, args.metric, target)
    if result.error is not None:
        print(json.dumps(report), file=sys.stderr)
    elif not args.quiet:
        print(json.dumps(report))
    sys.exit(exit_code(result))


if __name__ == "__main__":
    main()
