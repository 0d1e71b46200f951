#!/usr/bin/env python3
"""Encode an image once with the jpeglib (libjpeg) writer at a fixed quality.

Bulky metadata is dropped, the rest is carried over from the source, and the
output is marked with its own APP15 signature.  Timestamps and permissions of
the source are restored on the result.

The script name and its APP15 signature follow the ``--jpegli`` flag of the
recompressor; both write through the jpeglib package.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from atomic_replace import commit, temp_path_for
from image_codec import CHROMA_MODES, decode, encode
from jpeg_metadata import transplant
from jpeg_recompress import format_size
from recompress_errors import MetadataError, RecompressError

SIGNATURE = "jpegli-encode.py"


def encode_file(
    infile: Path,
    outfile: Path | None = None,
    *,
    quality: int = 90,
    subsample: str = "444",
    signature: str = SIGNATURE,
) -> tuple[int, int]:
    """Encode ``infile`` into ``outfile`` (or in place) and return both sizes."""
    src = Path(infile).resolve()
    dst = Path(outfile).resolve() if outfile is not None else src
    try:
        src_stat = src.stat()
        src_data = src.read_bytes()
    except OSError as exc:
        raise RecompressError(f"cannot read {src}: {exc}", stage="read") from exc

    buf = encode(decode(src_data), quality, subsample, codec="jpeglib")
    try:
        buf = transplant(src_data, buf, signature=signature)
    except ValueError as exc:
        raise MetadataError(str(exc)) from exc

    commit(buf, temp_path_for(src, ".tmp_jpegli"), dst, src_stat)
    return src_stat.st_size, dst.stat().st_size


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Encode an image with jpeglib (libjpeg) at a fixed quality.")
    p.add_argument("infile", help="input image")
    p.add_argument("outfile", nargs="?", help="output JPEG (default: replace the input)")
    p.add_argument("-q", "--quality", type=int, default=90, help="JPEG quality 1-100")
    p.add_argument("-S", "--subsample", choices=CHROMA_MODES, default="444", help="chroma subsampling")
    args = p.parse_args(argv)
    if not 1 <= args.quality <= 100:
        p.error("--quality must be between 1 and 100")
    return args


def main(argv=None) -> None:
    args = parse_args(argv)
    try:
        size_before, size_after = encode_file(
            Path(args.infile),
            Path(args.outfile) if args.outfile else None,
            quality=args.quality,
            subsample=args.subsample,
        )
    except RecompressError as exc:
        print(f"Error ({exc.stage}): {exc.message}", file=sys.stderr)
        sys.exit(1)

    gain = 100 - (size_after / size_before * 100) if size_before else 0.0
    print(f"Successfully encoded {args.infile} to {args.outfile or args.infile} (quality {args.quality})")
    print(f"Size: {format_size(size_before)} -> {format_size(size_after)} (Gain: {gain:.1f}%)")


if __name__ == "__main__":
    main()
