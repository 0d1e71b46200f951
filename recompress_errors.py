"""Error types raised by the recompression stages.

Every error carries the name of the stage that failed so that reports can say
whether reading, decoding, encoding, metadata merging or publishing broke.
"""

from __future__ import annotations


class RecompressError(Exception):
    """Base error carrying the failing ``stage``."""

    stage = "recompress"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(f"{self.stage}: {message}")


class CodecError(RecompressError):
    stage = "decode"


class MetricError(RecompressError):
    stage = "metric"


class MetadataError(RecompressError):
    stage = "metadata"


class PublishError(RecompressError):
    stage = "publish"
