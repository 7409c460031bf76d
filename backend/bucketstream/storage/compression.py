"""
Compression stages for uploads.

A stage is fed chunk by chunk and returns whatever output is ready, so the
write path never holds more than one chunk plus the compressor's window.
"""
import zlib
from typing import Optional, Protocol

# wbits=16+MAX_WBITS selects the gzip container instead of raw zlib
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class CompressionStage(Protocol):
    """Incremental encoder between the consumer and the upload session."""

    content_encoding: Optional[str]

    def compress(self, data: bytes) -> bytes:
        ...

    def flush(self) -> bytes:
        ...


class IdentityStage:
    """Passes bytes through unchanged."""

    content_encoding: Optional[str] = None

    def compress(self, data: bytes) -> bytes:
        return data

    def flush(self) -> bytes:
        return b""


class GzipStage:
    """Streams a gzip member."""

    content_encoding: Optional[str] = "gzip"

    def __init__(self, level: int = 6):
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
        self._flushed = False

    def compress(self, data: bytes) -> bytes:
        if self._flushed:
            raise ValueError("compress() after flush()")
        return self._compressor.compress(data)

    def flush(self) -> bytes:
        if self._flushed:
            return b""
        self._flushed = True
        return self._compressor.flush()


def select_stage(gzip: bool) -> CompressionStage:
    """
    Pick the compression strategy for an upload.

    Args:
        gzip: Whether the object is stored gzip-encoded

    Returns:
        GzipStage when gzip is set, IdentityStage otherwise
    """
    return GzipStage() if gzip else IdentityStage()
