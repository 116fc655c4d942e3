"""
Streaming codecs for backup artifacts.

Supported codecs:
- zstd: Zstandard frames (default)
- gzip: Deflate with a gzip header
- store: No compression, bytes are written as-is

Each codec has two canonical suffixes: one for a directly compressed file
(``.zst``, ``.gz``, none) and one for a compressed tar container
(``.tar.zst``, ``.tgz``, ``.tar``).
"""

import enum
import gzip
import os
import shutil
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional, Union

import zstandard

from snapship.config import ConfigurationError

# Bounded copy size used for every stream copy
CHUNK_SIZE = 1024 * 1024

ZSTD_LEVEL = 3
GZIP_LEVEL = 6


class CompressionError(Exception):
    """Raised when an artifact cannot be compressed or archived."""
    pass


class CodecKind(enum.Enum):
    STORE = 'store'
    GZIP = 'gzip'
    ZSTD = 'zstd'


SUPPORTED_CODECS = tuple(kind.value for kind in CodecKind)

# Older configurations spell 'store' as 'none'
_ALIASES = {'none': CodecKind.STORE}

_SUFFIXES = {
    CodecKind.STORE: ('', '.tar'),
    CodecKind.GZIP: ('.gz', '.tgz'),
    CodecKind.ZSTD: ('.zst', '.tar.zst'),
}


def parse_codec(value: Optional[Union[str, CodecKind]]) -> CodecKind:
    """
    Parse a codec name given by the operator.

    An empty value selects zstd. Anything outside the supported set is
    rejected here rather than silently defaulted later.

    Raises:
        ConfigurationError: If the codec is not supported
    """
    if isinstance(value, CodecKind):
        return value
    name = (value or '').strip().lower()
    if not name:
        return CodecKind.ZSTD
    if name in _ALIASES:
        return _ALIASES[name]
    try:
        return CodecKind(name)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported compression method: {value!r}. "
            f"Supported methods: {', '.join(SUPPORTED_CODECS)}"
        ) from None


def suffix_for(kind: CodecKind, container: bool = False) -> str:
    """Return the file suffix for a codec, for a plain file or a tar container."""
    single, wrapped = _SUFFIXES[kind]
    return wrapped if container else single


class _PassThroughWriter:
    """Writer for the store codec; closing it leaves the file open."""

    def __init__(self, fileobj: BinaryIO):
        self._fileobj = fileobj

    def write(self, data) -> int:
        return self._fileobj.write(data)

    def flush(self):
        self._fileobj.flush()

    def close(self):
        self._fileobj.flush()


def _make_writer(kind: CodecKind, fileobj: BinaryIO):
    if kind is CodecKind.ZSTD:
        compressor = zstandard.ZstdCompressor(level=ZSTD_LEVEL)
        return compressor.stream_writer(fileobj, closefd=False)
    if kind is CodecKind.GZIP:
        return gzip.GzipFile(fileobj=fileobj, mode='wb', compresslevel=GZIP_LEVEL)
    return _PassThroughWriter(fileobj)


def _make_reader(kind: CodecKind, fileobj: BinaryIO):
    if kind is CodecKind.ZSTD:
        return zstandard.ZstdDecompressor().stream_reader(fileobj, closefd=False)
    if kind is CodecKind.GZIP:
        return gzip.GzipFile(fileobj=fileobj, mode='rb')
    return fileobj


@contextmanager
def open_writer(kind: CodecKind, destination: str) -> Iterator[BinaryIO]:
    """
    Open a compressing writer over a new destination file.

    The codec writer is closed (writing its trailer) before the destination
    file is closed, on both normal exit and error.

    Args:
        kind: Codec to apply
        destination: Path of the file to create

    Yields:
        Writable binary stream

    Raises:
        CompressionError: If the destination or codec cannot be opened
    """
    try:
        fileobj = open(destination, 'wb')
    except OSError as e:
        raise CompressionError(f"Failed to create output file {destination}: {e}") from e

    try:
        try:
            writer = _make_writer(kind, fileobj)
        except (zstandard.ZstdError, OSError, ValueError) as e:
            raise CompressionError(f"Failed to create {kind.value} writer: {e}") from e
        try:
            yield writer
        finally:
            writer.close()
    finally:
        fileobj.close()


@contextmanager
def open_reader(kind: CodecKind, source: str) -> Iterator[BinaryIO]:
    """Open a decompressing reader over an existing artifact."""
    with open(source, 'rb') as fileobj:
        reader = _make_reader(kind, fileobj)
        try:
            yield reader
        finally:
            if reader is not fileobj:
                reader.close()


def copy_stream(source: BinaryIO, destination: BinaryIO) -> None:
    """Copy one stream into another in bounded chunks."""
    shutil.copyfileobj(source, destination, CHUNK_SIZE)


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an artifact in bytes.

    Raises:
        CompressionError: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Compressed size as a percentage of the original (0 for empty input)."""
    if original_size <= 0:
        return 0.0
    return compressed_size / original_size * 100
