"""
Archive creation for backup artifacts.

Three entry points share one streaming discipline: data is always copied
through bounded buffers into a codec writer, never loaded whole.

- archive_directory: tar container of a directory tree, honouring
  exclusion patterns
- archive_file: a single file compressed directly (no container)
- archive_files: tar container of several files stored by base name
"""

import logging
import os
import tarfile
from dataclasses import dataclass, field
from typing import Iterable, List, NamedTuple, Optional

import zstandard

from .compression import (
    CodecKind,
    CompressionError,
    copy_stream,
    get_archive_size,
    open_writer,
)
from .patterns import PatternMatcher

logger = logging.getLogger(__name__)

_ARCHIVE_ERRORS = (OSError, tarfile.TarError, zstandard.ZstdError, EOFError)


class EntryDecision(NamedTuple):
    relative_path: str
    included: bool


@dataclass
class ArchiveResult:
    """A local artifact produced by the archiver."""

    path: str
    size: int
    entries: List[EntryDecision] = field(default_factory=list)
    source_bytes: int = 0

    @property
    def included(self) -> List[str]:
        return [e.relative_path for e in self.entries if e.included]

    @property
    def excluded(self) -> List[str]:
        return [e.relative_path for e in self.entries if not e.included]


def archive_directory(
    root: str,
    exclude_patterns: Optional[Iterable[str]],
    codec: CodecKind,
    destination: str
) -> ArchiveResult:
    """
    Archive a directory tree into a tar container through a codec.

    Entries are visited depth-first, each directory's children in
    lexicographic order. An excluded directory is pruned along with
    everything below it. Directories and symlinks are stored as headers
    only; symlinks are never followed.

    Args:
        root: Directory to archive
        exclude_patterns: Glob patterns of entries to leave out
        codec: Codec applied to the tar stream
        destination: Path of the artifact to create

    Returns:
        ArchiveResult with the per-entry inclusion decisions

    Raises:
        CompressionError: If the tree cannot be read or the artifact written
    """
    if not os.path.exists(root):
        raise CompressionError(f"Source directory does not exist: {root}")
    if not os.path.isdir(root):
        raise CompressionError(f"Source path is not a directory: {root}")

    abs_root = os.path.abspath(root)
    matcher = PatternMatcher(exclude_patterns)
    entries: List[EntryDecision] = []
    skip_path = os.path.abspath(destination)

    try:
        with open_writer(codec, destination) as writer:
            with tarfile.open(fileobj=writer, mode='w|') as tar:
                source_bytes = _add_tree(tar, abs_root, '', matcher, entries, skip_path)
    except CompressionError:
        raise
    except _ARCHIVE_ERRORS as e:
        raise CompressionError(f"Failed to archive directory {root}: {e}") from e

    return ArchiveResult(
        path=destination,
        size=get_archive_size(destination),
        entries=entries,
        source_bytes=source_bytes,
    )


def _add_tree(tar, directory, rel_dir, matcher, entries, skip_path) -> int:
    total = 0
    for name in sorted(os.listdir(directory)):
        abs_path = os.path.join(directory, name)
        rel_path = f"{rel_dir}/{name}" if rel_dir else name

        if abs_path == skip_path:
            continue

        if matcher.is_excluded(abs_path, rel_path):
            logger.debug(f"Excluded: {rel_path}")
            entries.append(EntryDecision(rel_path, False))
            continue

        # Hard links are stored as full copies, never as link-only entries
        tar.inodes.clear()
        info = tar.gettarinfo(abs_path, arcname=rel_path)
        if info is None:
            logger.warning(f"Skipping unsupported file type: {abs_path}")
            continue

        if info.isreg():
            with open(abs_path, 'rb') as f:
                tar.addfile(info, f)
            total += info.size
        else:
            tar.addfile(info)
        entries.append(EntryDecision(rel_path, True))

        if info.isdir():
            total += _add_tree(tar, abs_path, rel_path, matcher, entries, skip_path)

    return total


def archive_file(source_path: str, codec: CodecKind, destination: str) -> ArchiveResult:
    """
    Compress a single file directly into destination.

    Raises:
        CompressionError: If the source cannot be read or the artifact written
    """
    if not os.path.isfile(source_path):
        raise CompressionError(f"Source file does not exist or is not a regular file: {source_path}")

    try:
        with open(source_path, 'rb') as source:
            with open_writer(codec, destination) as writer:
                copy_stream(source, writer)
    except CompressionError:
        raise
    except _ARCHIVE_ERRORS as e:
        raise CompressionError(f"Failed to compress file {source_path}: {e}") from e

    return ArchiveResult(
        path=destination,
        size=get_archive_size(destination),
        source_bytes=os.path.getsize(source_path),
    )


def archive_files(source_paths: List[str], codec: CodecKind, destination: str) -> ArchiveResult:
    """
    Archive several files into one tar container.

    Each entry is stored under the file's base name only. Files with the
    same base name from different directories are all written, one after
    the other, under that same name.

    Raises:
        CompressionError: If no files are given, a file is missing or the
            artifact cannot be written
    """
    if not source_paths:
        raise CompressionError("No source files provided")

    for source_path in source_paths:
        if not os.path.exists(source_path):
            raise CompressionError(f"File does not exist: {source_path}")
        if os.path.isdir(source_path):
            raise CompressionError(f"Path is a directory, not a file: {source_path}")

    entries: List[EntryDecision] = []
    source_bytes = 0
    try:
        with open_writer(codec, destination) as writer:
            # dereference: store content for symlinked files, never hardlink entries
            with tarfile.open(fileobj=writer, mode='w|', dereference=True) as tar:
                for source_path in source_paths:
                    name = os.path.basename(source_path)
                    with open(source_path, 'rb') as f:
                        info = tar.gettarinfo(arcname=name, fileobj=f)
                        tar.addfile(info, f)
                    source_bytes += info.size
                    entries.append(EntryDecision(name, True))
    except CompressionError:
        raise
    except _ARCHIVE_ERRORS as e:
        raise CompressionError(f"Failed to archive files: {e}") from e

    return ArchiveResult(
        path=destination,
        size=get_archive_size(destination),
        entries=entries,
        source_bytes=source_bytes,
    )
