"""
Snapshot verification.

Every snapshot gets a basic check (non-empty and readable). Formats that
can be decoded locally also get a structural check:

- Consul: gzip'd tar holding meta.json, state.bin and SHA256SUMS; the
  checksums are recomputed and meta.json is parsed.
- etcd: a bbolt database, optionally followed by a 32-byte SHA-256 of the
  database; the meta page and the trailer hash are checked.
"""

import hashlib
import json
import logging
import os
import struct
import tarfile
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

READ_PROBE_SIZE = 1024
HASH_CHUNK_SIZE = 1024 * 1024

CONSUL_MEMBERS = ('meta.json', 'state.bin', 'SHA256SUMS')

BOLT_MAGIC = 0xED0CDAED
BOLT_VERSION = 2
BOLT_META_PAGE_FLAG = 0x04
BOLT_PAGE_HEADER_SIZE = 16
# magic, version, page size, flags, root bucket (2 x u64), freelist, pgid, txid
BOLT_META_CHECKSUM_OFFSET = 56
SHA256_SIZE = 32


class VerificationError(Exception):
    """Raised when a snapshot artifact fails verification."""
    pass


@dataclass
class ConsulSnapshotInfo:
    id: str
    index: int
    term: int
    version: int
    size: int


@dataclass
class EtcdSnapshotStatus:
    size: int
    page_size: int
    has_hash: bool


def verify_artifact(path: str) -> int:
    """
    Check that an artifact is non-empty and readable.

    Returns:
        Size of the file in bytes

    Raises:
        VerificationError: If the file is missing, empty or unreadable
    """
    try:
        size = os.path.getsize(path)
    except OSError as e:
        raise VerificationError(f"Failed to stat snapshot file: {e}") from e

    if size == 0:
        raise VerificationError("Snapshot file is empty")

    try:
        with open(path, 'rb') as f:
            probe = f.read(READ_PROBE_SIZE)
    except OSError as e:
        raise VerificationError(f"Failed to read snapshot file: {e}") from e

    if not probe:
        raise VerificationError("Snapshot file produced no data")
    return size


def _hash_stream(stream) -> str:
    digest = hashlib.sha256()
    while True:
        chunk = stream.read(HASH_CHUNK_SIZE)
        if not chunk:
            break
        digest.update(chunk)
    return digest.hexdigest()


def _parse_sha256sums(data: bytes) -> Dict[str, str]:
    sums = {}
    for line in data.decode('utf-8').splitlines():
        line = line.strip()
        if not line:
            continue
        digest, _, name = line.partition(' ')
        sums[name.strip()] = digest.lower()
    return sums


def inspect_consul_snapshot(path: str) -> ConsulSnapshotInfo:
    """
    Decode a Consul snapshot archive and validate its checksums.

    Raises:
        VerificationError: If the archive cannot be decoded or a checksum
            does not match
    """
    hashes: Dict[str, str] = {}
    meta_raw: Optional[bytes] = None
    sums_raw: Optional[bytes] = None

    try:
        with tarfile.open(path, mode='r|gz') as tar:
            for member in tar:
                if not member.isfile():
                    continue
                stream = tar.extractfile(member)
                if member.name == 'meta.json':
                    meta_raw = stream.read()
                    hashes[member.name] = hashlib.sha256(meta_raw).hexdigest()
                elif member.name == 'SHA256SUMS':
                    sums_raw = stream.read()
                else:
                    hashes[member.name] = _hash_stream(stream)
    except (tarfile.TarError, OSError, EOFError) as e:
        raise VerificationError(f"Consul snapshot could not be decoded, likely corrupt: {e}") from e

    found = set(hashes)
    if sums_raw is not None:
        found.add('SHA256SUMS')
    missing = [name for name in CONSUL_MEMBERS if name not in found]
    if missing:
        raise VerificationError(f"Consul snapshot is missing {', '.join(missing)}, likely corrupt")

    try:
        expected = _parse_sha256sums(sums_raw)
        meta = json.loads(meta_raw)
    except ValueError as e:
        raise VerificationError(f"Consul snapshot metadata is unreadable, likely corrupt: {e}") from e
    if not isinstance(meta, dict):
        raise VerificationError("Consul snapshot meta.json is not an object, likely corrupt")

    for name in ('meta.json', 'state.bin'):
        if expected.get(name) != hashes[name]:
            raise VerificationError(f"Consul snapshot checksum mismatch for {name}, likely corrupt")

    return ConsulSnapshotInfo(
        id=meta.get('ID', ''),
        index=meta.get('Index', 0),
        term=meta.get('Term', 0),
        version=meta.get('Version', 0),
        size=meta.get('Size', 0),
    )


def _fnv64a(data: bytes) -> int:
    value = 0xcbf29ce484222325
    for byte in data:
        value ^= byte
        value = (value * 0x100000001b3) & 0xFFFFFFFFFFFFFFFF
    return value


def _read_bolt_meta(page: bytes) -> Optional[int]:
    """Return the page size from a valid bbolt meta page, else None."""
    if len(page) < BOLT_PAGE_HEADER_SIZE + BOLT_META_CHECKSUM_OFFSET + 8:
        return None
    flags = struct.unpack_from('<H', page, 8)[0]
    meta = page[BOLT_PAGE_HEADER_SIZE:BOLT_PAGE_HEADER_SIZE + BOLT_META_CHECKSUM_OFFSET + 8]
    magic, version, page_size = struct.unpack_from('<III', meta, 0)
    checksum = struct.unpack_from('<Q', meta, BOLT_META_CHECKSUM_OFFSET)[0]
    if not flags & BOLT_META_PAGE_FLAG or magic != BOLT_MAGIC or version != BOLT_VERSION:
        return None
    if checksum != _fnv64a(meta[:BOLT_META_CHECKSUM_OFFSET]):
        return None
    return page_size


def check_etcd_snapshot(path: str) -> EtcdSnapshotStatus:
    """
    Check that an etcd snapshot is a bbolt database with an intact trailer.

    Raises:
        VerificationError: If neither meta page is valid or the trailing
            SHA-256 does not match the database content
    """
    try:
        size = os.path.getsize(path)
        with open(path, 'rb') as f:
            head = f.read(4096 * 2)
    except OSError as e:
        raise VerificationError(f"Failed to read etcd snapshot: {e}") from e

    page_size = _read_bolt_meta(head[:4096]) or _read_bolt_meta(head[4096:])
    if page_size is None:
        raise VerificationError("etcd snapshot has no valid bbolt meta page, likely corrupt")

    has_hash = size % 512 == SHA256_SIZE
    if has_hash:
        digest = hashlib.sha256()
        remaining = size - SHA256_SIZE
        try:
            with open(path, 'rb') as f:
                while remaining > 0:
                    chunk = f.read(min(HASH_CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    digest.update(chunk)
                    remaining -= len(chunk)
                trailer = f.read(SHA256_SIZE)
        except OSError as e:
            raise VerificationError(f"Failed to read etcd snapshot: {e}") from e
        if digest.digest() != trailer:
            raise VerificationError("etcd snapshot hash mismatch, likely corrupt")

    return EtcdSnapshotStatus(size=size, page_size=page_size, has_hash=has_hash)


def promote(unverified_path: str, final_path: str) -> None:
    """
    Atomically rename a verified artifact to its final name.

    Raises:
        VerificationError: If the rename fails
    """
    try:
        os.replace(unverified_path, final_path)
        dir_fd = os.open(os.path.dirname(os.path.abspath(final_path)), os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError as e:
        raise VerificationError(f"Failed to rename verified snapshot: {e}") from e
