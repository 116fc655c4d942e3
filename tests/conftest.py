"""
Shared pytest fixtures for snapship tests.

This module provides fixtures for:
- Mock fixtures for external services (S3, public IP lookup)
- Temporary file and directory trees
- Well-formed Consul and etcd snapshot payloads
- An in-memory snapshot source and a recording object store
"""

import hashlib
import io
import json
import struct
import tarfile
from datetime import datetime

import pytest
import boto3
from moto import mock_aws

from snapship.backup.keys import IPLookup
from snapship.backup.sources import SnapshotMetadata, SnapshotSource
from snapship.backup.verify import (
    BOLT_MAGIC,
    BOLT_META_PAGE_FLAG,
    BOLT_VERSION,
    _fnv64a,
)

FIXED_TIME = datetime(2025, 1, 15, 12, 30, 45)
BOLT_PAGE_SIZE = 4096


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a temporary source tree.

    Creates:
    - src/test_file1.txt
    - src/test_file2.log
    - src/nested/test_file3.txt
    - src/node_modules/pkg/index.js (excluded in tests)
    """
    root = tmp_path / 'src'
    root.mkdir()
    (root / 'test_file1.txt').write_text('Test content 1')
    (root / 'test_file2.log').write_text('Test log content')

    nested_dir = root / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    modules = root / 'node_modules' / 'pkg'
    modules.mkdir(parents=True)
    (modules / 'index.js').write_text('module.exports = {}')

    return root


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_TIME


@pytest.fixture
def public_ip():
    return lambda: IPLookup('203.0.113.7')


@pytest.fixture
def no_public_ip():
    return lambda: IPLookup(None, 'Failed to resolve public IP (lookup disabled)')


class RecordingStorage:
    """Object store double that keeps uploaded bytes in memory."""

    def __init__(self, error=None):
        self.objects = {}
        self.uploaded_paths = []
        self.error = error

    def upload(self, local_path, key):
        if self.error:
            raise self.error
        with open(local_path, 'rb') as f:
            self.objects[key] = f.read()
        self.uploaded_paths.append(local_path)
        return key


@pytest.fixture
def storage():
    return RecordingStorage()


class FakeSource(SnapshotSource):
    """Snapshot source that writes a fixed payload."""

    def __init__(self, payload, kind='consul', position='42', details=None, error=None):
        self.payload = payload
        self.kind = kind
        self.position = position
        self.details = details or {}
        self.error = error
        self.cleaned_up = False

    def acquire(self, destination):
        if self.error:
            raise self.error
        destination.write(self.payload)
        return SnapshotMetadata(position=self.position)

    def inspect(self, path):
        return dict(self.details)

    def cleanup(self):
        self.cleaned_up = True


def build_consul_snapshot(state=b'raft state records', meta=None, corrupt_sums=False):
    """Build a Consul snapshot archive (gzip'd tar) in memory."""
    meta = meta if meta is not None else {'ID': '2-42-1700000000', 'Index': 42, 'Term': 2, 'Version': 1, 'Size': len(state)}
    meta_raw = json.dumps(meta).encode()
    sums = {
        'meta.json': hashlib.sha256(meta_raw).hexdigest(),
        'state.bin': hashlib.sha256(state).hexdigest(),
    }
    if corrupt_sums:
        sums['state.bin'] = '0' * 64
    sums_raw = ''.join(f"{digest}  {name}\n" for name, digest in sums.items()).encode()

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        for name, data in (('meta.json', meta_raw), ('state.bin', state), ('SHA256SUMS', sums_raw)):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _bolt_meta_page(page_id, txid):
    meta = struct.pack(
        '<IIIIQQQQQ',
        BOLT_MAGIC, BOLT_VERSION, BOLT_PAGE_SIZE, 0,
        3, 0,  # root bucket page, sequence
        2,  # freelist page
        4,  # high water mark
        txid,
    )
    meta += struct.pack('<Q', _fnv64a(meta))
    header = struct.pack('<QHHI', page_id, BOLT_META_PAGE_FLAG, 0, 0)
    page = header + meta
    return page + b'\x00' * (BOLT_PAGE_SIZE - len(page))


def build_etcd_snapshot(with_hash=True, corrupt=False):
    """Build a minimal bbolt file, optionally followed by its SHA-256."""
    db = _bolt_meta_page(0, 1) + _bolt_meta_page(1, 2) + b'\x00' * (BOLT_PAGE_SIZE * 2)
    if corrupt:
        db = b'\xff' * len(db)
    if with_hash:
        return db + hashlib.sha256(db).digest()
    return db


@pytest.fixture
def consul_snapshot():
    return build_consul_snapshot()


@pytest.fixture
def etcd_snapshot():
    return build_etcd_snapshot()


@pytest.fixture
def make_source():
    """Factory for in-memory snapshot sources."""
    return FakeSource


@pytest.fixture
def make_consul_snapshot():
    return build_consul_snapshot


@pytest.fixture
def make_etcd_snapshot():
    return build_etcd_snapshot


@pytest.fixture
def make_storage():
    """Factory for recording object stores, optionally failing every upload."""
    return RecordingStorage
