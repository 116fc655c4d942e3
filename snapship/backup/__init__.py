"""
Backup module for snapship.

This module handles the core backup functionality including:
- Snapshot acquisition (Consul, etcd)
- Exclusion patterns and archiving
- Compression codecs
- Verification of snapshot artifacts
- Object key layout and storage upload
- Execution orchestration
"""

from .executor import BackupExecutor, BackupReport, BatchSummary, JobState, SourceDescriptor
from .sources import ConsulSource, EtcdSource, create_source
from .compression import CodecKind, parse_codec
from .archiver import archive_directory, archive_file, archive_files
from .storage import S3Storage

__all__ = [
    'BackupExecutor',
    'BackupReport',
    'BatchSummary',
    'JobState',
    'SourceDescriptor',
    'ConsulSource',
    'EtcdSource',
    'create_source',
    'CodecKind',
    'parse_codec',
    'archive_directory',
    'archive_file',
    'archive_files',
    'S3Storage',
]
