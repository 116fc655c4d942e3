"""
Backup executor - runs one backup job through its stages.

Workflow:
1. Acquire the raw artifact (snapshot stream, or validate file/dir sources)
2. Verify it (snapshots only), then rename it to its final name
3. Compress / archive it with the selected codec
4. Build the object key (public IP lookup is best effort)
5. Upload it
6. Remove every temporary artifact, whatever happened above

Batches (several directories) run each item on its own; a failed item is
recorded and the batch moves on.
"""

import enum
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from snapship.config import ConfigurationError
from .archiver import ArchiveResult, archive_directory, archive_file, archive_files
from .compression import CodecKind, CompressionError, compression_ratio, suffix_for
from .keys import (
    IPLookup,
    build_key,
    build_prefix,
    directory_name,
    file_list_name,
    format_timestamp,
    lookup_public_ip,
    single_file_name,
    snapshot_name,
)
from .sources import AcquisitionError, SnapshotSource
from .storage import UploadError
from .verify import VerificationError, promote, verify_artifact

logger = logging.getLogger(__name__)

STAGE_ERRORS = (
    ConfigurationError,
    AcquisitionError,
    VerificationError,
    CompressionError,
    UploadError,
)


class JobState(enum.Enum):
    CREATED = 'created'
    ACQUIRING = 'acquiring'
    VERIFYING = 'verifying'
    COMPRESSING = 'compressing'
    KEY_BUILDING = 'key_building'
    UPLOADING = 'uploading'
    CLEANED = 'cleaned'
    FAILED = 'failed'


@dataclass(frozen=True)
class SourceDescriptor:
    """What to back up: one file, a list of files, or a directory."""

    kind: str
    paths: Tuple[str, ...]
    exclude_patterns: Tuple[str, ...] = ()

    FILE = 'file'
    FILES = 'files'
    DIRECTORY = 'directory'

    @classmethod
    def single_file(cls, path: str) -> 'SourceDescriptor':
        return cls(cls.FILE, (path,))

    @classmethod
    def file_list(cls, paths: Iterable[str]) -> 'SourceDescriptor':
        return cls(cls.FILES, tuple(paths))

    @classmethod
    def directory(cls, path: str, exclude_patterns: Iterable[str] = ()) -> 'SourceDescriptor':
        return cls(cls.DIRECTORY, (path,), tuple(exclude_patterns))


@dataclass(frozen=True)
class ArchiveJob:
    source: SourceDescriptor
    codec: CodecKind
    timestamp: datetime

    @property
    def timestamp_token(self) -> str:
        return format_timestamp(self.timestamp)


@dataclass
class BackupReport:
    """Outcome of one job, in the shape of a backup history record."""

    name: str
    status: str = 'running'
    state: JobState = JobState.CREATED
    failed_stage: Optional[JobState] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    upload_key: Optional[str] = None
    original_size: Optional[int] = None
    compressed_size: Optional[int] = None
    position: Optional[str] = None
    excluded: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    @property
    def ratio(self) -> Optional[float]:
        if self.original_size is None or self.compressed_size is None:
            return None
        return compression_ratio(self.original_size, self.compressed_size)


@dataclass
class BatchSummary:
    reports: List[BackupReport] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.reports if r.succeeded)

    @property
    def failed(self) -> int:
        return len(self.reports) - self.succeeded


class Workspace:
    """
    Temporary directory owned by a single job.

    Every artifact is created inside it, so removing the directory on exit
    removes raw, unverified and compressed files alike.
    """

    def __init__(self, parent: Optional[str] = None):
        self.parent = parent
        self.path = None

    def __enter__(self) -> 'Workspace':
        if self.parent:
            os.makedirs(self.parent, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix='snapship_', dir=self.parent)
        return self

    def file(self, name: str) -> str:
        return os.path.join(self.path, name)

    def __exit__(self, exc_type, exc, tb):
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            logger.warning(f"Failed to clean up temporary directory {self.path}: {e}")
        return False


class BackupExecutor:
    """
    Orchestrates backup jobs against one object store destination.
    """

    def __init__(
        self,
        storage,
        codec: CodecKind = CodecKind.ZSTD,
        object_prefix: str = '',
        temp_dir: Optional[str] = None,
        ip_resolver: Callable[[], IPLookup] = lookup_public_ip,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize backup executor.

        Args:
            storage: Object store with an upload(local_path, key) method
            codec: Codec applied to every artifact
            object_prefix: Operator supplied key prefix
            temp_dir: Parent directory for job workspaces (system default if None)
            ip_resolver: Best-effort public IP lookup
            clock: Source of job timestamps (local time)
        """
        self.storage = storage
        self.codec = codec
        self.object_prefix = object_prefix
        self.temp_dir = temp_dir
        self.ip_resolver = ip_resolver
        self.clock = clock
        self._public_ip: Optional[IPLookup] = None

    # Job entry points

    def new_job(self, source: SourceDescriptor) -> ArchiveJob:
        return ArchiveJob(source=source, codec=self.codec, timestamp=self.clock())

    def run(self, job: ArchiveJob) -> BackupReport:
        """Run a file, file-list or directory job."""
        source = job.source
        if source.kind == SourceDescriptor.DIRECTORY:
            name = source.paths[0]
            work = self._directory_workflow
        elif source.kind in (SourceDescriptor.FILE, SourceDescriptor.FILES):
            name = ', '.join(source.paths)
            work = self._files_workflow
        else:
            raise ConfigurationError(f"Unknown source kind: {source.kind}")

        return self._execute(name, lambda report, workspace: work(report, workspace, job))

    def run_snapshot(self, source: SnapshotSource) -> BackupReport:
        """Run a snapshot job against a network snapshot source."""
        moment = self.clock()

        def work(report, workspace):
            self._snapshot_workflow(report, workspace, source, moment)

        return self._execute(f"{source.kind} snapshot", work)

    def run_directory(self, path: str, exclude_patterns: Iterable[str] = ()) -> BackupReport:
        return self.run(self.new_job(SourceDescriptor.directory(path, exclude_patterns)))

    def run_files(self, paths: Sequence[str]) -> BackupReport:
        return self.run(self.new_job(SourceDescriptor.file_list(paths)))

    def run_directories(self, paths: Sequence[str], exclude_patterns: Iterable[str] = ()) -> BatchSummary:
        """
        Back up each directory independently.

        Returns:
            BatchSummary with one report per directory
        """
        patterns = tuple(exclude_patterns)
        summary = BatchSummary()

        for index, path in enumerate(paths, start=1):
            logger.info(f"Backing up directory {index}/{len(paths)}: {path}")
            summary.reports.append(self.run_directory(path, patterns))

        logger.info(
            f"All directory backups finished: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {len(paths)} total"
        )
        return summary

    # Stage runner

    def _execute(self, name: str, work) -> BackupReport:
        report = BackupReport(name=name)
        self._log(report, f"Starting backup: {name}")

        try:
            with Workspace(self.temp_dir) as workspace:
                work(report, workspace)
            report.status = 'success'
            report.state = JobState.CLEANED
            self._log(report, f"Backup completed successfully: {report.upload_key}")
        except STAGE_ERRORS as e:
            self._fail(report, e)
        except Exception as e:
            logger.exception(f"Unexpected error during {report.state.value} stage")
            self._fail(report, e)
        finally:
            report.completed_at = datetime.now(timezone.utc)

        return report

    def _fail(self, report: BackupReport, error: Exception):
        report.failed_stage = report.state
        report.state = JobState.FAILED
        report.status = 'failed'
        report.error_message = f"{report.failed_stage.value}: {error}"
        self._log(report, f"Backup failed: {report.error_message}", logging.ERROR)

    def _enter(self, report: BackupReport, state: JobState):
        report.state = state
        logger.debug(f"{report.name}: {state.value}")

    # Workflows

    def _snapshot_workflow(self, report, workspace, source: SnapshotSource, moment: datetime):
        raw_path = workspace.file(snapshot_name(source.kind, format_timestamp(moment)))
        unverified_path = raw_path + '.unverified'

        self._enter(report, JobState.ACQUIRING)
        try:
            fd = os.open(unverified_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'wb') as f:
                metadata = source.acquire(f)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise AcquisitionError(f"Failed to save snapshot to {unverified_path}: {e}") from e
        finally:
            source.cleanup()
        report.position = metadata.position
        self._log(report, f"Snapshot saved (position={metadata.position or 'unknown'})")

        self._enter(report, JobState.VERIFYING)
        size = verify_artifact(unverified_path)
        details = source.inspect(unverified_path)
        promote(unverified_path, raw_path)
        report.original_size = size
        self._log(report, f"Snapshot verified: {size} bytes ({size / 1024 / 1024:.2f} MB) {details}")

        self._enter(report, JobState.COMPRESSING)
        if self.codec is CodecKind.STORE:
            artifact_path = raw_path
            report.compressed_size = size
            self._log(report, "Codec is store, uploading snapshot as-is")
        else:
            artifact_path = raw_path + suffix_for(self.codec)
            result = archive_file(raw_path, self.codec, artifact_path)
            report.compressed_size = result.size
            self._log_compression(report)

        self._upload(report, artifact_path, moment)

    def _directory_workflow(self, report, workspace, job: ArchiveJob):
        path = job.source.paths[0]

        self._enter(report, JobState.ACQUIRING)
        if not os.path.isdir(path):
            raise AcquisitionError(f"Directory does not exist: {path}")

        self._enter(report, JobState.COMPRESSING)
        if job.source.exclude_patterns:
            self._log(report, f"Exclude patterns: {', '.join(job.source.exclude_patterns)}")
        artifact_path = workspace.file(directory_name(job.timestamp_token, path, job.codec))
        result = archive_directory(path, job.source.exclude_patterns, job.codec, artifact_path)
        self._record_archive(report, result)

        self._upload(report, artifact_path, job.timestamp)

    def _files_workflow(self, report, workspace, job: ArchiveJob):
        self._enter(report, JobState.ACQUIRING)
        valid_files = []
        for path in job.source.paths:
            if not os.path.exists(path):
                self._log(report, f"File does not exist, skipping: {path}", logging.WARNING)
            elif os.path.isdir(path):
                self._log(report, f"Path is a directory, not a file, skipping: {path}", logging.WARNING)
            elif not os.access(path, os.R_OK):
                self._log(report, f"File is not readable, skipping: {path}", logging.WARNING)
            else:
                valid_files.append(path)

        if not valid_files:
            raise AcquisitionError("No valid files to back up")
        self._log(report, f"Backing up {len(valid_files)} file(s)")

        self._enter(report, JobState.COMPRESSING)
        if len(valid_files) == 1:
            name = single_file_name(job.timestamp_token, valid_files[0], job.codec)
            result = archive_file(valid_files[0], job.codec, workspace.file(name))
        else:
            name = file_list_name(job.timestamp_token, valid_files, job.codec)
            result = archive_files(valid_files, job.codec, workspace.file(name))
        self._record_archive(report, result)

        self._upload(report, result.path, job.timestamp)

    # Shared stages

    def _record_archive(self, report: BackupReport, result: ArchiveResult):
        report.original_size = result.source_bytes
        report.compressed_size = result.size
        report.excluded = result.excluded
        if result.excluded:
            self._log(report, f"Excluded {len(result.excluded)} entries")
        self._log_compression(report)

    def _log_compression(self, report: BackupReport):
        self._log(
            report,
            f"Compression complete ({self.codec.value}): "
            f"{report.original_size / 1024 / 1024:.2f} MB -> "
            f"{report.compressed_size / 1024 / 1024:.2f} MB "
            f"(ratio {report.ratio:.1f}%)"
        )

    def _resolve_public_ip(self, report: BackupReport) -> Optional[str]:
        if self._public_ip is None:
            try:
                self._public_ip = self.ip_resolver()
            except Exception as e:
                # The IP segment is optional; lookup problems never fail a backup
                self._public_ip = IPLookup(None, f"Failed to resolve public IP ({e})")
        if self._public_ip.warning:
            self._log(report, f"{self._public_ip.warning}; object key will not include an IP segment",
                      logging.WARNING)
        return self._public_ip.ip

    def _upload(self, report: BackupReport, artifact_path: str, moment: datetime):
        self._enter(report, JobState.KEY_BUILDING)
        prefix = build_prefix(self.object_prefix, self._resolve_public_ip(report), moment)
        key = build_key(prefix, artifact_path)

        self._enter(report, JobState.UPLOADING)
        self._log(report, f"Uploading {os.path.basename(artifact_path)} to {key}")
        self.storage.upload(artifact_path, key)
        report.upload_key = key

    def _log(self, report: BackupReport, message: str, level: int = logging.INFO):
        """Record a timestamped line on the report and emit it to the logger."""
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        report.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
