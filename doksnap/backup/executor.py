"""
Backup job manager - orchestrates the complete backup workflow.

Workflow per trigger:
1. Check-and-set the source's running marker (skip if already running)
2. Build the encrypted archive (hooks, tar, encryption, verification)
3. Upload to S3
4. Remove the local artifact
5. Enforce the retention policy
6. Record a JobRecord and mark the running marker success/failed

The running markers and the job history are guarded by one lock that is
only held for bookkeeping, never while the pipeline runs.
"""

import re
import copy
import time
import logging
import threading
import traceback
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Callable

from doksnap.models import Source, JobRecord, RunningJobState
from .archive import ArchiveBuilder
from .storage import UploadError


logger = logging.getLogger(__name__)

MAX_JOB_HISTORY = 1000
RUNNING_MARKER_GRACE = timedelta(hours=1)
MAX_ERROR_LENGTH = 500

_PATH_PATTERN = re.compile(r'(?<![\w.])/(?:[\w.\-]+/?)+')
_ACCESS_KEY_PATTERN = re.compile(r'\b(AKIA|ASIA)[0-9A-Z]{16}\b')


def sanitize_error(exc: BaseException, debug: bool = False) -> str:
    """
    Turn an exception into a short message safe to show in job history.

    File paths and AWS access key ids are masked unless debug is set.
    """
    message = str(exc) or exc.__class__.__name__
    if not debug:
        message = _PATH_PATTERN.sub('<path>', message)
        message = _ACCESS_KEY_PATTERN.sub('<redacted>', message)
        message = message.replace('\n', ' ').strip()
    message = f"{exc.__class__.__name__}: {message}"
    if len(message) > MAX_ERROR_LENGTH:
        message = message[:MAX_ERROR_LENGTH - 3] + '...'
    return message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupJobManager:
    """
    Runs backup jobs and keeps their bookkeeping.

    At most one job per source is in flight; triggers that arrive while the
    source is running are dropped.
    """

    def __init__(self, encryptor, uploader, retention_factory: Callable,
                 temp_root: Optional[str] = None, debug: bool = False,
                 builder_factory: Callable = ArchiveBuilder):
        """
        Args:
            encryptor: Configured Encryptor
            uploader: S3Uploader
            retention_factory: Callable(source) -> RetentionManager
            temp_root: Parent directory for job temp dirs
            debug: Diagnostic mode (raw error messages, tracebacks in logs)
            builder_factory: Callable(source, encryptor, temp_root=...) -> ArchiveBuilder
        """
        self.encryptor = encryptor
        self.uploader = uploader
        self.retention_factory = retention_factory
        self.temp_root = temp_root
        self.debug = debug
        self.builder_factory = builder_factory

        # Called with (source_name, job_id, run_at) after each job completes
        self.on_job_finished = None

        self._lock = threading.Lock()
        self._running_jobs: Dict[str, RunningJobState] = {}
        self._job_history = deque(maxlen=MAX_JOB_HISTORY)

    def execute_backup(self, source: Source) -> Optional[JobRecord]:
        """
        Run one backup of a source.

        Returns:
            The recorded JobRecord, or None when the trigger was skipped
        """
        started_at = _utcnow()
        job_id = f"{source.name}_{int(time.time())}"

        with self._lock:
            current = self._running_jobs.get(source.name)
            if current is not None and current.is_running:
                logger.info(f"Skipping backup for {source.name}: previous backup still running")
                return None

            self._running_jobs[source.name] = RunningJobState(
                job_id=job_id,
                source_name=source.name,
                started_at=started_at,
            )

        logger.info(f"Starting backup for {source.name} (job {job_id})")

        try:
            record = self._run_pipeline(source, job_id, started_at)
        except Exception as e:
            error = sanitize_error(e, self.debug)
            if self.debug:
                logger.error(f"Backup failed for {source.name}: {e}\n{traceback.format_exc()}")
            else:
                logger.error(f"Backup failed for {source.name}: {error}")

            record = JobRecord(
                job_id=job_id,
                source_name=source.name,
                started_at=started_at,
                completed_at=_utcnow(),
                status='failed',
                error=error,
            )

        self._finish(source.name, record)
        return record

    def _run_pipeline(self, source: Source, job_id: str, started_at: datetime) -> JobRecord:
        with self.builder_factory(source, self.encryptor, temp_root=self.temp_root) as builder:
            backup_file, metadata = builder.build()

            upload_result = self.uploader.upload(backup_file, metadata)
            if not upload_result.get('success'):
                raise UploadError(f"Upload failed: {upload_result.get('error')}")

            logger.info(f"Backup uploaded successfully for {source.name}: {upload_result['key']}")

        # Artifact and temp dir are gone once the builder exits
        retention_result = self.retention_factory(source).enforce()
        logger.info(
            f"Retention policy enforced for {source.name}: "
            f"deleted {retention_result['deleted_count']} old backups"
        )

        return JobRecord(
            job_id=job_id,
            source_name=source.name,
            started_at=started_at,
            completed_at=_utcnow(),
            status='success',
            metadata=metadata,
            s3_key=upload_result['key'],
            retention_deleted=retention_result['deleted_count'],
        )

    def _finish(self, source_name: str, record: JobRecord):
        with self._lock:
            self._job_history.append(record)

            marker = self._running_jobs.get(source_name)
            if marker is not None and marker.job_id == record.job_id:
                marker.status = record.status
                marker.completed_at = record.completed_at
                marker.metadata = record.metadata
                marker.error = record.error

        logger.info(f"Backup job {record.job_id} completed with status: {record.status}")

        if self.on_job_finished is not None:
            try:
                self.on_job_finished(source_name, record.job_id, record.completed_at + RUNNING_MARKER_GRACE)
            except Exception as e:
                logger.warning(f"Failed to schedule running marker removal for {source_name}: {e}")

    def evict_running_marker(self, source_name: str, job_id: str) -> bool:
        """
        Drop a finished marker once its grace period has passed.

        Returns:
            True if the marker was removed
        """
        with self._lock:
            marker = self._running_jobs.get(source_name)
            if marker is None or marker.job_id != job_id or marker.is_running:
                return False
            if _utcnow() - marker.completed_at < RUNNING_MARKER_GRACE:
                return False
            del self._running_jobs[source_name]
            return True

    def is_running(self, source_name: str) -> bool:
        with self._lock:
            marker = self._running_jobs.get(source_name)
            return marker is not None and marker.is_running

    def running_jobs(self) -> Dict[str, RunningJobState]:
        """Snapshot of the running markers, expired ones hidden."""
        now = _utcnow()
        with self._lock:
            return {
                name: copy.deepcopy(marker)
                for name, marker in self._running_jobs.items()
                if marker.is_running or now - marker.completed_at < RUNNING_MARKER_GRACE
            }

    def job_history(self, limit: int = 100, source_name: Optional[str] = None) -> List[JobRecord]:
        """
        Most recent job records, oldest first.

        Args:
            limit: Maximum number of records (capped at MAX_JOB_HISTORY)
            source_name: Only records of this source
        """
        limit = max(0, min(limit, MAX_JOB_HISTORY))
        with self._lock:
            records = [
                r for r in self._job_history
                if source_name is None or r.source_name == source_name
            ]
        if limit == 0:
            return []
        return copy.deepcopy(records[-limit:])
