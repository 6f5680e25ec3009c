from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, Dict, Any


@dataclass(frozen=True)
class RetentionPolicy:
    """Layered keep-policy for a source. A tier set to None deletes nothing."""

    keep_last: Optional[int] = None
    daily: Optional[int] = None
    weekly: Optional[int] = None
    monthly: Optional[int] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.keep_last, self.daily, self.weekly, self.monthly))


@dataclass(frozen=True)
class Hooks:
    """Pre/post backup hook commands"""

    pre_backup: Optional[str] = None
    post_backup: Optional[str] = None
    timeout: Optional[float] = None  # seconds, None = wait forever


@dataclass(frozen=True)
class Source:
    """A named backup target (docker volume or plain directory)"""

    name: str
    type: str  # 'volume' or 'directory'
    path: str
    schedule: str  # crontab expression
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    hooks: Hooks = field(default_factory=Hooks)

    def __repr__(self):
        return f'<Source {self.name} type={self.type} schedule={self.schedule!r}>'


@dataclass
class BackupMetadata:
    """Describes one encrypted backup artifact produced by the archive builder"""

    source_name: str
    timestamp: str  # ISO-8601, UTC
    filename: str
    size: int  # encrypted file size in bytes
    size_mb: float
    archive_size: int  # plaintext archive size in bytes
    checksum: str  # sha256 of the encrypted bytes
    duration_seconds: float
    encryption_method: str
    source_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def s3_metadata(self) -> Dict[str, str]:
        """Object tags stored alongside the uploaded object (values must be strings)."""
        return {
            'source-name': self.source_name,
            'timestamp': self.timestamp,
            'size': str(self.size),
            'checksum': self.checksum,
            'encryption-method': self.encryption_method,
            'source-type': self.source_type,
        }


@dataclass
class RemoteObject:
    """A backup as it exists in the object store"""

    key: str
    size: int
    last_modified: datetime
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'size': self.size,
            'size_mb': round(self.size / 1024 / 1024, 2),
            'last_modified': self.last_modified.isoformat(),
        }


@dataclass
class JobRecord:
    """Outcome of one backup attempt, kept in the bounded job history"""

    job_id: str
    source_name: str
    started_at: datetime
    completed_at: datetime
    status: str  # success or failed
    metadata: Optional[BackupMetadata] = None
    s3_key: Optional[str] = None
    retention_deleted: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'source_name': self.source_name,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat(),
            'status': self.status,
            'size_mb': self.metadata.size_mb if self.metadata else None,
            'duration_seconds': self.metadata.duration_seconds if self.metadata else None,
            'retention_deleted': self.retention_deleted,
            'error': self.error,
        }

    def __repr__(self):
        return f'<JobRecord {self.job_id} status={self.status}>'


@dataclass
class RunningJobState:
    """Transient marker for a source's in-flight (or recently finished) job"""

    job_id: str
    source_name: str
    started_at: datetime
    status: str = 'running'  # running, success, failed
    completed_at: Optional[datetime] = None
    metadata: Optional[BackupMetadata] = None
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == 'running'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'source_name': self.source_name,
            'started_at': self.started_at.isoformat(),
            'status': self.status,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'error': self.error,
        }
