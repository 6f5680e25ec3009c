"""
Backup module for DokSnap.

This module handles the core backup functionality including:
- Archive creation and pre/post hooks
- Encryption (GPG or AES-256)
- Upload to S3
- Retention policy enforcement
- Job orchestration
"""

from .archive import ArchiveBuilder, SourceAccessError, SizeLimitExceeded
from .compression import ArchiveError
from .encryption import GPGEncryptor, AES256Encryptor, EncryptionError, create_encryptor
from .executor import BackupJobManager
from .hooks import HookError
from .retention import RetentionManager, RetentionError, compute_deletions
from .storage import S3Uploader, UploadError

__all__ = [
    'ArchiveBuilder',
    'ArchiveError',
    'SourceAccessError',
    'SizeLimitExceeded',
    'GPGEncryptor',
    'AES256Encryptor',
    'EncryptionError',
    'create_encryptor',
    'BackupJobManager',
    'HookError',
    'RetentionManager',
    'RetentionError',
    'compute_deletions',
    'S3Uploader',
    'UploadError'
]
