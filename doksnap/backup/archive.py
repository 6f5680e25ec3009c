"""
Archive builder - produces one encrypted backup artifact for a source.

Workflow:
1. Run pre-backup hook
2. Create a private temporary directory
3. Create tar.gz archive of the source
4. Check plaintext size limit
5. Encrypt the archive
6. Check encrypted size limit
7. Compute checksum of the encrypted bytes and build metadata
8. Verify the encrypted file
9. Remove the plaintext archive
10. Run post-backup hook (always)
"""

import os
import glob
import shutil
import atexit
import hashlib
import logging
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from doksnap.models import Source, BackupMetadata
from .compression import create_archive, generate_archive_filename, get_archive_size, ArchiveError
from .encryption import Encryptor
from .hooks import run_hook


logger = logging.getLogger(__name__)

MAX_BACKUP_SIZE = 100 * 1024 * 1024 * 1024  # 100GB
ENCRYPTION_OVERHEAD = 1.1  # allow 10% overhead for encryption

TEMP_DIR_PREFIX = 'doksnap_'

# Temp directories owned by in-flight builds, swept at interpreter exit
_active_temp_dirs = set()
_active_lock = threading.Lock()


class SourceAccessError(Exception):
    """Raised when the source path is missing or unreadable."""
    pass


class SizeLimitExceeded(Exception):
    """Raised when an archive exceeds the configured size ceiling."""
    pass


def calculate_checksum(file_path: str) -> str:
    """SHA-256 hex digest of a file."""
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(8192), b''):
            sha256.update(chunk)
    return sha256.hexdigest()


class ArchiveBuilder:
    """
    Builds an encrypted archive for one source.

    Use as a context manager; the temporary directory holding the artifact is
    removed on exit:

        with ArchiveBuilder(source, encryptor) as builder:
            path, metadata = builder.build()
            ...
    """

    def __init__(self, source: Source, encryptor: Encryptor, temp_root: Optional[str] = None,
                 max_size: int = MAX_BACKUP_SIZE, tar_command: str = 'tar'):
        """
        Args:
            source: Source to back up
            encryptor: Configured encryption variant
            temp_root: Parent directory for the scoped temp dir (default: system temp)
            max_size: Plaintext size ceiling in bytes
            tar_command: tar executable
        """
        self.source = source
        self.encryptor = encryptor
        self.temp_root = temp_root
        self.max_size = max_size
        self.tar_command = tar_command
        self.temp_dir = None
        self.metadata = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    def build(self) -> Tuple[str, BackupMetadata]:
        """
        Run the full build.

        Returns:
            Tuple of (encrypted file path, BackupMetadata)

        Raises:
            SourceAccessError, ArchiveError, SizeLimitExceeded, EncryptionError, HookError
        """
        start_time = time.monotonic()
        hooks = self.source.hooks
        failed = True

        try:
            run_hook(hooks.pre_backup, timeout=hooks.timeout)
            result = self._build(start_time)
            failed = False
            return result
        except BaseException:
            self.cleanup()
            raise
        finally:
            self._run_post_hook(failed)

    def _build(self, start_time: float) -> Tuple[str, BackupMetadata]:
        self._check_source()
        self.temp_dir = create_temp_dir(self.temp_root)

        now = datetime.now(timezone.utc)
        archive_name = generate_archive_filename(self.source.name, now)
        archive_path = os.path.join(self.temp_dir, archive_name)
        encrypted_path = f"{archive_path}.{self.encryptor.extension}"

        logger.info(f"Creating archive for {self.source.name}")
        create_archive(self.source.path, archive_path, tar_command=self.tar_command)

        archive_size = get_archive_size(archive_path)
        if archive_size > self.max_size:
            os.remove(archive_path)
            raise SizeLimitExceeded(
                f"Backup size ({archive_size // 1048576}MB) exceeds maximum allowed size "
                f"({self.max_size // 1048576}MB)"
            )

        logger.info(f"Encrypting archive ({self.encryptor.method}, {archive_size / 1024 / 1024:.2f} MB)")
        self.encryptor.encrypt(archive_path, encrypted_path)

        encrypted_size = get_archive_size(encrypted_path)
        if encrypted_size > self.max_size * ENCRYPTION_OVERHEAD:
            os.remove(encrypted_path)
            raise SizeLimitExceeded("Encrypted backup size exceeds maximum allowed size")

        checksum = calculate_checksum(encrypted_path)
        self.metadata = BackupMetadata(
            source_name=self.source.name,
            timestamp=now.strftime('%Y-%m-%dT%H:%M:%SZ'),
            filename=os.path.basename(encrypted_path),
            size=encrypted_size,
            size_mb=round(encrypted_size / 1048576, 2),
            archive_size=archive_size,
            checksum=checksum,
            duration_seconds=round(time.monotonic() - start_time, 2),
            encryption_method=self.encryptor.method,
            source_type=self.source.type,
        )

        self._verify(encrypted_path)

        os.remove(archive_path)
        return encrypted_path, self.metadata

    def _check_source(self):
        path = self.source.path
        if not os.path.exists(path):
            raise SourceAccessError(f"Source path does not exist: {path}")
        if not os.access(path, os.R_OK) or (os.path.isdir(path) and not os.access(path, os.X_OK)):
            raise SourceAccessError(f"Source path is not readable: {path}")

    def _verify(self, file_path: str):
        if not (os.path.isfile(file_path) and os.access(file_path, os.R_OK)):
            raise ArchiveError("Backup file is not accessible")
        if os.path.getsize(file_path) == 0:
            raise ArchiveError("Backup file is empty")
        if not self.metadata or not self.metadata.checksum:
            raise ArchiveError("Backup checksum is missing")
        if calculate_checksum(file_path) != self.metadata.checksum:
            raise ArchiveError("Backup checksum verification failed")

    def _run_post_hook(self, failed: bool):
        hooks = self.source.hooks
        if not hooks.post_backup:
            return

        if not failed:
            # Failure here fails the job
            try:
                run_hook(hooks.post_backup, timeout=hooks.timeout)
            except Exception:
                self.cleanup()
                raise
            return

        try:
            run_hook(hooks.post_backup, timeout=hooks.timeout)
        except Exception as e:
            logger.error(f"Post-backup hook failed for {self.source.name}: {e}")

    def cleanup(self):
        """Remove the scoped temp directory and anything left in it."""
        if self.temp_dir:
            remove_temp_dir(self.temp_dir)
            self.temp_dir = None


def create_temp_dir(temp_root: Optional[str] = None) -> str:
    """Create an owner-only temp directory and register it for exit cleanup."""
    if temp_root:
        os.makedirs(temp_root, exist_ok=True)
    path = tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=temp_root)
    os.chmod(path, 0o700)
    with _active_lock:
        _active_temp_dirs.add(path)
    return path


def remove_temp_dir(path: str):
    """Best-effort removal of a temp directory; never raises."""
    with _active_lock:
        _active_temp_dirs.discard(path)
    if os.path.exists(path):
        try:
            shutil.rmtree(path)
            logger.debug("Cleaned up temporary directory")
        except OSError as e:
            logger.warning(f"Failed to cleanup temp directory: {e}")


@atexit.register
def cleanup_active_temp_dirs():
    """Remove temp directories of builds that never reached their cleanup."""
    with _active_lock:
        paths = list(_active_temp_dirs)
    for path in paths:
        remove_temp_dir(path)


def sweep_stale_temp_dirs(temp_root: Optional[str] = None) -> int:
    """
    Remove orphaned doksnap_* directories left by a previous process.

    Must only be called before any job starts.

    Returns:
        Number of directories removed
    """
    root = temp_root or tempfile.gettempdir()
    removed = 0
    for path in glob.glob(os.path.join(root, f"{TEMP_DIR_PREFIX}*")):
        if not os.path.isdir(path):
            continue
        with _active_lock:
            if path in _active_temp_dirs:
                continue
        try:
            shutil.rmtree(path)
            removed += 1
        except OSError as e:
            logger.warning(f"Failed to remove stale temp directory: {e}")

    if removed:
        logger.info(f"Removed {removed} stale temporary director{'y' if removed == 1 else 'ies'}")
    return removed
