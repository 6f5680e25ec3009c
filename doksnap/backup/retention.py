"""
Retention policy enforcement for backups.

Four layers are applied in order, each over the backups not already marked
for deletion by an earlier layer:
1. keep_last: keep the N most recent backups
2. daily: one backup per calendar day for days older than the window
3. weekly: one backup per ISO week for weeks older than the window
4. monthly: one backup per month for months older than the window

The newest backup of a bucket is always the survivor.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Dict, Any, Callable, Hashable, Optional

from doksnap.models import RemoteObject, RetentionPolicy, Source
from .storage import UploadError


logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when a single retention deletion fails."""
    pass


def _as_date(value: datetime) -> date:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.date()


def apply_count_retention(backups: List[RemoteObject], keep_count: int) -> List[str]:
    """Keys beyond the first keep_count entries of a newest-first list."""
    if len(backups) <= keep_count:
        return []
    return [b.key for b in backups[keep_count:]]


def _collapse_buckets(backups: List[RemoteObject], bucket_key: Callable[[date], Hashable],
                      cutoff: date) -> List[str]:
    """
    Group backups into buckets and keep only the newest backup of every
    bucket whose representative (newest) date is older than cutoff.
    """
    buckets: Dict[Hashable, List[RemoteObject]] = {}
    for backup in backups:
        buckets.setdefault(bucket_key(_as_date(backup.last_modified)), []).append(backup)

    to_delete = []
    for bucket_backups in buckets.values():
        ordered = sorted(bucket_backups, key=lambda b: b.last_modified, reverse=True)
        if _as_date(ordered[0].last_modified) < cutoff:
            to_delete.extend(b.key for b in ordered[1:])
    return to_delete


def apply_daily_retention(backups: List[RemoteObject], days: int, today: date) -> List[str]:
    return _collapse_buckets(backups, lambda d: d, today - timedelta(days=days))


def apply_weekly_retention(backups: List[RemoteObject], weeks: int, today: date) -> List[str]:
    return _collapse_buckets(backups, lambda d: tuple(d.isocalendar())[:2], today - timedelta(days=weeks * 7))


def apply_monthly_retention(backups: List[RemoteObject], months: int, today: date) -> List[str]:
    return _collapse_buckets(backups, lambda d: (d.year, d.month), today - timedelta(days=months * 30))


def compute_deletions(backups: List[RemoteObject], policy: RetentionPolicy,
                      today: Optional[date] = None) -> List[str]:
    """
    Compute the keys a retention policy deletes.

    Args:
        backups: All backups of one source, newest first
        policy: RetentionPolicy to apply
        today: Reference date (default: current UTC date)

    Returns:
        Keys to delete, without duplicates, in marking order
    """
    if today is None:
        today = datetime.now(timezone.utc).date()

    deleted: List[str] = []
    marked = set()

    def mark(keys):
        for key in keys:
            if key not in marked:
                marked.add(key)
                deleted.append(key)

    def remaining():
        return [b for b in backups if b.key not in marked]

    if policy.keep_last:
        mark(apply_count_retention(remaining(), policy.keep_last))

    if policy.daily:
        mark(apply_daily_retention(remaining(), policy.daily, today))

    if policy.weekly:
        mark(apply_weekly_retention(remaining(), policy.weekly, today))

    if policy.monthly:
        mark(apply_monthly_retention(remaining(), policy.monthly, today))

    return deleted


class RetentionManager:
    """
    Enforces a source's retention policy against the object store.

    Deletion is best-effort: a failed delete is recorded and the remaining
    deletions still run.
    """

    def __init__(self, uploader, source: Source):
        """
        Args:
            uploader: S3Uploader (anything with list_backups/delete_backup)
            source: Source whose backups are pruned
        """
        self.uploader = uploader
        self.source = source

    def enforce(self) -> Dict[str, Any]:
        """
        Apply the retention policy.

        Returns:
            {'deleted_count': int, 'deleted_keys': List[str], 'failed_keys': List[str]}
        """
        result = {'deleted_count': 0, 'deleted_keys': [], 'failed_keys': []}
        policy = self.source.retention

        if policy.is_empty():
            logger.debug(f"No retention policy configured for {self.source.name}")
            return result

        try:
            backups = self.uploader.list_backups(self.source.name, include_metadata=False)
        except UploadError as e:
            logger.error(f"Failed to list backups for {self.source.name}: {e}")
            return result

        if not backups:
            return result

        for key in compute_deletions(backups, policy):
            try:
                self._delete(key)
                result['deleted_keys'].append(key)
                logger.info(f"Deleted old backup: {key}")
            except RetentionError as e:
                result['failed_keys'].append(key)
                logger.error(str(e))

        result['deleted_count'] = len(result['deleted_keys'])
        return result

    def _delete(self, key: str):
        try:
            self.uploader.delete_backup(key)
        except Exception as e:
            raise RetentionError(f"Failed to delete backup {key}: {e}")


def create_retention_manager(uploader) -> Callable[[Source], RetentionManager]:
    """Factory used by the job manager to build a RetentionManager per source."""
    def factory(source: Source) -> RetentionManager:
        return RetentionManager(uploader, source)
    return factory
