"""
Unit tests for retention policy enforcement (doksnap/backup/retention.py).

Tests the pure deletion computation for every tier and the best-effort
deletion pass against the object store.
"""

from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from doksnap.models import RetentionPolicy
from doksnap.backup.retention import (
    RetentionManager,
    compute_deletions,
    apply_count_retention,
    create_retention_manager,
)
from doksnap.backup.storage import UploadError


TODAY = date(2024, 3, 20)  # a Wednesday


def _keys(backups):
    return [b.key for b in backups]


class FakeStore:
    """In-memory list_backups/delete_backup pair."""

    def __init__(self, backups, failing=()):
        self.backups = list(backups)
        self.failing = set(failing)
        self.deleted = []

    def list_backups(self, source_name, include_metadata=True):
        return list(self.backups)

    def delete_backup(self, key):
        if key in self.failing:
            raise UploadError(f"S3 delete failed (AccessDenied): {key}")
        self.deleted.append(key)
        self.backups = [b for b in self.backups if b.key != key]


class TestKeepLast:

    def test_entries_beyond_n_are_deleted(self, remote_backups, utc):
        backups = remote_backups(*[utc(2024, 3, day, 3) for day in range(1, 6)])

        deleted = compute_deletions(backups, RetentionPolicy(keep_last=2), TODAY)

        assert deleted == _keys(backups[2:])

    def test_fewer_than_n_deletes_nothing(self, remote_backups, utc):
        backups = remote_backups(utc(2024, 3, 1), utc(2024, 3, 2))

        assert apply_count_retention(backups, 5) == []

    def test_empty_policy_deletes_nothing(self, remote_backups, utc):
        backups = remote_backups(*[utc(2024, 1, day) for day in range(1, 20)])

        assert compute_deletions(backups, RetentionPolicy(), TODAY) == []

    def test_keep_last_with_weekly_example(self, remote_backups, utc):
        """Nine daily backups over three weeks with keep_last=2, weekly=1."""
        backups = remote_backups(*[utc(2024, 3, 20, 3) - timedelta(days=2 * i) for i in range(9)])

        deleted = compute_deletions(backups, RetentionPolicy(keep_last=2, weekly=1), TODAY)

        # keep_last caps the total; later tiers only see the survivors
        assert deleted == _keys(backups[2:])
        assert len(set(deleted)) == 7


class TestTimeBuckets:

    def test_daily_collapses_old_days_only(self, remote_backups, utc):
        backups = remote_backups(
            utc(2024, 3, 10, 1), utc(2024, 3, 10, 2), utc(2024, 3, 10, 3),
            utc(2024, 3, 19, 1), utc(2024, 3, 19, 2),
        )

        deleted = compute_deletions(backups, RetentionPolicy(daily=3), TODAY)

        # Newest of the old day survives; the recent day is untouched
        assert sorted(deleted) == sorted([
            'backups/blog/20240310_010000_blog.tar.gz.enc',
            'backups/blog/20240310_020000_blog.tar.gz.enc',
        ])

    def test_weekly_uses_iso_weeks(self, remote_backups, utc):
        backups = remote_backups(
            utc(2024, 3, 4), utc(2024, 3, 5),    # week 10, old
            utc(2024, 3, 11), utc(2024, 3, 13),  # week 11, newest on the cutoff
            utc(2024, 3, 18), utc(2024, 3, 19),  # week 12, current
        )

        deleted = compute_deletions(backups, RetentionPolicy(weekly=1), TODAY)

        assert deleted == ['backups/blog/20240304_000000_blog.tar.gz.enc']

    def test_weekly_bucket_spanning_year_boundary(self, remote_backups, utc):
        # 2024-12-30 and 2025-01-02 share ISO week 1 of 2025
        backups = remote_backups(utc(2024, 12, 30), utc(2025, 1, 2))

        deleted = compute_deletions(backups, RetentionPolicy(weekly=1), date(2025, 3, 1))

        assert deleted == ['backups/blog/20241230_000000_blog.tar.gz.enc']

    def test_monthly(self, remote_backups, utc):
        backups = remote_backups(
            utc(2023, 12, 1), utc(2023, 12, 15),
            utc(2024, 1, 5), utc(2024, 1, 25),
        )

        deleted = compute_deletions(backups, RetentionPolicy(monthly=2), TODAY)

        assert deleted == ['backups/blog/20231201_000000_blog.tar.gz.enc']

    def test_one_survivor_per_old_bucket(self, remote_backups, utc):
        backups = remote_backups(*[utc(2024, 1, 1) + timedelta(hours=6 * i) for i in range(40)])

        deleted = set(compute_deletions(backups, RetentionPolicy(daily=7), TODAY))
        survivors = [b for b in backups if b.key not in deleted]

        days = [b.last_modified.date() for b in survivors]
        assert len(days) == len(set(days)) == 10
        # The survivor of each day is its latest backup
        assert all(b.last_modified.hour == 18 for b in survivors)

    def test_layers_never_mark_a_key_twice(self, remote_backups, utc):
        backups = remote_backups(*[utc(2023, 10, 1) + timedelta(hours=12 * i) for i in range(300)])

        deleted = compute_deletions(
            backups, RetentionPolicy(daily=7, weekly=4, monthly=3), TODAY
        )

        assert len(deleted) == len(set(deleted))
        # The newest backup is never deleted
        assert backups[0].key not in deleted

    @freeze_time('2024-03-20 12:00:00')
    def test_default_today_is_current_utc_date(self, remote_backups, utc):
        backups = remote_backups(utc(2024, 3, 16, 1), utc(2024, 3, 16, 2))

        assert compute_deletions(backups, RetentionPolicy(daily=3)) == [
            'backups/blog/20240316_010000_blog.tar.gz.enc'
        ]
        assert compute_deletions(backups, RetentionPolicy(daily=4)) == []

    @pytest.mark.parametrize('policy', [
        RetentionPolicy(keep_last=3),
        RetentionPolicy(daily=2, weekly=2),
        RetentionPolicy(keep_last=50, daily=7, weekly=4, monthly=2),
    ])
    def test_second_pass_deletes_nothing(self, remote_backups, utc, policy):
        backups = remote_backups(*[utc(2023, 12, 1) + timedelta(hours=10 * i) for i in range(250)])

        deleted = set(compute_deletions(backups, policy, TODAY))
        remaining = [b for b in backups if b.key not in deleted]

        assert compute_deletions(remaining, policy, TODAY) == []


class TestRetentionManager:

    def test_enforce_deletes_and_reports(self, make_source, remote_backups, utc):
        store = FakeStore(remote_backups(*[utc(2024, 3, day) for day in range(1, 6)]))
        source = make_source(retention=RetentionPolicy(keep_last=3))

        result = RetentionManager(store, source).enforce()

        assert result['deleted_count'] == 2
        assert result['deleted_keys'] == store.deleted
        assert result['failed_keys'] == []
        assert len(store.backups) == 3

    def test_failed_delete_does_not_stop_the_pass(self, make_source, remote_backups, utc, caplog):
        backups = remote_backups(*[utc(2024, 3, day) for day in range(1, 6)])
        failing = backups[3].key
        store = FakeStore(backups, failing=[failing])
        source = make_source(retention=RetentionPolicy(keep_last=2))

        result = RetentionManager(store, source).enforce()

        assert result['deleted_count'] == 2
        assert result['failed_keys'] == [failing]
        assert failing not in result['deleted_keys']
        assert f"Failed to delete backup {failing}" in caplog.text

    def test_enforce_is_idempotent(self, make_source, remote_backups, utc):
        store = FakeStore(remote_backups(*[utc(2024, 1, 1) + timedelta(hours=8 * i) for i in range(60)]))
        source = make_source(retention=RetentionPolicy(keep_last=20, daily=5))
        manager = RetentionManager(store, source)

        assert manager.enforce()['deleted_count'] > 0
        assert manager.enforce()['deleted_count'] == 0

    def test_listing_failure_yields_empty_result(self, make_source):
        uploader = MagicMock()
        uploader.list_backups.side_effect = UploadError('S3 list failed (AccessDenied)')
        source = make_source(retention=RetentionPolicy(keep_last=1))

        result = RetentionManager(uploader, source).enforce()

        assert result == {'deleted_count': 0, 'deleted_keys': [], 'failed_keys': []}
        uploader.delete_backup.assert_not_called()

    def test_empty_policy_skips_listing(self, make_source):
        uploader = MagicMock()

        result = RetentionManager(uploader, make_source()).enforce()

        assert result['deleted_count'] == 0
        uploader.list_backups.assert_not_called()

    def test_lists_without_metadata(self, make_source):
        uploader = MagicMock()
        uploader.list_backups.return_value = []

        RetentionManager(uploader, make_source(retention=RetentionPolicy(daily=1))).enforce()

        uploader.list_backups.assert_called_once_with('blog', include_metadata=False)

    def test_factory(self, make_source):
        uploader = MagicMock()
        source = make_source()

        manager = create_retention_manager(uploader)(source)

        assert manager.uploader is uploader
        assert manager.source is source
