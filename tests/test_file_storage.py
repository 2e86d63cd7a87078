"""
Tests for local backup storage, retention and report statistics.
"""

from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest
from conftest import write_backup

from routeros_backup.error_handling import BackupStorageError, ConfigurationError
from routeros_backup.file_storage import (
    LocalBackupStorage,
    RetentionManager,
    collect_backup_stats,
    list_backup_files,
)

NOW = datetime(2024, 5, 4, 12, 0, 0)
ADDRESS = "192.168.88.1"


def dated_backup(root, days_ago: int, address: str = ADDRESS):
    moment = NOW - timedelta(days=days_ago)
    name = f"{moment.date().isoformat()}_{address}.backup"
    return write_backup(root / address / name, mtime=moment)


class TestLocalBackupStorage:
    def test_paths(self, tmp_path):
        storage = LocalBackupStorage(tmp_path)

        assert storage.backup_name(ADDRESS, date(2024, 5, 4)) == "2024-05-04_192.168.88.1"
        assert storage.backup_path(ADDRESS, date(2024, 5, 4)) == (
            tmp_path / ADDRESS / "2024-05-04_192.168.88.1.backup"
        )

    def test_ensure_device_dir_creates_directory(self, tmp_path):
        storage = LocalBackupStorage(tmp_path / "root")

        device_dir = storage.ensure_device_dir(ADDRESS)

        assert device_dir.is_dir()

    def test_ensure_device_dir_rejects_read_only_directory(self, tmp_path):
        storage = LocalBackupStorage(tmp_path)

        with patch("routeros_backup.file_storage.os.access", return_value=False):
            with pytest.raises(BackupStorageError, match="not writable"):
                storage.ensure_device_dir(ADDRESS)

    def test_ensure_device_dir_reports_mkdir_failure(self, tmp_path):
        (tmp_path / "blocked").write_text("a file, not a directory")
        storage = LocalBackupStorage(tmp_path / "blocked")

        with pytest.raises(BackupStorageError, match="Cannot create directory"):
            storage.ensure_device_dir(ADDRESS)


class TestRetentionManager:
    """Tests for the per-device retention policy."""

    def test_keeps_window_and_removes_expired(self, tmp_path):
        """Test [today, -40d, -5d] with 30 days keeps today and -5d."""
        today = dated_backup(tmp_path, 0)
        expired = dated_backup(tmp_path, 40)
        recent = dated_backup(tmp_path, 5)

        report = RetentionManager().cleanup(tmp_path, 30, now=NOW)

        assert today.exists()
        assert recent.exists()
        assert not expired.exists()
        assert report.deleted == [expired]
        assert report.skipped_devices == []

    def test_device_without_fresh_backup_is_untouched(self, tmp_path):
        """Test nothing is removed when the newest file is from yesterday."""
        yesterday = dated_backup(tmp_path, 1)
        expired = dated_backup(tmp_path, 90)

        report = RetentionManager().cleanup(tmp_path, 30, now=NOW)

        assert yesterday.exists()
        assert expired.exists()
        assert report.deleted == []
        assert report.skipped_devices == [ADDRESS]

    def test_latest_file_always_kept(self, tmp_path):
        """Test retention of zero days still keeps the newest file."""
        today = dated_backup(tmp_path, 0)
        older = dated_backup(tmp_path, 1)

        RetentionManager().cleanup(tmp_path, 0, now=NOW)

        assert today.exists()
        assert not older.exists()

    def test_devices_are_independent(self, tmp_path):
        fresh_device_old = dated_backup(tmp_path, 45, address="10.0.0.1")
        dated_backup(tmp_path, 0, address="10.0.0.1")
        stale_device_old = dated_backup(tmp_path, 45, address="10.0.0.2")
        dated_backup(tmp_path, 3, address="10.0.0.2")

        report = RetentionManager().cleanup(tmp_path, 30, now=NOW)

        assert not fresh_device_old.exists()
        assert stale_device_old.exists()
        assert report.skipped_devices == ["10.0.0.2"]

    def test_encrypted_copies_count_as_backups(self, tmp_path):
        dated_backup(tmp_path, 0)
        old = write_backup(tmp_path / ADDRESS / "2024-03-01_192.168.88.1.backup.gpg",
                           mtime=NOW - timedelta(days=60))

        RetentionManager().cleanup(tmp_path, 30, now=NOW)

        assert not old.exists()

    def test_missing_root_is_a_no_op(self, tmp_path):
        report = RetentionManager().cleanup(tmp_path / "missing", 30, now=NOW)

        assert report.deleted == []

    def test_negative_retention_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError):
            RetentionManager().cleanup(tmp_path, -1, now=NOW)


class TestBackupStats:
    def test_stats_per_device(self, tmp_path):
        dated_backup(tmp_path, 2)
        latest = dated_backup(tmp_path, 0)
        (tmp_path / "empty-device").mkdir()

        stats = collect_backup_stats(tmp_path)

        assert len(stats) == 1
        assert stats[0].name == ADDRESS
        assert stats[0].address == ADDRESS
        assert stats[0].backups_count == 2
        assert stats[0].last_backup == datetime.fromtimestamp(latest.stat().st_mtime)

    def test_list_backup_files_newest_first(self, tmp_path):
        old = dated_backup(tmp_path, 10)
        new = dated_backup(tmp_path, 0)

        assert list_backup_files(tmp_path / ADDRESS) == [new, old]
