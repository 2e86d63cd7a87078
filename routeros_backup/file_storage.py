"""
Local Backup Storage and Retention
==================================

This module owns the on-disk layout of downloaded backups and the retention
policy applied to it.

Layout::

    <backup_root>/<device address>/<YYYY-MM-DD>_<device address>.backup

Features:
- Deterministic per-day artifact names (a re-run overwrites, never duplicates)
- Per-device retention that never touches a device without a fresh backup
- Per-device statistics for the backup report
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import List, Optional, Union

from .error_handling import BackupStorageError
from .models import RetentionPolicy

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"
RETENTION_GLOB = "*.backup*"
_BACKUP_NAME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}_(.+)\.backup$")


class LocalBackupStorage:
    """Resolves local paths for device backups."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)

    @staticmethod
    def backup_name(address: str, day: date) -> str:
        """Name used both on the device and locally, without extension."""
        return f"{day.isoformat()}_{address}"

    def device_dir(self, address: str) -> Path:
        return self.base_path / address

    def backup_path(self, address: str, day: date) -> Path:
        return self.device_dir(address) / f"{self.backup_name(address, day)}{BACKUP_SUFFIX}"

    def ensure_device_dir(self, address: str) -> Path:
        """Create the device directory if needed and check it is writable."""
        device_dir = self.device_dir(address)
        try:
            device_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupStorageError(f"Cannot create directory {device_dir}: {e}") from e

        if not os.access(device_dir, os.W_OK):
            raise BackupStorageError(f"Directory is not writable: {device_dir}")

        return device_dir


def list_backup_files(device_dir: Path, pattern: str = RETENTION_GLOB) -> List[Path]:
    """Backup files in a device directory, newest first."""
    files = [p for p in device_dir.glob(pattern) if p.is_file()]
    files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return files


def _device_dirs(backup_root: Path) -> List[Path]:
    if not backup_root.is_dir():
        return []
    return sorted(p for p in backup_root.iterdir() if p.is_dir())


@dataclass
class RetentionReport:
    """What a retention pass removed and which devices it left alone."""
    deleted: List[Path] = field(default_factory=list)
    skipped_devices: List[str] = field(default_factory=list)


class RetentionManager:
    """Applies the retention policy to every device directory under the backup root."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def cleanup(self, backup_root: Union[str, Path], retention_days: int,
                now: Optional[datetime] = None) -> RetentionReport:
        """
        For each device: keep the newest file unconditionally and delete
        other files older than ``retention_days``. A device whose newest file
        is not from today is skipped entirely, since today's run has not yet
        produced a replacement.
        """
        policy = RetentionPolicy(retention_days=retention_days)

        now = now or datetime.now()
        today = now.date()
        cutoff = (now - timedelta(days=policy.retention_days)).timestamp()
        report = RetentionReport()

        self.logger.info("Starting cleanup of old backups")

        for device_dir in _device_dirs(Path(backup_root)):
            backup_files = list_backup_files(device_dir)
            if not backup_files:
                continue

            latest = backup_files[0]
            latest_date = datetime.fromtimestamp(latest.stat().st_mtime).date()
            if latest_date != today:
                self.logger.info(f"Skipping cleanup for {device_dir.name}: no fresh backup")
                report.skipped_devices.append(device_dir.name)
                continue

            for backup_file in backup_files[1:]:
                mtime = backup_file.stat().st_mtime
                if mtime < cutoff:
                    age_days = int((now.timestamp() - mtime) // 86400)
                    backup_file.unlink()
                    report.deleted.append(backup_file)
                    self.logger.info(f"Deleted old backup: {backup_file.name} (age: {age_days} days)")

        self.logger.info(f"Cleanup of old backups finished, {len(report.deleted)} file(s) removed")
        return report


@dataclass
class DeviceBackupStats:
    """Per-device summary used in the backup report."""
    name: str
    address: str
    backups_count: int
    last_backup: datetime


def collect_backup_stats(backup_root: Union[str, Path]) -> List[DeviceBackupStats]:
    """Artifact count and latest modification time for every device directory."""
    stats = []
    for device_dir in _device_dirs(Path(backup_root)):
        backup_files = list_backup_files(device_dir, pattern=f"*{BACKUP_SUFFIX}")
        if not backup_files:
            continue

        latest = backup_files[0]
        match = _BACKUP_NAME_RE.match(latest.name)
        stats.append(DeviceBackupStats(
            name=match.group(1) if match else device_dir.name,
            address=device_dir.name,
            backups_count=len(backup_files),
            last_backup=datetime.fromtimestamp(latest.stat().st_mtime),
        ))

    return stats
