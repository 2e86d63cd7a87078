"""
Tests for the bounded-concurrency dispatcher.
"""

import threading
import time

import pytest

from routeros_backup.dispatcher import BackupDispatcher
from routeros_backup.error_handling import ConfigurationError, DeviceConnectionError, ErrorCategory
from routeros_backup.models import BackupOutcome, DeviceDescriptor


def make_devices(count):
    return [
        DeviceDescriptor(
            device_id=str(index),
            name=f"router-{index}",
            host=f"router-{index}",
            address=f"10.0.0.{index}",
            username="backup",
            password="secret",
        )
        for index in range(1, count + 1)
    ]


class ConcurrencyTracker:
    """Backup stand-in that records the peak number of simultaneous calls."""

    def __init__(self, hold: float = 0.02):
        self.hold = hold
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def __call__(self, device):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.hold)
        with self.lock:
            self.active -= 1
        return BackupOutcome(device=device, success=True, size=4096)


class TestBackupDispatcher:
    """Tests for BackupDispatcher.run_all."""

    @pytest.mark.parametrize("max_concurrent,count", [(1, 4), (3, 10), (5, 2)])
    def test_never_exceeds_limit_and_returns_every_outcome(self, max_concurrent, count):
        """Test the pool size bounds in-flight backups and no device is lost."""
        tracker = ConcurrencyTracker()
        devices = make_devices(count)

        report = BackupDispatcher(tracker, max_concurrent=max_concurrent).run_all(devices)

        assert tracker.peak <= max_concurrent
        assert report.total == count
        assert report.succeeded == count
        assert {outcome.device.device_id for outcome in report.outcomes} == {d.device_id for d in devices}

    def test_exception_in_one_task_does_not_affect_others(self):
        """Test a crashing task becomes a failed outcome for that device only."""
        devices = make_devices(3)

        def run_backup(device):
            if device.device_id == "2":
                raise DeviceConnectionError("Port 22 on 10.0.0.2 is unreachable")
            return BackupOutcome(device=device, success=True, size=2048)

        report = BackupDispatcher(run_backup, max_concurrent=2).run_all(devices)

        assert report.total == 3
        assert report.succeeded == 2
        assert report.failed == 1
        failed = [outcome for outcome in report.outcomes if not outcome.success][0]
        assert failed.device.device_id == "2"
        assert failed.error_category == ErrorCategory.CONNECTION
        assert "unreachable" in failed.error

    def test_failed_outcomes_are_counted(self):
        devices = make_devices(4)

        report = BackupDispatcher(
            lambda device: BackupOutcome.failed(device, "no file"), max_concurrent=4,
        ).run_all(devices)

        assert report.failed == 4
        assert report.elapsed_seconds >= 0

    def test_empty_device_list(self):
        report = BackupDispatcher(ConcurrencyTracker()).run_all([])

        assert report.total == 0

    def test_invalid_limit_rejected(self):
        with pytest.raises(ConfigurationError):
            BackupDispatcher(ConcurrencyTracker(), max_concurrent=0)
