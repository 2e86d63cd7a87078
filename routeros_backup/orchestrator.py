"""
Backup Run Orchestrator
=======================

Top-level flow of one backup run: fetch the device list, back up every
device (sequentially or through the dispatcher), publish per-device and
overall status, then send the report and apply retention on a clean run.

Features:
- Device selection by host, name or address
- Sequential or bounded-concurrency execution
- Status reporting failures never change a backup outcome
- Weekly report day plus on-demand reporting
- Process exit code as the run result (0 ok, 1 any failure)
"""

import logging
import time
from datetime import date
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .dispatcher import BackupDispatcher
from .error_handling import BackupError, ConfigurationError, ErrorClassifier
from .file_storage import RetentionManager
from .inventory import MAIN_STATUS_ID, MAIN_STATUS_KEY, InventoryService
from .logging_setup import ContextAdapter
from .models import BackupOutcome, DeviceDescriptor

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_FAILED = 1


def select_devices(devices: Sequence[DeviceDescriptor], selector: Optional[str]) -> List[DeviceDescriptor]:
    if not selector:
        return list(devices)
    return [device for device in devices if device.matches(selector)]


class BackupOrchestrator:
    """Runs a complete backup pass over the inventory."""

    def __init__(self, inventory: InventoryService,
                 run_backup: Callable[[DeviceDescriptor], BackupOutcome],
                 backup_root: Union[str, Path],
                 retention_days: int = 30,
                 group_id: Optional[str] = None,
                 max_concurrent: int = 5,
                 notifier=None,
                 retention: Optional[RetentionManager] = None,
                 report_weekday: Optional[int] = 5,
                 today: Callable[[], date] = date.today,
                 logger: Optional[logging.Logger] = None):
        self.inventory = inventory
        self.run_backup = run_backup
        self.backup_root = Path(backup_root)
        self.retention_days = retention_days
        self.group_id = group_id
        self.max_concurrent = max_concurrent
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self.retention = retention or RetentionManager(logger=self.logger)
        self.report_weekday = report_weekday
        self.today = today

    @classmethod
    def from_settings(cls, settings, inventory: InventoryService, run_backup,
                      notifier=None, logger: Optional[logging.Logger] = None) -> "BackupOrchestrator":
        return cls(
            inventory=inventory,
            run_backup=run_backup,
            backup_root=settings.backup_path,
            retention_days=settings.retention_policy.retention_days,
            group_id=settings.zabbix_group_id or None,
            max_concurrent=settings.max_concurrent_backups,
            notifier=notifier,
            report_weekday=settings.report_weekday,
            logger=logger,
        )

    def is_report_day(self) -> bool:
        return self.report_weekday is not None and self.today().weekday() == self.report_weekday

    def run(self, device_selector: Optional[str] = None, concurrent: bool = False,
            report: bool = False) -> int:
        """Run the backup pass and return the process exit code."""
        start_time = time.monotonic()

        send_report = report or self.is_report_day()
        self.logger.debug(
            f"Run parameters: device={device_selector or 'all'}, concurrent={concurrent}, "
            f"report={send_report}"
        )
        if send_report and self.notifier is None:
            self.logger.error("Backup report requested but Telegram is not configured")
            return 1

        try:
            self.logger.info("Starting backup run")

            devices = select_devices(self.inventory.list_devices(self.group_id), device_selector)
            if not devices:
                self.logger.warning("No devices found for backup")
                self._report_main(STATUS_FAILED)
                return 1

            if concurrent:
                dispatcher = BackupDispatcher(self.run_backup, self.max_concurrent, logger=self.logger)
                outcomes = dispatcher.run_all(devices).outcomes
            else:
                outcomes = [self._run_guarded(device) for device in devices]

            has_errors = False
            for outcome in outcomes:
                if not outcome.success:
                    has_errors = True
                self._report_device(outcome)

            if has_errors:
                self.logger.error("Backup run finished with errors")
                self._report_main(STATUS_FAILED)
                return 1

            if send_report:
                self._send_report()

            try:
                self.retention.cleanup(self.backup_root, self.retention_days)
            except (BackupError, OSError) as e:
                self.logger.error(f"Cleanup of old backups failed: {e}")

            self.logger.info("Backup run finished successfully")
            self._report_main(STATUS_OK)
            self.logger.info(f"Run time: {time.monotonic() - start_time:.2f}s")
            return 0

        except ConfigurationError:
            raise
        except Exception as e:
            self.logger.exception(
                f"Backup run aborted after {time.monotonic() - start_time:.2f}s: {e}"
            )
            self._report_main(STATUS_FAILED)
            return 1

    def _run_guarded(self, device: DeviceDescriptor) -> BackupOutcome:
        try:
            return self.run_backup(device)
        except Exception as e:
            ContextAdapter(self.logger, device.address).exception(f"Backup task crashed: {e}")
            return BackupOutcome.failed(device, str(e) or type(e).__name__,
                                        ErrorClassifier.classify_error(e))

    def _send_report(self):
        log = ContextAdapter(self.logger, "telegram")
        try:
            if not self.backup_root.is_dir():
                raise BackupError(f"Backup directory does not exist: {self.backup_root}")
            self.notifier.send_backup_report(self.backup_root)
        except BackupError as e:
            log.error(f"Failed to send backup report: {e}")

    def _report_device(self, outcome: BackupOutcome):
        code = STATUS_OK if outcome.success else STATUS_FAILED
        self._safe_report(outcome.device.device_id, code)

    def _report_main(self, code: int):
        self._safe_report(MAIN_STATUS_ID, code, key=MAIN_STATUS_KEY)

    def _safe_report(self, device_id: str, code: int, key: Optional[str] = None):
        try:
            self.inventory.report_status(device_id, code, key=key)
        except BackupError as e:
            ContextAdapter(self.logger, "zabbix").error(f"Status report failed: {e}")
