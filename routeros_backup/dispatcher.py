"""
Concurrent Backup Dispatcher
============================

Runs one backup workflow per device on a bounded thread pool. Each task
returns its own BackupOutcome; nothing is shared between tasks except the
logging handlers.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional, Sequence

from .error_handling import ConfigurationError, ErrorClassifier
from .logging_setup import ContextAdapter
from .models import BackupOutcome, DeviceDescriptor, DispatchReport

logger = logging.getLogger(__name__)


class BackupDispatcher:
    """Runs device backups with at most ``max_concurrent`` in flight."""

    def __init__(self, run_backup: Callable[[DeviceDescriptor], BackupOutcome],
                 max_concurrent: int = 5,
                 logger: Optional[logging.Logger] = None):
        if max_concurrent < 1:
            raise ConfigurationError(f"max_concurrent must be >= 1, got {max_concurrent}")

        self.run_backup = run_backup
        self.max_concurrent = max_concurrent
        self.logger = logger or logging.getLogger(__name__)

    def run_all(self, devices: Sequence[DeviceDescriptor]) -> DispatchReport:
        """Back up every device; outcomes are returned in completion order."""
        start_time = time.monotonic()
        report = DispatchReport()

        self.logger.info(
            f"Starting concurrent backup of {len(devices)} device(s) "
            f"(max concurrent: {self.max_concurrent})"
        )

        with ThreadPoolExecutor(max_workers=self.max_concurrent,
                                thread_name_prefix="backup") as executor:
            future_to_device = {
                executor.submit(self.run_backup, device): device
                for device in devices
            }

            for future in as_completed(future_to_device):
                device = future_to_device[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    ContextAdapter(self.logger, device.address).exception(f"Backup task crashed: {e}")
                    outcome = BackupOutcome.failed(device, str(e) or type(e).__name__,
                                                   ErrorClassifier.classify_error(e))

                self._log_outcome(outcome)
                report.outcomes.append(outcome)

        report.elapsed_seconds = time.monotonic() - start_time
        self.logger.info(
            f"Concurrent backup results: total={report.total}, succeeded={report.succeeded}, "
            f"failed={report.failed}, time={report.elapsed_seconds:.2f}s"
        )
        return report

    def _log_outcome(self, outcome: BackupOutcome):
        log = ContextAdapter(self.logger, outcome.device.address)
        if outcome.success:
            log.info(f"Concurrent backup finished ({outcome.size} bytes)")
        else:
            log.error(f"Concurrent backup failed: {outcome.error or 'unknown error'}")
