"""
RouterOS Configuration Backup
=============================

Nightly backups of MikroTik RouterOS devices:
- Device inventory from Zabbix host groups or a YAML file
- Backup creation over SSH and download over SFTP
- Backup file validation before a run counts as successful
- Sequential or bounded-concurrency execution
- Per-device retention and Zabbix status reporting
- Weekly Telegram summary and cron scheduling
"""

from .backup_executor import DeviceBackupExecutor
from .backup_validator import BackupValidator
from .dispatcher import BackupDispatcher
from .file_storage import LocalBackupStorage, RetentionManager
from .models import BackupOutcome, DeviceDescriptor, DispatchReport, ValidationResult
from .orchestrator import BackupOrchestrator

__version__ = "1.0.0"
__author__ = "RouterOS Backup Team"

__all__ = [
    "BackupDispatcher",
    "BackupOrchestrator",
    "BackupOutcome",
    "BackupValidator",
    "DeviceBackupExecutor",
    "DeviceDescriptor",
    "DispatchReport",
    "LocalBackupStorage",
    "RetentionManager",
    "ValidationResult",
]
