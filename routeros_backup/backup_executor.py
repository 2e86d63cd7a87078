"""
Device Backup Execution Engine
==============================

This module runs the backup lifecycle for a single RouterOS device: create
the backup on the device, wait for it to appear, download it over SFTP,
validate it and remove it from the device.

Features:
- Deterministic per-day backup names (``<YYYY-MM-DD>_<address>``)
- Bounded polling for the remote artifact with an injectable sleep
- Format and content validation before a backup counts as successful
- Local cleanup on every failure path; no partial artifact is left behind
- Remote cleanup with a fallback syntax for older RouterOS releases
- Every failure is returned as a BackupOutcome instead of raised
"""

import logging
import re
import time
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from .backup_validator import BackupValidator, has_known_signature
from .error_handling import (
    ARTIFACT_POLL_CONFIG,
    ArtifactValidationError,
    BackupError,
    CleanupError,
    ErrorCategory,
    ErrorClassifier,
    RemoteCommandError,
    RetryConfig,
    TransferError,
    classify_command_output,
    poll_until,
)
from .file_storage import BACKUP_SUFFIX, LocalBackupStorage
from .logging_setup import ContextAdapter
from .models import BackupArtifact, BackupOutcome, DeviceDescriptor
from .ssh_connection import SFTPTransferProvider, SSHConnectionManager

logger = logging.getLogger(__name__)

BACKUP_COMMAND = "/system backup save name={name}"
VERSION_COMMAND = "/system resource print"
LIST_FILES_TERSE_COMMAND = "/file print terse"
LIST_FILES_COMMAND = "/file print"
REMOVE_FILE_COMMAND = '/file remove "{file}"'
# RouterOS 6 does not accept a quoted name for /file remove
REMOVE_FILE_LEGACY_COMMAND = '/file remove [find name="{file}"]'

UNKNOWN_VERSION = "unknown"
_VERSION_RE = re.compile(r"version: ([0-9.]+)")


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. ``1.5 KB``."""
    size = float(max(size_bytes, 0))
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{round(size, 2):g} {unit}"
        size /= 1024
    return f"{round(size, 2):g} GB"


class DeviceBackupExecutor:
    """Executes the full backup workflow for one device at a time."""

    def __init__(self, storage: LocalBackupStorage,
                 ssh_manager: SSHConnectionManager,
                 transfer_provider: SFTPTransferProvider,
                 validator: Optional[BackupValidator] = None,
                 port: int = 22,
                 poll_config: RetryConfig = ARTIFACT_POLL_CONFIG,
                 sleep: Callable[[float], None] = time.sleep,
                 today: Callable[[], date] = date.today,
                 logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.ssh_manager = ssh_manager
        self.transfer_provider = transfer_provider
        self.validator = validator or BackupValidator(logger=logger)
        self.port = port
        self.poll_config = poll_config
        self.sleep = sleep
        self.today = today
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings, logger: Optional[logging.Logger] = None) -> "DeviceBackupExecutor":
        return cls(
            storage=LocalBackupStorage(settings.backup_path),
            ssh_manager=SSHConnectionManager(
                timeout=settings.ssh_timeout,
                port_check_timeout=settings.port_check_timeout,
                logger=logger,
            ),
            transfer_provider=SFTPTransferProvider(timeout=settings.ssh_timeout, logger=logger),
            port=settings.ssh_port,
            poll_config=settings.poll_config,
            logger=logger,
        )

    def run(self, device: DeviceDescriptor) -> BackupOutcome:
        """Back up one device. Never raises for per-device failures."""
        start_time = time.monotonic()
        log = ContextAdapter(self.logger, device.address)
        session = None
        local_path: Optional[Path] = None

        log.info(f"Processing device {device.name}")

        try:
            session = self.ssh_manager.open(device.address, self.port, device.username, device.password)
            log.info(f"RouterOS version: {self.get_routeros_version(session)}")

            day = self.today()
            backup_name = self.storage.backup_name(device.address, day)
            remote_file = f"{backup_name}{BACKUP_SUFFIX}"
            self.storage.ensure_device_dir(device.address)

            self._create_remote_backup(session, backup_name, log)
            self._wait_for_remote_file(session, remote_file, log)

            target_path = self.storage.backup_path(device.address, day)
            log.info("Downloading backup file over SFTP")
            with self.transfer_provider.session(device.address, self.port,
                                                device.username, device.password) as transfer:
                # An earlier file of the same day is only replaced once the download starts
                local_path = target_path
                self._download(transfer, remote_file, local_path)
            self._check_local_file(local_path, log)

            validation = self.validator.validate(local_path)
            if not validation.valid:
                message = f"backup validation failed: {', '.join(validation.errors)}"
                log.error(message)
                self._remove_local_file(local_path, log)
                return BackupOutcome.failed(
                    device, message, ErrorCategory.VALIDATION,
                    duration_seconds=time.monotonic() - start_time,
                )

            log.info(f"Backup downloaded and validated (size: {format_size(validation.size)})")

            try:
                self._remove_remote_file(session, remote_file, log)
            except CleanupError as e:
                log.warning(str(e))

            return BackupOutcome(
                device=device,
                success=True,
                size=validation.size,
                local_path=str(local_path),
                duration_seconds=time.monotonic() - start_time,
            )

        except Exception as e:
            category = ErrorClassifier.classify_error(e)
            if isinstance(e, BackupError):
                log.error(f"Backup failed: {e}")
            else:
                log.exception(f"Unexpected error during backup: {e}")

            if local_path is not None:
                self._remove_local_file(local_path, log)

            return BackupOutcome.failed(
                device, str(e) or type(e).__name__, category,
                duration_seconds=time.monotonic() - start_time,
            )

        finally:
            if session is not None:
                session.close()

    def get_routeros_version(self, session) -> str:
        """Best effort; any failure yields ``unknown``."""
        try:
            output = session.execute(VERSION_COMMAND)
        except BackupError as e:
            self.logger.debug(f"Version query failed: {e}")
            return UNKNOWN_VERSION

        match = _VERSION_RE.search(output or "")
        return match.group(1) if match else UNKNOWN_VERSION

    def _create_remote_backup(self, session, backup_name: str, log: ContextAdapter):
        command = BACKUP_COMMAND.format(name=backup_name)
        log.info(f"Running backup command: {command}")
        output = session.execute(command)

        if classify_command_output(output):
            raise RemoteCommandError(f"Backup command failed on device: {output.strip()}")

        log.debug(f"Backup command output: {output.strip()}")

    def _wait_for_remote_file(self, session, remote_file: str, log: ContextAdapter):
        def file_listed(attempt: int) -> bool:
            listing = session.execute(LIST_FILES_TERSE_COMMAND)
            log.debug(f"Attempt {attempt + 1}/{self.poll_config.max_attempts}, file list:\n{listing}")
            return remote_file in listing

        if not poll_until(file_listed, self.poll_config, sleep=self.sleep):
            raise TransferError(
                f"Backup artifact not materialized on device after {self.poll_config.max_attempts} attempts"
            )

    @staticmethod
    def _download(transfer, remote_file: str, local_path: Path):
        if not transfer.download(remote_file, str(local_path)):
            reason = getattr(transfer, "last_error", None) or "unknown error"
            raise TransferError(f"Failed to download backup file: {reason}")

    def _check_local_file(self, local_path: Path, log: ContextAdapter) -> BackupArtifact:
        if not local_path.is_file():
            raise ArtifactValidationError(f"Backup file not found locally: {local_path}")

        artifact = BackupArtifact.from_file(local_path)
        if artifact.size == 0:
            raise ArtifactValidationError(f"Backup file is empty: {local_path}")

        log.debug(f"Backup header bytes: {artifact.signature.hex()}")
        if not has_known_signature(artifact.signature):
            raise ArtifactValidationError(
                f"Backup file has corrupt format (header {artifact.signature.hex()})"
            )

        return artifact

    def _remove_remote_file(self, session, remote_file: str, log: ContextAdapter):
        try:
            session.execute(REMOVE_FILE_COMMAND.format(file=remote_file))
            if remote_file not in session.execute(LIST_FILES_COMMAND):
                log.info("Backup file removed from device")
                return
            log.warning("Backup file still on device, retrying removal")
        except RemoteCommandError as e:
            log.warning(f"Remove command failed, retrying with find syntax: {e}")

        try:
            session.execute(REMOVE_FILE_LEGACY_COMMAND.format(file=remote_file))
            if remote_file not in session.execute(LIST_FILES_COMMAND):
                log.info("Backup file removed from device (2nd attempt)")
                return
        except RemoteCommandError as e:
            raise CleanupError(f"Failed to remove {remote_file} from device: {e}") from e

        raise CleanupError(f"Failed to remove {remote_file} from device after 2 attempts")

    @staticmethod
    def _remove_local_file(local_path: Path, log: ContextAdapter):
        try:
            local_path.unlink()
            log.info(f"Removed incomplete local backup file {local_path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error(f"Could not remove local backup file {local_path}: {e}")
