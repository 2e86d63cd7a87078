"""Shared fixtures: fake device sessions, fake SFTP transfers and backup files on disk."""

import os
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, List, Optional
from unittest.mock import Mock

import pytest

from routeros_backup.backup_executor import DeviceBackupExecutor
from routeros_backup.error_handling import RemoteCommandError
from routeros_backup.file_storage import LocalBackupStorage
from routeros_backup.models import DeviceDescriptor

VALID_HEADER = b"BACKUP2\x00"
LEGACY_HEADER = bytes.fromhex("88aca1b1") + b"\x00\x00\x00\x00"
RUN_DAY = date(2024, 5, 4)


def backup_bytes(header: bytes = VALID_HEADER, size: int = 4096) -> bytes:
    return header + b"\x00" * max(size - len(header), 0)


def write_backup(path: Path, header: bytes = VALID_HEADER, size: int = 4096,
                 mtime: Optional[datetime] = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(backup_bytes(header, size))
    if mtime is not None:
        stamp = mtime.timestamp()
        os.utime(path, (stamp, stamp))
    return path


class FakeSession:
    """Scripted RouterOS CLI session."""

    def __init__(self, version_output: str = "   uptime: 3d\n   version: 7.12.1 (stable)\n",
                 backup_output: str = "Configuration backup saved",
                 appear_after: int = 0,
                 removable: bool = True,
                 legacy_removable: bool = True,
                 fail_on: Optional[str] = None):
        self.version_output = version_output
        self.backup_output = backup_output
        self.appear_after = appear_after
        self.removable = removable
        self.legacy_removable = legacy_removable
        self.fail_on = fail_on
        self.commands: List[str] = []
        self.files = set()
        self.pending: Optional[str] = None
        self.polls = 0
        self.closed = False

    def execute(self, command: str) -> str:
        self.commands.append(command)
        if self.fail_on and command.startswith(self.fail_on):
            raise RemoteCommandError(f"Command '{command}' failed: channel closed")

        if command == "/system resource print":
            return self.version_output
        if command.startswith("/system backup save name="):
            if "failure" not in self.backup_output.lower():
                self.pending = command.split("name=", 1)[1] + ".backup"
            return self.backup_output
        if command == "/file print terse":
            self.polls += 1
            if self.pending and self.polls > self.appear_after:
                self.files.add(self.pending)
            return "\n".join(f" 0 name={name} type=backup size=4096" for name in sorted(self.files))
        if command == "/file print":
            return "\n".join(sorted(self.files))
        if command.startswith('/file remove "'):
            if self.removable:
                self.files.discard(command.split('"')[1])
            return ""
        if command.startswith("/file remove [find"):
            if self.legacy_removable:
                self.files.discard(command.split('"')[1])
            return ""
        return ""

    def close(self):
        self.closed = True


class FakeTransfer:
    def __init__(self, provider: "FakeTransferProvider"):
        self.provider = provider
        self.last_error: Optional[str] = None
        self.closed = False

    def download(self, remote_name: str, local_path: str) -> bool:
        self.provider.downloads.append((remote_name, local_path))
        if self.provider.partial is not None:
            Path(local_path).write_bytes(self.provider.partial)
        if not self.provider.succeed:
            self.last_error = self.provider.error
            return False
        Path(local_path).write_bytes(self.provider.content)
        return True

    def close(self):
        self.closed = True


class FakeTransferProvider:
    def __init__(self, content: bytes = None, succeed: bool = True,
                 error: str = "No such file", partial: Optional[bytes] = None,
                 open_error: Optional[Exception] = None):
        self.content = backup_bytes() if content is None else content
        self.succeed = succeed
        self.error = error
        self.partial = partial
        self.open_error = open_error
        self.downloads = []
        self.transfers: List[FakeTransfer] = []

    def open(self, address, port, username, password) -> FakeTransfer:
        if self.open_error is not None:
            raise self.open_error
        transfer = FakeTransfer(self)
        self.transfers.append(transfer)
        return transfer

    @contextmanager
    def session(self, address, port, username, password) -> Iterator[FakeTransfer]:
        transfer = self.open(address, port, username, password)
        try:
            yield transfer
        finally:
            transfer.close()


@pytest.fixture
def device() -> DeviceDescriptor:
    return DeviceDescriptor(
        device_id="10101",
        name="Office Router",
        host="office-gw",
        address="192.168.88.1",
        username="backup",
        password="secret",
    )


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def transfer_provider() -> FakeTransferProvider:
    return FakeTransferProvider()


@pytest.fixture
def make_executor(tmp_path):
    """Build an executor around fake collaborators; returns (executor, sleep mock)."""

    def factory(session=None, transfer_provider=None, ssh_error: Optional[Exception] = None):
        ssh_manager = Mock()
        if ssh_error is not None:
            ssh_manager.open.side_effect = ssh_error
        else:
            ssh_manager.open.return_value = session or FakeSession()

        sleep = Mock()
        executor = DeviceBackupExecutor(
            storage=LocalBackupStorage(tmp_path / "backups"),
            ssh_manager=ssh_manager,
            transfer_provider=transfer_provider or FakeTransferProvider(),
            sleep=sleep,
            today=lambda: RUN_DAY,
        )
        return executor, sleep

    return factory
