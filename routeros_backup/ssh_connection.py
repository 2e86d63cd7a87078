"""
SSH and SFTP Session Providers
==============================

This module opens the two channels the backup workflow needs on a RouterOS
device: a Netmiko SSH session for CLI commands and a Paramiko SFTP session
for downloading the backup file.

Features:
- TCP port pre-check before any login attempt
- Typed errors for unreachable devices and rejected credentials
- An SFTP context manager that always closes the transport
- One session per caller; sessions are never pooled or shared
"""

import logging
import socket
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import paramiko
from netmiko import ConnectHandler, NetmikoAuthenticationException, NetmikoTimeoutException
from netmiko.exceptions import NetmikoBaseException

from .error_handling import (
    AuthenticationError,
    DeviceConnectionError,
    RemoteCommandError,
    TransferError,
)

logger = logging.getLogger(__name__)

ROUTEROS_DEVICE_TYPE = "mikrotik_routeros"


def check_port(address: str, port: int, timeout: float = 5.0) -> bool:
    """Test TCP connectivity to a specific port."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError as e:
        logger.debug(f"Port {port} on {address} is not reachable: {e}")
        return False


class NetmikoSession:
    """Remote CLI session on one device."""

    def __init__(self, connection: Any, address: str, read_timeout: float = 60.0):
        self.connection = connection
        self.address = address
        self.read_timeout = read_timeout

    def execute(self, command: str) -> str:
        """Run a command and return its text output."""
        try:
            return self.connection.send_command(command, read_timeout=self.read_timeout)
        except (NetmikoBaseException, OSError) as e:
            raise RemoteCommandError(f"Command '{command}' failed on {self.address}: {e}") from e

    def close(self):
        try:
            self.connection.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting from {self.address}: {e}")


class SSHConnectionManager:
    """Opens Netmiko SSH sessions to RouterOS devices."""

    def __init__(self, device_type: str = ROUTEROS_DEVICE_TYPE, timeout: int = 30,
                 port_check_timeout: float = 5.0,
                 port_checker: Callable[[str, int, float], bool] = check_port,
                 connect_handler: Callable[..., Any] = ConnectHandler,
                 logger: Optional[logging.Logger] = None):
        self.device_type = device_type
        self.timeout = timeout
        self.port_check_timeout = port_check_timeout
        self.port_checker = port_checker
        self.connect_handler = connect_handler
        self.logger = logger or logging.getLogger(__name__)

    def open(self, address: str, port: int, username: str, password: str) -> NetmikoSession:
        """Open a session; raises DeviceConnectionError or AuthenticationError."""
        if not self.port_checker(address, port, self.port_check_timeout):
            raise DeviceConnectionError(f"Port {port} on {address} is unreachable")

        device_params = {
            'device_type': self.device_type,
            'host': address,
            'username': username,
            'password': password,
            'port': port,
            'timeout': self.timeout,
            'conn_timeout': self.timeout,
            'auth_timeout': self.timeout,
            'banner_timeout': self.timeout,
        }

        start_time = time.time()
        try:
            connection = self.connect_handler(**device_params)
        except NetmikoAuthenticationException as e:
            raise AuthenticationError(f"SSH authentication failed for {address}: {e}") from e
        except NetmikoTimeoutException as e:
            raise DeviceConnectionError(f"SSH connection timeout for {address}: {e}") from e
        except (NetmikoBaseException, paramiko.SSHException, OSError) as e:
            raise DeviceConnectionError(f"SSH connection to {address} failed: {e}") from e

        self.logger.info(f"Connected to {address}:{port} in {time.time() - start_time:.2f}s")
        return NetmikoSession(connection, address, read_timeout=max(self.timeout, 60))


class SFTPTransfer:
    """SFTP session used to pull a file off a device."""

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient, address: str):
        self.client = client
        self.sftp = sftp
        self.address = address
        self.last_error: Optional[str] = None

    def download(self, remote_name: str, local_path: str) -> bool:
        """Download a remote file; returns False and records ``last_error`` on failure."""
        try:
            self.sftp.get(remote_name, str(local_path))
            return True
        except (IOError, OSError, paramiko.SSHException) as e:
            self.last_error = str(e) or type(e).__name__
            logger.error(f"SFTP download of {remote_name} from {self.address} failed: {self.last_error}")
            return False

    def close(self):
        for closable in (self.sftp, self.client):
            try:
                closable.close()
            except Exception as e:
                logger.warning(f"Error closing SFTP session to {self.address}: {e}")


class SFTPTransferProvider:
    """Opens Paramiko SFTP sessions with the device's SSH credentials."""

    def __init__(self, timeout: int = 30,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 logger: Optional[logging.Logger] = None):
        self.timeout = timeout
        self.client_factory = client_factory
        self.logger = logger or logging.getLogger(__name__)

    def open(self, address: str, port: int, username: str, password: str) -> SFTPTransfer:
        """Open an SFTP session; any failure raises TransferError."""
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            client.connect(
                hostname=address,
                port=port,
                username=username,
                password=password,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            sftp = client.open_sftp()
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransferError(f"SFTP login to {address} failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransferError(f"SFTP connection to {address} failed: {e}") from e

        self.logger.debug(f"SFTP session opened to {address}:{port}")
        return SFTPTransfer(client, sftp, address)

    @contextmanager
    def session(self, address: str, port: int, username: str, password: str) -> Iterator[SFTPTransfer]:
        transfer = self.open(address, port, username, password)
        try:
            yield transfer
        finally:
            transfer.close()
