"""
Tests for the Netmiko and Paramiko session providers.
"""

from unittest.mock import Mock, patch

import paramiko
import pytest
from netmiko import NetmikoAuthenticationException, NetmikoTimeoutException

from routeros_backup.error_handling import (
    AuthenticationError,
    DeviceConnectionError,
    RemoteCommandError,
    TransferError,
)
from routeros_backup.ssh_connection import (
    NetmikoSession,
    SFTPTransferProvider,
    SSHConnectionManager,
    check_port,
)


def make_manager(connect_handler, port_open=True):
    return SSHConnectionManager(
        timeout=10,
        port_checker=Mock(return_value=port_open),
        connect_handler=connect_handler,
    )


class TestSSHConnectionManager:
    """Tests for opening RouterOS CLI sessions."""

    def test_open_passes_routeros_device_params(self):
        connect_handler = Mock()
        manager = make_manager(connect_handler)

        session = manager.open("192.168.88.1", 22, "backup", "secret")

        kwargs = connect_handler.call_args.kwargs
        assert kwargs['device_type'] == 'mikrotik_routeros'
        assert kwargs['host'] == '192.168.88.1'
        assert kwargs['username'] == 'backup'
        assert kwargs['port'] == 22
        assert session.connection is connect_handler.return_value

    def test_closed_port(self):
        connect_handler = Mock()

        with pytest.raises(DeviceConnectionError, match="unreachable"):
            make_manager(connect_handler, port_open=False).open("192.168.88.1", 22, "backup", "secret")

        connect_handler.assert_not_called()

    @pytest.mark.parametrize("error,expected", [
        (NetmikoAuthenticationException("denied"), AuthenticationError),
        (NetmikoTimeoutException("timed out"), DeviceConnectionError),
        (paramiko.SSHException("banner"), DeviceConnectionError),
        (OSError("no route to host"), DeviceConnectionError),
    ])
    def test_connect_errors_are_typed(self, error, expected):
        manager = make_manager(Mock(side_effect=error))

        with pytest.raises(expected):
            manager.open("192.168.88.1", 22, "backup", "secret")


class TestNetmikoSession:
    def test_execute_returns_output(self):
        connection = Mock()
        connection.send_command.return_value = "Configuration backup saved"

        assert NetmikoSession(connection, "10.0.0.1").execute("/system backup save name=x") == \
            "Configuration backup saved"

    def test_execute_wraps_transport_errors(self):
        connection = Mock()
        connection.send_command.side_effect = OSError("Socket is closed")

        with pytest.raises(RemoteCommandError, match="Socket is closed"):
            NetmikoSession(connection, "10.0.0.1").execute("/file print")

    def test_close_ignores_disconnect_errors(self):
        connection = Mock()
        connection.disconnect.side_effect = OSError("already closed")

        NetmikoSession(connection, "10.0.0.1").close()


class TestSFTPTransferProvider:
    """Tests for SFTP downloads."""

    def test_download(self, tmp_path):
        client = Mock()
        provider = SFTPTransferProvider(timeout=10, client_factory=Mock(return_value=client))

        transfer = provider.open("192.168.88.1", 22, "backup", "secret")
        assert transfer.download("a.backup", str(tmp_path / "a.backup")) is True
        transfer.close()

        client.connect.assert_called_once_with(
            hostname="192.168.88.1", port=22, username="backup", password="secret",
            timeout=10, allow_agent=False, look_for_keys=False,
        )
        client.open_sftp.return_value.get.assert_called_once_with("a.backup", str(tmp_path / "a.backup"))
        client.close.assert_called_once()

    def test_download_failure_records_error(self, tmp_path):
        client = Mock()
        client.open_sftp.return_value.get.side_effect = IOError("No such file")
        transfer = SFTPTransferProvider(client_factory=Mock(return_value=client)).open(
            "192.168.88.1", 22, "backup", "secret",
        )

        assert transfer.download("a.backup", str(tmp_path / "a.backup")) is False
        assert transfer.last_error == "No such file"

    def test_session_closes_client_on_error(self):
        client = Mock()
        provider = SFTPTransferProvider(client_factory=Mock(return_value=client))

        with pytest.raises(TransferError):
            with provider.session("192.168.88.1", 22, "backup", "secret"):
                raise TransferError("download failed")

        client.open_sftp.return_value.close.assert_called_once()
        client.close.assert_called_once()

    def test_login_failure(self):
        client = Mock()
        client.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")
        provider = SFTPTransferProvider(client_factory=Mock(return_value=client))

        with pytest.raises(TransferError, match="login"):
            provider.open("192.168.88.1", 22, "backup", "secret")

        client.close.assert_called_once()


class TestCheckPort:
    def test_open_port(self):
        with patch("routeros_backup.ssh_connection.socket.create_connection") as create_connection:
            assert check_port("10.0.0.1", 22, timeout=1.0) is True

        create_connection.assert_called_once_with(("10.0.0.1", 22), timeout=1.0)

    def test_refused_port(self):
        with patch("routeros_backup.ssh_connection.socket.create_connection",
                   side_effect=ConnectionRefusedError()):
            assert check_port("10.0.0.1", 22) is False
