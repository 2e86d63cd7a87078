"""
Device Inventory and Status Reporting
=====================================

Device lists and backup status reporting for the orchestrator.

Two implementations share one interface (``list_devices`` / ``report_status``):

- ``ZabbixInventory``: hosts of a Zabbix host group, credentials taken from
  the ``{$MIKROTIK_USER}`` / ``{$MIKROTIK_PASS}`` host macros. Status values
  are pushed to trapper items on a monitor host with ``zabbix_sender``.
- ``StaticInventory``: devices listed in a YAML file; statuses are logged.
"""

import logging
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Union

import requests
import yaml

from .error_handling import (
    ConfigurationError,
    RetryConfig,
    StatusReportError,
    retry_with_backoff,
)
from .models import DeviceDescriptor

logger = logging.getLogger(__name__)

MAIN_STATUS_ID = "main"
MAIN_STATUS_KEY = "main.error"
USER_MACRO = "{$MIKROTIK_USER}"
PASSWORD_MACRO = "{$MIKROTIK_PASS}"

ZABBIX_ITEM_TYPE_TRAPPER = 2
ZABBIX_VALUE_TYPE_UNSIGNED = 3

_HTTP_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    retryable_exceptions=[requests.ConnectionError, requests.Timeout],
)


class InventoryService:
    """Interface the orchestrator uses for device discovery and status reporting."""

    def list_devices(self, group_filter: Optional[str] = None) -> List[DeviceDescriptor]:
        raise NotImplementedError

    def report_status(self, device_id: str, code: int, key: Optional[str] = None):
        raise NotImplementedError


class ZabbixAPIError(StatusReportError):
    """Zabbix API returned an error object or an unusable response."""


class ZabbixInventory(InventoryService):
    """Inventory and status reporting backed by Zabbix."""

    def __init__(self, url: str, user: str, password: str,
                 monitor_host: str, status_key: str,
                 server: str, port: int = 10051,
                 sender_path: str = "zabbix_sender",
                 session: Optional[requests.Session] = None,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 timeout: int = 30,
                 logger: Optional[logging.Logger] = None):
        self.url = url
        self.user = user
        self.password = password
        self.monitor_host = monitor_host
        self.status_key = status_key
        self.server = server
        self.port = port
        self.sender_path = sender_path
        self.session = session or requests.Session()
        self.runner = runner
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

        self._auth_token: Optional[str] = None
        self._request_id = 0
        self._monitor_host_id: Optional[str] = None
        self._known_items: Set[str] = set()

    @classmethod
    def from_settings(cls, settings, logger: Optional[logging.Logger] = None) -> "ZabbixInventory":
        return cls(
            url=settings.zabbix_url,
            user=settings.zabbix_user,
            password=settings.zabbix_password,
            monitor_host=settings.zabbix_monitor_host,
            status_key=settings.zabbix_backup_status_key,
            server=settings.zabbix_server,
            port=settings.zabbix_port,
            sender_path=settings.zabbix_sender_path,
            logger=logger,
        )

    # API plumbing

    @retry_with_backoff(_HTTP_RETRY)
    def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> requests.Response:
        response = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response

    def api_request(self, method: str, params: Any) -> Any:
        """Call a Zabbix JSON-RPC method and return its ``result``."""
        self._request_id += 1
        payload = {
            'jsonrpc': '2.0',
            'method': method,
            'params': params,
            'id': self._request_id,
        }
        headers = {'Content-Type': 'application/json-rpc'}
        if method != 'user.login':
            headers['Authorization'] = f"Bearer {self._authenticate()}"

        self.logger.debug(f"Zabbix API request: {method} {params}", extra={'context': 'zabbix'})

        try:
            response = self._post(payload, headers)
            decoded = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ZabbixAPIError(f"Zabbix API request {method} failed: {e}") from e

        if 'error' in decoded:
            error = decoded['error']
            raise ZabbixAPIError(
                f"Zabbix API error: {error.get('message')} (code: {error.get('code')}): {error.get('data')}"
            )
        if 'result' not in decoded:
            raise ZabbixAPIError(f"Zabbix API response for {method} has no result")

        return decoded['result']

    def _authenticate(self) -> str:
        if self._auth_token is None:
            self._auth_token = self.api_request('user.login', {
                'username': self.user,
                'password': self.password,
            })
            self.logger.info("Authenticated to Zabbix API")
        return self._auth_token

    # Inventory

    def list_devices(self, group_filter: Optional[str] = None) -> List[DeviceDescriptor]:
        params: Dict[str, Any] = {
            'output': ['hostid', 'host', 'name'],
            'selectMacros': ['macro', 'value'],
            'selectInterfaces': ['ip'],
        }
        if group_filter:
            params['groupids'] = [group_filter]

        devices = []
        for host in self.api_request('host.get', params):
            interfaces = host.get('interfaces') or []
            address = (interfaces[0].get('ip') if interfaces else None) or host['host']

            try:
                self.ensure_backup_item(host['hostid'], host['name'])
            except StatusReportError as e:
                self.logger.error(f"Could not ensure backup item for {host['name']}: {e}")

            credentials = self._extract_credentials(host.get('macros') or [])
            if credentials is None:
                self.logger.error(f"Missing credential macros for device {host['name']}")
                self._report_quietly(host['hostid'], 1)
                continue

            devices.append(DeviceDescriptor(
                device_id=host['hostid'],
                name=host['name'],
                host=host['host'],
                address=address,
                username=credentials[0],
                password=credentials[1],
            ))

        self.logger.info(f"Received {len(devices)} device(s) from Zabbix")
        return devices

    @staticmethod
    def _extract_credentials(macros: List[Dict[str, str]]) -> Optional[tuple]:
        values = {macro.get('macro'): macro.get('value') for macro in macros}
        username = values.get(USER_MACRO)
        password = values.get(PASSWORD_MACRO)
        if username and password:
            return username, password
        return None

    # Trapper items

    def item_key(self, device_id: str, key: Optional[str] = None) -> str:
        return key or f"{self.status_key}[{device_id}]"

    def _get_monitor_host_id(self) -> str:
        if self._monitor_host_id is None:
            hosts = self.api_request('host.get', {
                'output': ['hostid'],
                'filter': {'host': [self.monitor_host]},
            })
            if not hosts:
                raise ZabbixAPIError(f"Monitor host '{self.monitor_host}' not found in Zabbix")
            self._monitor_host_id = hosts[0]['hostid']
        return self._monitor_host_id

    def _ensure_item(self, key: str, name: str):
        if key in self._known_items:
            return

        items = self.api_request('item.get', {
            'output': ['itemid'],
            'host': self.monitor_host,
            'search': {'key_': key},
        })
        if not items:
            self.api_request('item.create', {
                'name': name,
                'key_': key,
                'hostid': self._get_monitor_host_id(),
                'type': ZABBIX_ITEM_TYPE_TRAPPER,
                'value_type': ZABBIX_VALUE_TYPE_UNSIGNED,
            })
            self.logger.info(f"Created Zabbix item {key} on {self.monitor_host}")

        self._known_items.add(key)

    def ensure_backup_item(self, device_id: str, device_name: str):
        """Make sure the per-device status trapper item exists on the monitor host."""
        self._ensure_item(self.item_key(device_id), f"Backup status: {device_name}")

    # Status reporting

    def report_status(self, device_id: str, code: int, key: Optional[str] = None):
        """Push 0 (ok) or 1 (failed) for a device, or for the whole run with ``key='main.error'``."""
        item_key = self.item_key(device_id, key)

        if key == MAIN_STATUS_KEY:
            try:
                self._ensure_item(item_key, "Backup run status")
            except StatusReportError as e:
                self.logger.error(f"Could not ensure item {item_key}: {e}")

        command = [
            self.sender_path,
            '-z', self.server,
            '-p', str(self.port),
            '-s', self.monitor_host,
            '-k', item_key,
            '-o', str(code),
        ]
        self.logger.debug(f"Running: {' '.join(command)}", extra={'context': 'zabbix'})

        try:
            result = self.runner(command, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            raise StatusReportError(f"zabbix_sender could not be run: {e}") from e

        output = f"{result.stdout or ''}{result.stderr or ''}".strip()
        if result.returncode != 0 or 'failed: 1' in output:
            raise StatusReportError(f"zabbix_sender failed for {item_key}: {output}")

        self.logger.info(f"Backup status sent to Zabbix: {item_key}={code}")

    def _report_quietly(self, device_id: str, code: int):
        try:
            self.report_status(device_id, code)
        except StatusReportError as e:
            self.logger.error(str(e))


class StaticInventory(InventoryService):
    """
    Devices from a YAML file::

        devices:
          - id: "10101"
            name: Office Router
            host: office-gw
            address: 192.168.88.1
            username: backup
            password: secret
            groups: [office]
    """

    def __init__(self, devices: List[Dict[str, Any]], logger: Optional[logging.Logger] = None):
        self.entries = devices
        self.logger = logger or logging.getLogger(__name__)
        self.statuses: Dict[str, int] = {}

    @classmethod
    def from_file(cls, path: Union[str, Path], logger: Optional[logging.Logger] = None) -> "StaticInventory":
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load inventory file {path}: {e}") from e

        devices = data.get('devices') if isinstance(data, dict) else None
        if not isinstance(devices, list):
            raise ConfigurationError(f"Inventory file {path} must contain a 'devices' list")

        return cls(devices, logger=logger)

    def list_devices(self, group_filter: Optional[str] = None) -> List[DeviceDescriptor]:
        devices = []
        for index, entry in enumerate(self.entries):
            if group_filter and group_filter not in (entry.get('groups') or []):
                continue

            address = entry.get('address') or entry.get('host')
            name = entry.get('name') or address
            if not address:
                self.logger.error(f"Inventory entry {index} has no address, skipping")
                continue
            if not entry.get('username') or not entry.get('password'):
                self.logger.error(f"Missing credentials for device {name}")
                continue

            devices.append(DeviceDescriptor(
                device_id=str(entry.get('id', address)),
                name=name,
                host=entry.get('host') or address,
                address=address,
                username=entry['username'],
                password=entry['password'],
            ))

        self.logger.info(f"Loaded {len(devices)} device(s) from inventory file")
        return devices

    def report_status(self, device_id: str, code: int, key: Optional[str] = None):
        self.statuses[key or device_id] = code
        self.logger.info(f"Backup status for {key or device_id}: {code}")


def build_inventory(settings, logger: Optional[logging.Logger] = None) -> InventoryService:
    if settings.inventory_file:
        return StaticInventory.from_file(settings.inventory_file, logger=logger)
    return ZabbixInventory.from_settings(settings, logger=logger)
