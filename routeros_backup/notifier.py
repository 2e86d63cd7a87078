"""
Telegram Backup Report
======================

Builds a per-device summary of the stored backups and posts it to a Telegram
chat through the Bot API ``sendMessage`` method.
"""

import html
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

import requests

from .error_handling import NotificationError, RetryConfig, retry_with_backoff
from .file_storage import DeviceBackupStats, collect_backup_stats
from .logging_setup import ContextAdapter

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
REPORT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
NAME_WIDTH = 20
SEPARATOR_WIDTH = 65

_HTTP_RETRY = RetryConfig(
    max_attempts=3,
    base_delay=1.0,
    retryable_exceptions=[requests.ConnectionError],
)


def truncate(text: str, width: int = NAME_WIDTH, marker: str = "...") -> str:
    """Cut ``text`` to ``width`` characters, ending with ``marker`` when shortened."""
    if len(text) <= width:
        return text
    return text[:width - len(marker)] + marker


def format_backup_report(stats: List[DeviceBackupStats], generated_at: datetime) -> str:
    """HTML message with a fixed-width device table and totals."""
    lines = [
        "<b>📊 MikroTik backup report</b>",
        "",
        "<pre>" + f"{'Device':<20} {'IP':<15} {'Copies':<7} {'Last backup':<19}",
        "-" * SEPARATOR_WIDTH,
    ]
    for device in stats:
        lines.append(
            f"{html.escape(truncate(device.name)):<20} {html.escape(device.address):<15} "
            f"{device.backups_count:<7d} {device.last_backup.strftime(REPORT_TIMESTAMP_FORMAT):<19}"
        )
    lines[-1] += "</pre>"

    total_backups = sum(device.backups_count for device in stats)
    lines.extend([
        "",
        f"📱 Total devices: {len(stats)}",
        f"💾 Total backups: {total_backups}",
        f"📅 Report generated: {generated_at.strftime(REPORT_TIMESTAMP_FORMAT)}",
    ])
    return "\n".join(lines)


class TelegramNotifier:
    """Sends messages to one Telegram chat."""

    def __init__(self, bot_token: str, chat_id: str,
                 session: Optional[requests.Session] = None,
                 timeout: int = 10,
                 logger: Optional[logging.Logger] = None):
        if not bot_token:
            raise NotificationError("Telegram bot token is not set")
        if not chat_id:
            raise NotificationError("Telegram chat id is not set")

        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = session or requests.Session()
        self.timeout = timeout
        self.log = ContextAdapter(logger or logging.getLogger(__name__), "telegram")

    @classmethod
    def from_settings(cls, settings, logger: Optional[logging.Logger] = None) -> Optional["TelegramNotifier"]:
        """Notifier for the configured chat, or None when Telegram is not configured."""
        if not settings.telegram_enabled:
            return None
        return cls(settings.telegram_bot_token, settings.telegram_chat_id, logger=logger)

    @retry_with_backoff(_HTTP_RETRY)
    def _post(self, data: dict) -> requests.Response:
        url = TELEGRAM_API_URL.format(token=self.bot_token)
        return self.session.post(url, data=data, timeout=self.timeout)

    def send_message(self, message: str):
        if not message:
            raise NotificationError("Refusing to send an empty message")

        self.log.debug(f"Sending message to chat {self.chat_id} ({len(message)} chars)")

        try:
            response = self._post({
                'chat_id': self.chat_id,
                'text': message,
                'parse_mode': 'HTML',
            })
        except requests.RequestException as e:
            # the exception text can contain the request URL, which holds the token
            raise NotificationError(
                f"Telegram request failed: {str(e).replace(self.bot_token, '***')}"
            ) from e

        if response.status_code != 200:
            raise NotificationError(f"Telegram HTTP error {response.status_code}: {response.text}")

        try:
            result = response.json()
        except ValueError as e:
            raise NotificationError(f"Telegram returned invalid JSON: {e}") from e

        if not result.get('ok'):
            raise NotificationError(f"Telegram API error: {result.get('description', 'unknown error')}")

        self.log.debug("Message sent")

    def send_backup_report(self, backup_root: Union[str, Path], now: Optional[datetime] = None):
        """Summarize ``backup_root`` and post the report."""
        stats = collect_backup_stats(backup_root)
        self.log.debug(f"Building report for {len(stats)} device(s) under {backup_root}")
        self.send_message(format_backup_report(stats, now or datetime.now()))
        self.log.info(f"Backup report sent ({len(stats)} devices)")
