from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .error_handling import RetryConfig, RetryStrategy
from .models import RetentionPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ROUTEROS_BACKUP_",
        env_file=".env",
        extra="ignore",
    )

    # Storage
    backup_path: str = "/var/backups/routeros"
    retention_days: int = Field(default=30, ge=0)

    # SSH / SFTP
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_timeout: int = Field(default=30, ge=1)
    port_check_timeout: float = Field(default=5.0, gt=0)
    poll_attempts: int = Field(default=10, ge=1)
    poll_interval: float = Field(default=2.0, ge=0)

    # Concurrency
    max_concurrent_backups: int = Field(default=5, ge=1)

    # Logging
    log_file: str = "routeros_backup.log"
    log_level: str = "INFO"
    debug_modules: str = ""
    log_max_bytes: int = 10 * 1024 * 1024
    log_keep_lines: int = 1000

    # Inventory: a YAML file takes precedence over Zabbix
    inventory_file: Optional[str] = None
    zabbix_url: str = "http://localhost/zabbix/api_jsonrpc.php"
    zabbix_user: str = "Admin"
    zabbix_password: str = ""
    zabbix_group_id: str = ""
    zabbix_monitor_host: str = "Backup Monitor"
    zabbix_backup_status_key: str = "mikrotik.backup.status"
    zabbix_server: str = "127.0.0.1"
    zabbix_port: int = 10051
    zabbix_sender_path: str = "zabbix_sender"

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    report_weekday: Optional[int] = Field(default=5, ge=0, le=6)  # Monday=0, Saturday=5

    # Scheduling
    schedule_cron: str = "0 3 * * *"

    @property
    def retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy(retention_days=self.retention_days)

    @property
    def poll_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.poll_attempts,
            strategy=RetryStrategy.FIXED_INTERVAL,
            base_delay=self.poll_interval,
        )

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
