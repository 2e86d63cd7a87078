"""
Command Line Interface
======================

``routeros-backup`` commands:

- ``backup``: one backup run over the inventory
- ``cleanup``: retention pass and log trimming (maintenance job)
- ``report``: send the Telegram backup report now
- ``validate``: check every stored backup file
- ``schedule``: run backups on the configured cron expression
"""

import logging
import sys
from typing import Optional

import click
from pydantic import ValidationError

from .backup_executor import DeviceBackupExecutor
from .backup_validator import BackupValidator
from .config import Settings, load_settings
from .error_handling import BackupError, ConfigurationError
from .file_storage import RetentionManager
from .inventory import build_inventory
from .job_scheduler import BACKUP_JOB_ID, CLEANUP_JOB_ID, BackupScheduler
from .logging_setup import configure_logging, parse_debug_modules, shutdown_logging, trim_log_file
from .notifier import TelegramNotifier
from .orchestrator import BackupOrchestrator

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def setup_logging(settings: Settings, debug: Optional[str] = None):
    modules = parse_debug_modules(debug if debug is not None else settings.debug_modules)
    configure_logging(settings.log_file, settings.log_level, debug_modules=modules)


def run_backup(settings: Settings, device: Optional[str] = None, concurrent: bool = False,
               report: bool = False) -> int:
    """Wire the collaborators from settings and run one backup pass."""
    inventory = build_inventory(settings, logger=logger)
    executor = DeviceBackupExecutor.from_settings(settings, logger=logger)
    notifier = TelegramNotifier.from_settings(settings, logger=logger)

    orchestrator = BackupOrchestrator.from_settings(
        settings, inventory, executor.run, notifier=notifier, logger=logger,
    )
    return orchestrator.run(device_selector=device, concurrent=concurrent, report=report)


def run_cleanup(settings: Settings) -> int:
    RetentionManager(logger=logger).cleanup(settings.backup_path, settings.retention_policy.retention_days)

    if trim_log_file(settings.log_file, settings.log_max_bytes, settings.log_keep_lines):
        logger.info(f"Log file trimmed to the last {settings.log_keep_lines} lines")
    return 0


@click.group()
@click.pass_context
def cli(ctx):
    """Back up MikroTik RouterOS devices over SSH."""
    try:
        ctx.obj = load_settings()
    except ValidationError as e:
        click.echo(f"Invalid configuration:\n{e}", err=True)
        ctx.exit(EXIT_CONFIG_ERROR)


@cli.command()
@click.option("--device", default=None, help="Back up only the device with this host, name or IP.")
@click.option("--async", "concurrent", is_flag=True, help="Back up devices concurrently.")
@click.option("--max-concurrent", type=click.IntRange(min=1), default=None,
              help="Concurrent backups in --async mode.")
@click.option("--report-telegram", is_flag=True, help="Send the Telegram report after the run.")
@click.option("--debug", default=None, help="Debug categories: all, ssh, backup, zabbix, telegram.")
@click.pass_obj
def backup(settings: Settings, device, concurrent, max_concurrent, report_telegram, debug):
    """Run one backup pass."""
    if max_concurrent is not None:
        settings = settings.model_copy(update={'max_concurrent_backups': max_concurrent})

    setup_logging(settings, debug)
    try:
        code = run_backup(settings, device=device, concurrent=concurrent, report=report_telegram)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        code = EXIT_CONFIG_ERROR
    finally:
        shutdown_logging()

    sys.exit(code)


@cli.command()
@click.pass_obj
def cleanup(settings: Settings):
    """Remove expired backups and trim the log file."""
    setup_logging(settings)
    try:
        code = run_cleanup(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        code = EXIT_CONFIG_ERROR
    except (BackupError, OSError) as e:
        logger.error(f"Cleanup failed: {e}")
        code = 1
    finally:
        shutdown_logging()

    sys.exit(code)


@cli.command()
@click.pass_obj
def report(settings: Settings):
    """Send the backup report to Telegram."""
    setup_logging(settings)
    code = 0
    try:
        notifier = TelegramNotifier.from_settings(settings, logger=logger)
        if notifier is None:
            logger.error("Telegram is not configured")
            code = 1
        else:
            notifier.send_backup_report(settings.backup_path)
    except BackupError as e:
        logger.error(f"Failed to send backup report: {e}")
        code = 1
    finally:
        shutdown_logging()

    sys.exit(code)


@cli.command()
@click.argument("path", required=False, type=click.Path(file_okay=False))
@click.pass_obj
def validate(settings: Settings, path):
    """Validate every stored backup under PATH (default: the backup path)."""
    results = BackupValidator().validate_backups(path or settings.backup_path)

    invalid = 0
    for backup_file, result in results.items():
        if result.valid:
            click.echo(f"OK      {backup_file} ({result.size} bytes)")
        else:
            invalid += 1
            click.echo(f"INVALID {backup_file}: {', '.join(result.errors)}")

    click.echo(f"{len(results)} file(s) checked, {invalid} invalid")
    sys.exit(1 if invalid else 0)


@cli.command()
@click.option("--async", "concurrent", is_flag=True, help="Back up devices concurrently.")
@click.option("--cleanup-cron", default=None, help="Also run the cleanup job on this cron expression.")
@click.pass_obj
def schedule(settings: Settings, concurrent, cleanup_cron):
    """Run backups on the configured cron expression until interrupted."""
    setup_logging(settings)
    try:
        scheduler = BackupScheduler(logger=logger)
        scheduler.add_cron_job(
            BACKUP_JOB_ID,
            lambda: run_backup(settings, concurrent=concurrent),
            settings.schedule_cron,
        )
        if cleanup_cron:
            scheduler.add_cron_job(CLEANUP_JOB_ID, lambda: run_cleanup(settings), cleanup_cron)
        scheduler.start()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(EXIT_CONFIG_ERROR)
    finally:
        shutdown_logging()


def main():
    cli(prog_name="routeros-backup")


if __name__ == "__main__":
    main()
