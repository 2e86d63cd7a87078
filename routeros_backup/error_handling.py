"""
Error Handling and Retry Logic
==============================

This module provides the exception taxonomy, error classification and the
bounded retry policy used by the RouterOS backup engine.

Features:
- Typed exceptions for every terminal per-device failure
- Error classification into categories for outcomes and status reporting
- Single classification point for remote command output
- Configurable retry strategies (fixed interval, linear, exponential backoff)
- Bounded polling with an injectable sleep function
- Retry decorator for transient HTTP failures
"""

import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error category classification."""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    REMOTE_COMMAND = "remote_command"
    TRANSFER = "transfer"
    VALIDATION = "validation"
    STORAGE = "storage"
    CLEANUP = "cleanup"
    REPORTING = "reporting"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class BackupError(Exception):
    """Base class for all backup engine errors."""

    category = ErrorCategory.UNKNOWN


class DeviceConnectionError(BackupError):
    """Transport endpoint of the device is unreachable."""

    category = ErrorCategory.CONNECTION


class AuthenticationError(BackupError):
    """SSH login to the device was rejected."""

    category = ErrorCategory.AUTHENTICATION


class RemoteCommandError(BackupError):
    """The device reported a failure for the backup command."""

    category = ErrorCategory.REMOTE_COMMAND


class TransferError(BackupError):
    """Artifact never appeared on the device, or the download failed."""

    category = ErrorCategory.TRANSFER


class ArtifactValidationError(BackupError):
    """Downloaded artifact is empty, truncated or of an unknown format."""

    category = ErrorCategory.VALIDATION


class BackupStorageError(BackupError):
    """Local backup directory cannot be created or written."""

    category = ErrorCategory.STORAGE


class CleanupError(BackupError):
    """Remote artifact could not be removed from the device."""

    category = ErrorCategory.CLEANUP


class StatusReportError(BackupError):
    """Status could not be pushed to the monitoring service."""

    category = ErrorCategory.REPORTING


class NotificationError(BackupError):
    """Chat notification could not be delivered."""

    category = ErrorCategory.REPORTING


class ConfigurationError(BackupError):
    """Unrecoverable configuration problem; aborts the run."""

    category = ErrorCategory.CONFIGURATION


# Tokens the device prints when "/system backup save" fails.
COMMAND_FAILURE_MARKERS: Tuple[str, ...] = ("failure", "error")


def classify_command_output(output: str,
                            markers: Iterable[str] = COMMAND_FAILURE_MARKERS) -> Optional[str]:
    """Return the failure marker found in command output, or None if the output looks clean."""
    lowered = (output or "").lower()
    for marker in markers:
        if marker in lowered:
            return marker
    return None


class ErrorClassifier:
    """Classifies exceptions into error categories."""

    _KEYWORDS = (
        (ErrorCategory.AUTHENTICATION, ("authentication", "login", "password", "credentials")),
        (ErrorCategory.CONNECTION, ("connection", "unreachable", "timed out", "timeout", "socket", "network")),
        (ErrorCategory.STORAGE, ("permission denied", "no space", "disk", "directory")),
        (ErrorCategory.VALIDATION, ("validation", "invalid", "corrupt", "signature")),
    )

    @staticmethod
    def classify_error(exception: BaseException) -> ErrorCategory:
        """Classify error into a category."""
        if isinstance(exception, BackupError):
            return exception.category

        message = str(exception).lower()
        for category, keywords in ErrorClassifier._KEYWORDS:
            if any(keyword in message for keyword in keywords):
                return category

        if isinstance(exception, (ConnectionError, TimeoutError)):
            return ErrorCategory.CONNECTION
        if isinstance(exception, OSError):
            return ErrorCategory.STORAGE

        return ErrorCategory.UNKNOWN

    @staticmethod
    def is_retryable(exception: BaseException) -> bool:
        """Only transport-level hiccups are worth another attempt."""
        return ErrorClassifier.classify_error(exception) == ErrorCategory.CONNECTION


class RetryStrategy(Enum):
    """Retry strategy types."""
    FIXED_INTERVAL = "fixed_interval"
    LINEAR_BACKOFF = "linear_backoff"
    EXPONENTIAL_BACKOFF = "exponential_backoff"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: List[Type[BaseException]] = field(default_factory=list)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ConfigurationError(f"base_delay must be >= 0, got {self.base_delay}")


# Artifact polling: 10 listings, 2 seconds apart.
ARTIFACT_POLL_CONFIG = RetryConfig(
    max_attempts=10,
    strategy=RetryStrategy.FIXED_INTERVAL,
    base_delay=2.0,
)


class RetryManager:
    """Manages retry delays and retry decisions."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the given zero-based attempt."""
        if self.config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.config.base_delay * (self.config.backoff_multiplier ** attempt)
        elif self.config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = self.config.base_delay * (attempt + 1)
        else:
            delay = self.config.base_delay

        return min(delay, self.config.max_delay)

    def should_retry(self, exception: BaseException, attempt: int) -> bool:
        """Determine if operation should be retried."""
        if attempt >= self.config.max_attempts - 1:
            return False

        if self.config.retryable_exceptions:
            return isinstance(exception, tuple(self.config.retryable_exceptions))

        return ErrorClassifier.is_retryable(exception)


def poll_until(check: Callable[[int], bool], config: RetryConfig,
               sleep: Callable[[float], None] = time.sleep) -> bool:
    """
    Call ``check(attempt)`` up to ``config.max_attempts`` times, sleeping
    before every call. Returns True as soon as a check succeeds.
    """
    manager = RetryManager(config)

    for attempt in range(config.max_attempts):
        sleep(manager.calculate_delay(attempt))
        if check(attempt):
            return True

    return False


def retry_with_backoff(config: Optional[RetryConfig] = None,
                       sleep: Callable[[float], None] = time.sleep):
    """Decorator for adding retry logic to functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retry_manager = RetryManager(config)

            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not retry_manager.should_retry(e, attempt):
                        raise

                    delay = retry_manager.calculate_delay(attempt)
                    logger.warning(f"Attempt {attempt + 1} failed for {func.__name__}: {e}. Retrying in {delay:.2f}s")
                    sleep(delay)

        return wrapper
    return decorator
