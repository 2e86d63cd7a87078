"""
Logging Configuration
=====================

Process-wide logging for a backup run, built on the standard ``logging``
package. Worker threads share the handlers configured here; handler locks
serialize their writes.

Features:
- ``[time] [LEVEL] [context] message`` lines in a log file and on stderr
- Per-record context (device address or module name) via ``ContextAdapter``
- Suppression of identical messages repeated within a short window
- Per-module debug output (``--debug=ssh,zabbix`` or ``all``)
- Size-capped log trimming for the maintenance job
"""

import logging
import sys
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

PACKAGE_LOGGER = "routeros_backup"
DEFAULT_CONTEXT = "system"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(context)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ContextFilter(logging.Filter):
    """Guarantees every record carries a ``context`` attribute."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "context", None):
            record.context = DEFAULT_CONTEXT
        return True


class DuplicateMessageFilter(logging.Filter):
    """Drops a record identical to the previous one if it arrives within ``window`` seconds."""

    def __init__(self, window: float = 2.0, clock: Callable[[], float] = time.monotonic):
        super().__init__()
        self.window = window
        self.clock = clock
        self._last: Optional[Tuple[int, str, str]] = None
        self._last_time = 0.0
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        key = (record.levelno, getattr(record, "context", DEFAULT_CONTEXT), record.getMessage())
        now = self.clock()

        with self._lock:
            if key == self._last and now - self._last_time < self.window:
                return False
            self._last = key
            self._last_time = now

        return True


class DebugModuleFilter(logging.Filter):
    """
    Passes DEBUG records only for enabled modules. A module matches when its
    name appears in the record context or logger name; ``all`` enables every
    module. Records above DEBUG always pass, and with no modules configured
    the logger level alone decides.
    """

    def __init__(self, modules: Iterable[str] = ()):
        super().__init__()
        self.modules = [m.strip().lower() for m in modules if m and m.strip()]

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.DEBUG or not self.modules:
            return True
        if "all" in self.modules:
            return True

        haystack = f"{getattr(record, 'context', '')} {record.name}".lower()
        return any(module in haystack for module in self.modules)


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that tags records with a device address or module context."""

    def __init__(self, logger: Union[logging.Logger, logging.LoggerAdapter], context: str):
        if isinstance(logger, logging.LoggerAdapter):
            logger = logger.logger
        super().__init__(logger, {"context": context})

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("context", self.extra["context"])
        kwargs["extra"] = extra
        return msg, kwargs


_handlers: List[logging.Handler] = []


def parse_debug_modules(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def configure_logging(log_file: Optional[str] = None, level: str = "INFO",
                      debug_modules: Iterable[str] = (),
                      stream=None) -> logging.Logger:
    """
    Install handlers on the package logger. Calling it again replaces the
    handlers from the previous call.
    """
    shutdown_logging()

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    debug_modules = list(debug_modules)
    package_logger.setLevel(logging.DEBUG if debug_modules else getattr(logging, level.upper(), logging.INFO))
    package_logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(stream or sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        # Each handler keeps its own duplicate window.
        handler.addFilter(ContextFilter())
        handler.addFilter(DebugModuleFilter(debug_modules))
        handler.addFilter(DuplicateMessageFilter())
        package_logger.addHandler(handler)
        _handlers.append(handler)

    if debug_modules:
        package_logger.debug(f"Debug enabled for modules: {', '.join(debug_modules)}")

    return package_logger


def shutdown_logging():
    """Flush and close the handlers installed by configure_logging."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    while _handlers:
        handler = _handlers.pop()
        package_logger.removeHandler(handler)
        try:
            handler.flush()
        finally:
            handler.close()
    package_logger.propagate = True


def trim_log_file(path: Union[str, Path], max_bytes: int, keep_lines: int) -> bool:
    """Keep only the last ``keep_lines`` lines once the log grows past ``max_bytes``."""
    path = Path(path)
    if not path.is_file() or path.stat().st_size <= max_bytes:
        return False

    with open(path, "r", encoding="utf-8", errors="replace") as f:
        lines = f.readlines()

    with open(path, "w", encoding="utf-8") as f:
        f.writelines(lines[-keep_lines:] if keep_lines > 0 else [])

    return True
