"""
Backup Artifact Validation
==========================

Classifies downloaded RouterOS backup files as valid or invalid. Every rule
is evaluated so that a single file can report several problems at once.

Known signatures (anchored at byte offset 0):
- ``BACKUP2``            RouterOS 7 backups
- ``88 AC A1 B1``        RouterOS 6 (legacy) backups
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

from .models import ValidationResult

logger = logging.getLogger(__name__)

MIN_BACKUP_SIZE = 1024
HEADER_LENGTH = 8
BACKUP_SIGNATURES = (
    b"BACKUP2",
    bytes.fromhex("88aca1b1"),
)

ERROR_MISSING = "file does not exist"
ERROR_TOO_SMALL = "file too small"
ERROR_SIGNATURE = "invalid signature"
ERROR_UNREADABLE = "file not readable"


def has_known_signature(header: bytes) -> bool:
    """Check whether a file header starts with one of the known backup signatures."""
    return any(header.startswith(signature) for signature in BACKUP_SIGNATURES)


def read_header(path: Union[str, Path], length: int = HEADER_LENGTH) -> bytes:
    with open(path, 'rb') as f:
        return f.read(length)


class BackupValidator:
    """Validates backup artifacts on local storage."""

    def __init__(self, min_size: int = MIN_BACKUP_SIZE, logger: Optional[logging.Logger] = None):
        self.min_size = min_size
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, path: Union[str, Path]) -> ValidationResult:
        """Validate a single artifact."""
        path = Path(path)
        if not path.is_file():
            return ValidationResult(valid=False, size=0, errors=(ERROR_MISSING,))

        try:
            size = path.stat().st_size
            header = read_header(path)
        except OSError as e:
            self.logger.error(f"Cannot read backup file {path}: {e}")
            return ValidationResult(valid=False, size=0, errors=(f"{ERROR_UNREADABLE}: {e.strerror or e}",))

        errors = []
        signature_hex = None

        if size < self.min_size:
            errors.append(ERROR_TOO_SMALL)

        if not has_known_signature(header):
            errors.append(ERROR_SIGNATURE)
            signature_hex = header.hex()
            self.logger.debug(f"Unknown header in {path.name}: {signature_hex}")

        return ValidationResult(
            valid=not errors,
            size=size,
            errors=tuple(errors),
            signature_hex=signature_hex,
        )

    def validate_backups(self, backup_root: Union[str, Path]) -> Dict[Path, ValidationResult]:
        """Validate every stored artifact under ``<backup_root>/<device>/``."""
        results = {}
        for path in sorted(Path(backup_root).glob("*/*.backup")):
            results[path] = self.validate(path)
        return results
