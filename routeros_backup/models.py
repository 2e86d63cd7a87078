"""Data types shared by the backup workflow, dispatcher and retention manager."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .error_handling import ConfigurationError, ErrorCategory


@dataclass(frozen=True)
class DeviceDescriptor:
    """Identity and credentials of one managed device."""
    device_id: str
    name: str
    host: str
    address: str
    username: str
    password: str = field(repr=False)

    def matches(self, selector: str) -> bool:
        """True when the selector equals the device host, display name or address."""
        return selector in (self.host, self.name, self.address)


@dataclass(frozen=True)
class BackupArtifact:
    """A downloaded backup file on local storage."""
    path: Path
    size: int
    created_at: datetime
    signature: bytes

    @classmethod
    def from_file(cls, path: Path) -> "BackupArtifact":
        stat = path.stat()
        with open(path, 'rb') as f:
            header = f.read(8)
        return cls(
            path=path,
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime),
            signature=header,
        )


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating one artifact."""
    valid: bool
    size: int
    errors: Tuple[str, ...] = ()
    signature_hex: Optional[str] = None


@dataclass
class BackupOutcome:
    """Per-device result of one backup run."""
    device: DeviceDescriptor
    success: bool
    size: Optional[int] = None
    local_path: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    duration_seconds: float = 0.0

    @classmethod
    def failed(cls, device: DeviceDescriptor, error: str,
               category: ErrorCategory = ErrorCategory.UNKNOWN,
               duration_seconds: float = 0.0) -> "BackupOutcome":
        return cls(
            device=device,
            success=False,
            error=error,
            error_category=category,
            duration_seconds=duration_seconds,
        )


@dataclass(frozen=True)
class RetentionPolicy:
    """How many days of history to keep per device."""
    retention_days: int

    def __post_init__(self):
        if self.retention_days < 0:
            raise ConfigurationError(f"retention_days must be >= 0, got {self.retention_days}")


@dataclass
class DispatchReport:
    """Aggregate of a concurrent run, outcomes in completion order."""
    outcomes: List[BackupOutcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded
