"""Data models for virtlab."""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

DEFAULT_CLOUD_USER = "ubuntu"
REDACTED = "********"
SECRET_KEYS = ("cloud_init_password",)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_UNIT_MB = {"K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}


def parse_size_mb(value: Any, default_unit: str = "M") -> Optional[float]:
    """Parse a size such as 2048, "2G", "20GB" or "512MiB" into MiB.

    Returns None for anything that is not a positive size.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number, unit = float(value), default_unit
    elif isinstance(value, str):
        match = _SIZE_RE.match(value)
        if not match:
            return None
        number, unit = float(match.group(1)), (match.group(2) or default_unit)
    else:
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number * _UNIT_MB[unit.upper()]


def parse_positive_int(value: Any) -> Optional[int]:
    """Parse a strictly positive integer, rejecting bools and fractional values."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


class Severity(Enum):
    """Violation severity."""

    ERROR = "error"
    WARNING = "warning"


class LifecycleState(Enum):
    """Declared target state of a VM."""

    ABSENT = "absent"
    PRESENT = "present"
    RUNNING = "running"
    STOPPED = "stopped"


class DomainState(Enum):
    """State of a libvirt domain as observed on the hypervisor."""

    ABSENT = "absent"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    OTHER = "other"

    @classmethod
    def from_virsh(cls, text: str) -> "DomainState":
        """Map `virsh domstate` output onto a DomainState."""
        state = text.strip().lower()
        if state in ("running", "idle", "in shutdown"):
            return cls.RUNNING
        if state in ("shut off", "shutoff", "crashed"):
            return cls.STOPPED
        if state in ("paused", "pmsuspended"):
            return cls.PAUSED
        return cls.OTHER


@dataclass(frozen=True)
class EnvironmentProfile:
    """Shared defaults merged with one environment's file."""

    name: str
    values: Mapping[str, Any]
    sources: Tuple[Path, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @property
    def network_address(self) -> Optional[str]:
        """Declared network address, if any."""
        value = self.values.get("network_address")
        return str(value) if value not in (None, "") else None


@dataclass(frozen=True)
class ResolvedSpec:
    """Effective parameter set for one invocation.

    ``rendered`` names the keys whose values were filled in from environment
    variables during resolution.
    """

    environment: str
    values: Mapping[str, Any]
    sources: Tuple[Path, ...] = ()
    rendered: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def _path(self, key: str) -> Optional[Path]:
        value = self.values.get(key)
        if not isinstance(value, (str, Path)) or not str(value).strip():
            return None
        return Path(str(value)).expanduser()

    @property
    def vm_name(self) -> Optional[str]:
        value = self.values.get("vm_name")
        return str(value) if value not in (None, "") else None

    @property
    def memory_mb(self) -> Optional[int]:
        size = parse_size_mb(self.values.get("memory"), "M")
        if size is None or size < 1:
            return None
        return int(size)

    @property
    def vcpus(self) -> Optional[int]:
        return parse_positive_int(self.values.get("vcpus"))

    @property
    def disk_gb(self) -> Optional[float]:
        size = parse_size_mb(self.values.get("disk_size"), "G")
        if size is None or size < 1:
            return None
        return size / 1024

    @property
    def disk_size_arg(self) -> Optional[str]:
        """Disk size formatted for qemu-img."""
        size = parse_size_mb(self.values.get("disk_size"), "G")
        if size is None or size < 1:
            return None
        if size % 1024 == 0:
            return f"{int(size // 1024)}G"
        return f"{int(size)}M"

    @property
    def network_address(self) -> Optional[str]:
        value = self.values.get("network_address")
        return str(value) if value not in (None, "") else None

    @property
    def ssh_key_path(self) -> Optional[Path]:
        return self._path("ssh_key_path")

    @property
    def ssh_private_key_path(self) -> Optional[Path]:
        return self._path("ssh_private_key_path")

    @property
    def base_image(self) -> Optional[Path]:
        return self._path("base_image")

    @property
    def storage_dir(self) -> Optional[Path]:
        return self._path("storage_dir")

    @property
    def packages(self) -> List[str]:
        value = self.values.get("packages") or []
        if not isinstance(value, list):
            return []
        return [str(p) for p in value]

    @property
    def cloud_init_user(self) -> str:
        value = self.values.get("cloud_init_user")
        return str(value) if value else DEFAULT_CLOUD_USER

    @property
    def cloud_init_password(self) -> Optional[str]:
        value = self.values.get("cloud_init_password")
        return str(value) if value not in (None, "") else None

    def redacted(self) -> Dict[str, Any]:
        """Values safe for display, with secrets masked."""
        return {
            key: (REDACTED if key in SECRET_KEYS and value else value)
            for key, value in sorted(self.values.items())
        }


@dataclass(frozen=True)
class Violation:
    """A single validation finding."""

    field: str
    severity: Severity
    message: str
    environment: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


@dataclass
class ValidationResult:
    """All findings for one ResolvedSpec."""

    environment: str
    violations: List[Violation] = field(default_factory=list)

    @property
    def errors(self) -> List[Violation]:
        return [v for v in self.violations if v.is_error]

    @property
    def warnings(self) -> List[Violation]:
        return [v for v in self.violations if not v.is_error]

    @property
    def passed(self) -> bool:
        """True when no ERROR-severity violation was found."""
        return not self.errors


@dataclass
class ExecutionOutcome:
    """Result of driving a VM towards a target state."""

    environment: str
    vm_name: str
    target: LifecycleState
    initial_state: DomainState
    final_state: DomainState
    actions: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.actions)


@dataclass
class EnvironmentReport:
    """Outcome of one pipeline entry (environment x matrix entry)."""

    environment: str
    matrix_entry: Optional[str] = None
    validation: Optional[ValidationResult] = None
    execution: Optional[ExecutionOutcome] = None
    error: Optional[str] = None
    exit_code: int = 0

    @property
    def label(self) -> str:
        if self.matrix_entry:
            return f"{self.environment}/{self.matrix_entry}"
        return self.environment

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass
class RunReport:
    """Aggregated pipeline outcome."""

    entries: List[EnvironmentReport] = field(default_factory=list)

    def add(self, entry: EnvironmentReport) -> None:
        self.entries.append(entry)

    @property
    def passed(self) -> bool:
        return all(entry.passed for entry in self.entries)

    @property
    def failed_count(self) -> int:
        return sum(1 for entry in self.entries if not entry.passed)

    @property
    def exit_code(self) -> int:
        """0 only when every entry passed, otherwise the highest entry exit code."""
        return max((entry.exit_code for entry in self.entries), default=0)
