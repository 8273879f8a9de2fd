"""External tool discovery and exact version pinning.

Pinned versions are compared exactly and a mismatch fails fast; there is no
attempt to reinstall or reconcile tools at runtime.
"""

import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import structlog

from virtlab.errors import DependencyError

logger = structlog.get_logger()

REQUIRED_TOOLS = ("virsh", "virt-install", "qemu-img", "cloud-localds")
OPTIONAL_TOOLS = ("ansible-playbook", "ansible-lint", "yamllint")

VERSION_RE = re.compile(r"(\d+\.\d+(?:\.\d+)?)")


@dataclass
class ToolStatus:
    """Discovery result for a single tool."""

    name: str
    required: bool
    path: Optional[str] = None
    version: Optional[str] = None
    pinned: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.path is not None

    @property
    def pin_ok(self) -> bool:
        return self.pinned is None or self.version == self.pinned

    @property
    def ok(self) -> bool:
        if not self.found:
            return not self.required
        return self.pin_ok

    @property
    def message(self) -> str:
        if not self.found:
            return "missing" if self.required else "not installed (optional)"
        if not self.pin_ok:
            return f"version {self.version or 'unknown'} does not match pinned {self.pinned}"
        return f"version {self.version}" if self.version else "found"


def parse_version(output: str) -> Optional[str]:
    """Extract the first dotted version number from ``--version`` output."""
    match = VERSION_RE.search(output or "")
    return match.group(1) if match else None


def tool_version(
    path: str, runner: Callable[..., subprocess.CompletedProcess] = subprocess.run
) -> Optional[str]:
    try:
        result = runner([path, "--version"], capture_output=True, text=True, timeout=30, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Could not determine tool version", tool=path, error=str(e))
        return None
    return parse_version((result.stdout or "") + (result.stderr or ""))


def check_toolchain(
    pins: Optional[Mapping[str, str]] = None,
    required: Iterable[str] = REQUIRED_TOOLS,
    optional: Iterable[str] = OPTIONAL_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> List[ToolStatus]:
    """Discover required and optional tools; pinned tools are treated as required."""
    pins = dict(pins or {})
    names: Dict[str, bool] = {name: True for name in required}
    for name in optional:
        names.setdefault(name, False)
    for name in pins:
        names[name] = True

    statuses = []
    for name, is_required in names.items():
        status = ToolStatus(name=name, required=is_required, pinned=pins.get(name))
        status.path = which(name)
        if status.found:
            status.version = tool_version(status.path, runner)
        logger.debug("Tool discovered", tool=name, path=status.path, version=status.version)
        statuses.append(status)
    return statuses


def enforce_toolchain(statuses: Iterable[ToolStatus]) -> None:
    """Raise DependencyError listing every missing required tool or pin mismatch."""
    problems = [status for status in statuses if not status.ok]
    if problems:
        details = "; ".join(f"{s.name}: {s.message}" for s in problems)
        raise DependencyError(f"Toolchain check failed: {details}", tool=problems[0].name)
