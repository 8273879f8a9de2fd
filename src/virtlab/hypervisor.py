"""Thin wrapper over the libvirt command-line tools.

Every call runs with an explicit deadline. A missing binary raises
DependencyError; a non-zero exit or an expired deadline raises
ExecutionError carrying the command, exit code and captured output.
Nothing here retries.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import structlog

from virtlab.cloud_init import SeedFiles
from virtlab.config import Settings
from virtlab.errors import DependencyError, ExecutionError
from virtlab.models import DomainState

logger = structlog.get_logger()

DOMAIN_NOT_FOUND_MARKERS = ("failed to get domain", "domain not found", "no domain with matching")


@dataclass
class DomainDefinition:
    """Arguments needed by virt-install to define and boot a domain."""

    name: str
    memory_mb: int
    vcpus: int
    disk_path: Path
    seed_iso: Path
    os_variant: str
    network: str


class LibvirtClient:
    """Runs virsh, virt-install, qemu-img and cloud-localds."""

    def __init__(self, uri: str = "qemu:///system", timeout: int = 600):
        """
        Args:
            uri: libvirt connection URI passed to virsh and virt-install
            timeout: Deadline in seconds for any single command
        """
        self.uri = uri
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "LibvirtClient":
        return cls(uri=settings.libvirt_uri, timeout=settings.command_timeout_seconds)

    def run(
        self, command: Sequence[str], check: bool = True, timeout: Optional[int] = None
    ) -> subprocess.CompletedProcess:
        """Run an external command with a deadline."""
        command = list(command)
        deadline = timeout or self.timeout
        logger.debug("Running command", command=" ".join(command), timeout=deadline)

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=deadline,
                check=False,
            )
        except FileNotFoundError as e:
            raise DependencyError(f"Required tool not found: {command[0]}", tool=command[0]) from e
        except subprocess.TimeoutExpired as e:
            raise ExecutionError(
                f"Command timed out after {deadline}s",
                command=command,
                output=_decode(e.stdout) + _decode(e.stderr),
            ) from e

        if check and result.returncode != 0:
            raise ExecutionError(
                f"{command[0]} failed",
                command=command,
                returncode=result.returncode,
                output=(result.stdout or "") + (result.stderr or ""),
            )
        return result

    def virsh(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self.run(["virsh", "-c", self.uri, *args], check=check)

    def domain_state(self, name: str) -> DomainState:
        """Observed state of a domain, ABSENT when libvirt does not know it."""
        result = self.virsh("domstate", name, check=False)
        if result.returncode == 0:
            return DomainState.from_virsh(result.stdout)

        output = ((result.stderr or "") + (result.stdout or "")).lower()
        if any(marker in output for marker in DOMAIN_NOT_FOUND_MARKERS):
            return DomainState.ABSENT
        raise ExecutionError(
            "Could not query domain state",
            command=["virsh", "-c", self.uri, "domstate", name],
            returncode=result.returncode,
            output=(result.stdout or "") + (result.stderr or ""),
        )

    def list_domains(self) -> List[str]:
        result = self.virsh("list", "--all", "--name")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def start(self, name: str) -> None:
        self.virsh("start", name)

    def resume(self, name: str) -> None:
        self.virsh("resume", name)

    def shutdown(self, name: str) -> None:
        """Request a graceful (ACPI) shutdown."""
        self.virsh("shutdown", name)

    def force_stop(self, name: str) -> None:
        """Immediately power off a domain (``virsh destroy``)."""
        self.virsh("destroy", name)

    def undefine(self, name: str) -> None:
        self.virsh("undefine", name)

    def create_disk(self, base_image: Path, disk_path: Path, size: str) -> None:
        """Create a qcow2 overlay backed by ``base_image`` and grow it to ``size``."""
        disk_path.parent.mkdir(parents=True, exist_ok=True)
        self.run(
            [
                "qemu-img",
                "create",
                "-f",
                "qcow2",
                "-F",
                "qcow2",
                "-b",
                str(base_image),
                str(disk_path),
                size,
            ]
        )

    def create_seed_iso(self, seed: SeedFiles, iso_path: Path) -> None:
        command = ["cloud-localds"]
        if seed.network_config:
            command.append(f"--network-config={seed.network_config}")
        command.extend([str(iso_path), str(seed.user_data), str(seed.meta_data)])
        self.run(command)

    def virt_install(self, domain: DomainDefinition) -> None:
        """Define and boot a domain from an existing disk image."""
        self.run(
            [
                "virt-install",
                "--connect",
                self.uri,
                "--name",
                domain.name,
                "--memory",
                str(domain.memory_mb),
                "--vcpus",
                str(domain.vcpus),
                "--disk",
                f"path={domain.disk_path},format=qcow2,bus=virtio",
                "--disk",
                f"path={domain.seed_iso},device=cdrom",
                "--os-variant",
                domain.os_variant,
                "--network",
                f"network={domain.network},model=virtio",
                "--import",
                "--graphics",
                "none",
                "--noautoconsole",
            ]
        )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
