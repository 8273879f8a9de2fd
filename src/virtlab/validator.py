"""Static validation of a ResolvedSpec before any mutating action.

Every check runs and every finding is returned, so a caller can fix the
whole configuration in one pass. The validator never raises on malformed
values; they become violations.
"""

import ipaddress
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

import structlog

from virtlab.config import Settings
from virtlab.errors import ValidationError
from virtlab.models import (
    ResolvedSpec,
    Severity,
    ValidationResult,
    Violation,
    parse_positive_int,
    parse_size_mb,
)

logger = structlog.get_logger()

REQUIRED_FIELDS = (
    "vm_name",
    "memory",
    "vcpus",
    "disk_size",
    "network_address",
    "ssh_key_path",
)

VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
SSH_KEY_PREFIXES = ("ssh-", "ecdsa-", "sk-ssh-", "sk-ecdsa-")
UNRENDERED_RE = re.compile(r"\{\{.*?\}\}|\$\{\w+\}|^\$ANSIBLE_VAULT")


@dataclass(frozen=True)
class ResourceLimits:
    """Maximum resources a single VM may request."""

    max_memory_mb: int
    max_vcpus: int
    max_disk_gb: float
    min_memory_mb: int = 512

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResourceLimits":
        return cls(
            max_memory_mb=settings.max_memory_mb,
            max_vcpus=settings.max_vcpus,
            max_disk_gb=settings.max_disk_gb,
            min_memory_mb=settings.min_memory_mb,
        )

    def with_overrides(self, overrides: Any) -> "ResourceLimits":
        """Apply a ``vm_limits`` mapping from configuration; invalid entries are ignored."""
        if not isinstance(overrides, Mapping):
            return self
        memory = parse_size_mb(overrides.get("memory"), "M")
        vcpus = parse_positive_int(overrides.get("vcpus"))
        disk = parse_size_mb(overrides.get("disk_size"), "G")
        return ResourceLimits(
            max_memory_mb=int(memory) if memory is not None else self.max_memory_mb,
            max_vcpus=vcpus if vcpus is not None else self.max_vcpus,
            max_disk_gb=disk / 1024 if disk is not None else self.max_disk_gb,
            min_memory_mb=self.min_memory_mb,
        )


def normalize_address(value: Any) -> Optional[str]:
    """Return the bare IP of an address or interface string, or None if invalid."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        return str(ipaddress.ip_interface(str(value).strip()).ip)
    except ValueError:
        return None


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return not value
    return False


class SpecValidator:
    """Check a ResolvedSpec against static constraints."""

    def __init__(self, limits: ResourceLimits):
        self.limits = limits

    @classmethod
    def from_settings(cls, settings: Settings) -> "SpecValidator":
        return cls(ResourceLimits.from_settings(settings))

    def validate(
        self,
        spec: ResolvedSpec,
        reserved_addresses: Optional[Mapping[str, str]] = None,
    ) -> ValidationResult:
        """Run every check and collect all violations.

        Args:
            spec: Resolved configuration to check
            reserved_addresses: Address -> environment name for addresses already
                claimed by other environments

        Returns:
            ValidationResult holding every violation found
        """
        result = ValidationResult(environment=spec.environment)
        limits = self.limits.with_overrides(spec.get("vm_limits"))

        checks: List[Callable[[], List[Violation]]] = [
            lambda: self._check_required(spec),
            lambda: self._check_vm_name(spec),
            lambda: self._check_resources(spec, limits),
            lambda: self._check_ssh_keys(spec),
            lambda: self._check_network(spec, reserved_addresses or {}),
            lambda: self._check_packages(spec),
            lambda: self._check_cloud_init(spec),
            lambda: self._check_unrendered(spec),
            lambda: self._check_base_image(spec),
        ]
        for check in checks:
            try:
                result.violations.extend(check())
            except Exception as e:
                logger.exception("Validation check crashed", environment=spec.environment)
                result.violations.append(
                    self._violation(spec, "spec", Severity.ERROR, f"Internal check failure: {e}")
                )

        logger.info(
            "Validation complete",
            environment=spec.environment,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    @staticmethod
    def _violation(spec: ResolvedSpec, field: str, severity: Severity, message: str) -> Violation:
        return Violation(field=field, severity=severity, message=message, environment=spec.environment)

    def _check_required(self, spec: ResolvedSpec) -> List[Violation]:
        return [
            self._violation(spec, name, Severity.ERROR, f"Required field '{name}' is missing")
            for name in REQUIRED_FIELDS
            if _is_blank(spec.get(name))
        ]

    def _check_vm_name(self, spec: ResolvedSpec) -> List[Violation]:
        name = spec.get("vm_name")
        if _is_blank(name):
            return []
        if not isinstance(name, str) or not VM_NAME_RE.match(name):
            return [
                self._violation(
                    spec,
                    "vm_name",
                    Severity.ERROR,
                    f"Invalid VM name {name!r}: use letters, digits, '.', '_' or '-' (max 64)",
                )
            ]
        return []

    def _check_resources(self, spec: ResolvedSpec, limits: ResourceLimits) -> List[Violation]:
        violations = []

        raw_memory = spec.get("memory")
        if not _is_blank(raw_memory):
            memory = spec.memory_mb
            if memory is None:
                violations.append(
                    self._violation(spec, "memory", Severity.ERROR, f"Invalid memory value {raw_memory!r}")
                )
            elif memory > limits.max_memory_mb:
                violations.append(
                    self._violation(
                        spec,
                        "memory",
                        Severity.ERROR,
                        f"Memory {memory} MiB exceeds maximum of {limits.max_memory_mb} MiB",
                    )
                )
            elif memory < limits.min_memory_mb:
                violations.append(
                    self._violation(
                        spec,
                        "memory",
                        Severity.WARNING,
                        f"Memory {memory} MiB is below the recommended {limits.min_memory_mb} MiB",
                    )
                )

        raw_vcpus = spec.get("vcpus")
        if not _is_blank(raw_vcpus):
            vcpus = spec.vcpus
            if vcpus is None:
                violations.append(
                    self._violation(spec, "vcpus", Severity.ERROR, f"Invalid vcpus value {raw_vcpus!r}")
                )
            elif vcpus > limits.max_vcpus:
                violations.append(
                    self._violation(
                        spec,
                        "vcpus",
                        Severity.ERROR,
                        f"vCPUs {vcpus} exceeds maximum of {limits.max_vcpus}",
                    )
                )

        raw_disk = spec.get("disk_size")
        if not _is_blank(raw_disk):
            disk = spec.disk_gb
            if disk is None:
                violations.append(
                    self._violation(spec, "disk_size", Severity.ERROR, f"Invalid disk size {raw_disk!r}")
                )
            elif disk > limits.max_disk_gb:
                violations.append(
                    self._violation(
                        spec,
                        "disk_size",
                        Severity.ERROR,
                        f"Disk size {disk:g} GiB exceeds maximum of {limits.max_disk_gb:g} GiB",
                    )
                )

        return violations

    def _check_ssh_keys(self, spec: ResolvedSpec) -> List[Violation]:
        violations = []

        raw_public = spec.get("ssh_key_path")
        if not _is_blank(raw_public):
            public = spec.ssh_key_path
            if public is None:
                violations.append(
                    self._violation(spec, "ssh_key_path", Severity.ERROR, f"Invalid path {raw_public!r}")
                )
            elif not public.is_file():
                violations.append(
                    self._violation(
                        spec, "ssh_key_path", Severity.ERROR, f"SSH public key not found: {public}"
                    )
                )
            elif not os.access(public, os.R_OK):
                violations.append(
                    self._violation(
                        spec, "ssh_key_path", Severity.ERROR, f"SSH public key is not readable: {public}"
                    )
                )
            else:
                try:
                    content = public.read_text(errors="replace").strip()
                except OSError as e:
                    content = ""
                    violations.append(
                        self._violation(spec, "ssh_key_path", Severity.ERROR, f"Cannot read {public}: {e}")
                    )
                if content and not content.startswith(SSH_KEY_PREFIXES):
                    violations.append(
                        self._violation(
                            spec,
                            "ssh_key_path",
                            Severity.WARNING,
                            f"{public} does not look like an OpenSSH public key",
                        )
                    )

        raw_private = spec.get("ssh_private_key_path")
        if not _is_blank(raw_private):
            private = spec.ssh_private_key_path
            if private is None or not private.is_file():
                violations.append(
                    self._violation(
                        spec,
                        "ssh_private_key_path",
                        Severity.WARNING,
                        f"SSH private key not found: {raw_private}",
                    )
                )

        return violations

    def _check_network(self, spec: ResolvedSpec, reserved: Mapping[str, str]) -> List[Violation]:
        raw = spec.get("network_address")
        if _is_blank(raw):
            return []

        address = normalize_address(raw)
        if address is None:
            return [
                self._violation(
                    spec, "network_address", Severity.ERROR, f"Invalid network address {raw!r}"
                )
            ]

        violations = []
        for other_address, owner in reserved.items():
            if owner == spec.environment:
                continue
            if normalize_address(other_address) == address:
                violations.append(
                    self._violation(
                        spec,
                        "network_address",
                        Severity.ERROR,
                        f"Address conflict: {address} is already reserved by environment '{owner}'",
                    )
                )
                break

        gateway = spec.get("network_gateway")
        if not _is_blank(gateway) and normalize_address(gateway) is None:
            violations.append(
                self._violation(
                    spec, "network_gateway", Severity.ERROR, f"Invalid gateway address {gateway!r}"
                )
            )
        return violations

    def _check_packages(self, spec: ResolvedSpec) -> List[Violation]:
        packages = spec.get("packages")
        if packages is None:
            return []
        if not isinstance(packages, list) or not all(
            isinstance(p, str) and p.strip() for p in packages
        ):
            return [
                self._violation(
                    spec, "packages", Severity.ERROR, "packages must be a list of package names"
                )
            ]
        return []

    def _check_cloud_init(self, spec: ResolvedSpec) -> List[Violation]:
        violations = []
        if _is_blank(spec.get("cloud_init_user")):
            violations.append(
                self._violation(
                    spec,
                    "cloud_init_user",
                    Severity.WARNING,
                    f"cloud_init_user not set, defaulting to '{spec.cloud_init_user}'",
                )
            )
        password = spec.get("cloud_init_password")
        if _is_blank(password):
            return violations
        if UNRENDERED_RE.search(str(password)):
            violations.append(
                self._violation(
                    spec,
                    "cloud_init_password",
                    Severity.ERROR,
                    "cloud_init_password is an unrendered template; "
                    "set the environment variable it references",
                )
            )
        elif "cloud_init_password" not in spec.rendered:
            violations.append(
                self._violation(
                    spec,
                    "cloud_init_password",
                    Severity.WARNING,
                    "cloud_init_password is a plain-text literal; "
                    "use an environment lookup such as ${VM_PASSWORD}",
                )
            )
        return violations

    def _check_unrendered(self, spec: ResolvedSpec) -> List[Violation]:
        violations = []
        for key in sorted(spec.values, key=str):
            if key == "cloud_init_password":
                continue
            value = spec.values[key]
            items = value if isinstance(value, list) else [value]
            if any(isinstance(item, str) and UNRENDERED_RE.search(item) for item in items):
                violations.append(
                    self._violation(
                        spec, str(key), Severity.WARNING, f"{key} contains an unrendered template"
                    )
                )
        return violations

    def _check_base_image(self, spec: ResolvedSpec) -> List[Violation]:
        raw = spec.get("base_image")
        if _is_blank(raw):
            return []
        image = spec.base_image
        if image is None or not image.is_file():
            return [
                self._violation(spec, "base_image", Severity.WARNING, f"Base image not found: {raw}")
            ]
        return []


def raise_for_errors(result: ValidationResult) -> None:
    """Raise ValidationError carrying every ERROR violation, if any."""
    if not result.passed:
        raise ValidationError(result.errors, environment=result.environment)
