"""Shared test fixtures for virtlab tests."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import structlog
import yaml

from virtlab.config import Settings
from virtlab.hypervisor import DomainDefinition, LibvirtClient
from virtlab.models import DomainState, ResolvedSpec

SHARED_CONFIG = {
    "memory": 1024,
    "vcpus": 1,
    "disk_size": "10G",
    "packages": ["qemu-guest-agent", "curl"],
    "cloud_init_user": "ubuntu",
    "cloud_init_password": "{{ lookup('env', 'VM_PASSWORD') }}",
    "os_variant": "ubuntu22.04",
}

ENVIRONMENTS = {
    "dev": {"vm_name": "dev-vm", "network_address": "192.168.122.110"},
    "staging": {"vm_name": "staging-vm", "network_address": "192.168.122.120", "memory": 2048},
    "prod": {"vm_name": "prod-vm", "network_address": "192.168.122.130", "memory": 4096, "vcpus": 2},
}


@pytest.fixture(autouse=True)
def reset_logging():
    """CLI runs point structlog at the runner's stream; restore defaults afterwards."""
    yield
    structlog.reset_defaults()


def write_yaml(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def ssh_key(tmp_path) -> Path:
    """Create a temporary SSH public key."""
    key_file = tmp_path / "keys" / "id_rsa.pub"
    key_file.parent.mkdir(parents=True)
    key_file.write_text("ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQ test@example.com\n")
    return key_file


@pytest.fixture
def base_image(tmp_path) -> Path:
    image = tmp_path / "images" / "jammy-server-cloudimg-amd64.img"
    image.parent.mkdir(parents=True, exist_ok=True)
    image.write_bytes(b"QFI\xfb")
    return image


@pytest.fixture
def project_dir(tmp_path, ssh_key, base_image, monkeypatch) -> Path:
    """Project with shared defaults and dev/staging/prod environment files."""
    monkeypatch.setenv("VM_PASSWORD", "s3cret")
    root = tmp_path / "project"
    shared = dict(SHARED_CONFIG, ssh_key_path=str(ssh_key), base_image=str(base_image))
    write_yaml(root / "group_vars" / "all.yml", shared)
    for name, values in ENVIRONMENTS.items():
        write_yaml(root / "inventories" / name / "group_vars" / "all.yml", values)
    return root


@pytest.fixture
def storage_dir(tmp_path) -> Path:
    path = tmp_path / "libvirt-images"
    path.mkdir()
    return path


@pytest.fixture
def settings(project_dir, storage_dir) -> Settings:
    """Test settings isolated from any .env file."""
    return Settings(
        _env_file=None,
        project_dir=project_dir,
        storage_dir=storage_dir,
        shutdown_timeout_seconds=10,
        poll_interval_seconds=1,
    )


@pytest.fixture
def make_spec(ssh_key, base_image):
    """Build a valid ResolvedSpec, with keyword overrides."""

    def _make(environment: str = "dev", **overrides: Any) -> ResolvedSpec:
        values: Dict[str, Any] = {
            "vm_name": f"{environment}-vm",
            "memory": 1024,
            "vcpus": 1,
            "disk_size": "10G",
            "network_address": "192.168.122.110",
            "ssh_key_path": str(ssh_key),
            "base_image": str(base_image),
            "packages": ["curl"],
            "cloud_init_user": "ubuntu",
        }
        values.update(overrides)
        return ResolvedSpec(environment=environment, values=values)

    return _make


class FakeLibvirtClient(LibvirtClient):
    """In-memory hypervisor that writes real artifact files."""

    def __init__(self, domains: Optional[Dict[str, DomainState]] = None, stuck_on_shutdown: bool = False):
        super().__init__(uri="test:///default", timeout=5)
        self.domains: Dict[str, DomainState] = dict(domains or {})
        self.stuck_on_shutdown = stuck_on_shutdown
        self.calls: List[str] = []

    def domain_state(self, name: str) -> DomainState:
        return self.domains.get(name, DomainState.ABSENT)

    def start(self, name: str) -> None:
        self.calls.append(f"start {name}")
        self.domains[name] = DomainState.RUNNING

    def resume(self, name: str) -> None:
        self.calls.append(f"resume {name}")
        self.domains[name] = DomainState.RUNNING

    def shutdown(self, name: str) -> None:
        self.calls.append(f"shutdown {name}")
        if not self.stuck_on_shutdown:
            self.domains[name] = DomainState.STOPPED

    def force_stop(self, name: str) -> None:
        self.calls.append(f"force_stop {name}")
        self.domains[name] = DomainState.STOPPED

    def undefine(self, name: str) -> None:
        self.calls.append(f"undefine {name}")
        self.domains.pop(name, None)

    def create_disk(self, base_image: Path, disk_path: Path, size: str) -> None:
        self.calls.append(f"create_disk {disk_path.name}")
        disk_path.parent.mkdir(parents=True, exist_ok=True)
        disk_path.write_bytes(b"qcow2")

    def create_seed_iso(self, seed, iso_path: Path) -> None:
        self.calls.append(f"create_seed_iso {iso_path.name}")
        iso_path.write_bytes(b"iso")

    def virt_install(self, domain: DomainDefinition) -> None:
        self.calls.append(f"virt_install {domain.name}")
        self.domains[domain.name] = DomainState.RUNNING


@pytest.fixture
def fake_client() -> FakeLibvirtClient:
    return FakeLibvirtClient()
