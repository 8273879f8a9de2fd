"""Cloud-init NoCloud seed generation."""

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import yaml

from virtlab.errors import ConfigurationError
from virtlab.models import ResolvedSpec
from virtlab.validator import UNRENDERED_RE, normalize_address

logger = structlog.get_logger()

CLOUD_CONFIG_HEADER = "#cloud-config\n"


@dataclass
class SeedFiles:
    """Paths of a rendered seed directory."""

    directory: Path
    user_data: Path
    meta_data: Path
    network_config: Optional[Path] = None

    def all(self) -> List[Path]:
        files = [self.user_data, self.meta_data]
        if self.network_config:
            files.append(self.network_config)
        return files


def read_public_key(spec: ResolvedSpec) -> str:
    """Return the SSH public key content referenced by ``ssh_key_path``."""
    path = spec.ssh_key_path
    if path is None:
        raise FileNotFoundError("ssh_key_path is not set")
    return path.read_text().strip()


def build_user_data(spec: ResolvedSpec, public_key: str) -> Dict[str, Any]:
    """Build the cloud-config document for a VM.

    Raises:
        ConfigurationError: cloud_init_password still holds a template
    """
    user: Dict[str, Any] = {
        "name": spec.cloud_init_user,
        "groups": ["sudo"],
        "shell": "/bin/bash",
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "ssh_authorized_keys": [public_key],
    }

    document: Dict[str, Any] = {
        "hostname": spec.vm_name,
        "manage_etc_hosts": True,
        "users": [user],
        "ssh_pwauth": False,
    }

    password = spec.cloud_init_password
    if password and UNRENDERED_RE.search(password):
        raise ConfigurationError(
            "cloud_init_password is an unrendered template; refusing to write it to user-data",
            environment=spec.environment,
        )
    if password:
        user["lock_passwd"] = False
        document["chpasswd"] = {
            "expire": False,
            "users": [{"name": spec.cloud_init_user, "password": password, "type": "text"}],
        }

    packages = spec.packages
    if packages:
        document["package_update"] = True
        document["packages"] = packages

    return document


def build_meta_data(spec: ResolvedSpec) -> Dict[str, Any]:
    return {
        "instance-id": f"{spec.vm_name}-{uuid.uuid4().hex[:8]}",
        "local-hostname": spec.vm_name,
    }


def build_network_config(spec: ResolvedSpec) -> Optional[Dict[str, Any]]:
    """Netplan v2 config with a static address, or None when no prefix is declared.

    A bare address (no ``/prefix``) is treated as a DHCP reservation and left
    to the hypervisor network.
    """
    address = spec.network_address
    if not address or "/" not in address:
        return None

    ethernet: Dict[str, Any] = {
        "match": {"name": "en*"},
        "dhcp4": False,
        "addresses": [address],
    }
    gateway = normalize_address(spec.get("network_gateway"))
    if gateway:
        ethernet["routes"] = [{"to": "default", "via": gateway}]
    dns = spec.get("dns_servers")
    if isinstance(dns, list) and dns:
        ethernet["nameservers"] = {"addresses": [str(d) for d in dns]}

    return {"version": 2, "ethernets": {"primary": ethernet}}


def render_user_data(document: Dict[str, Any]) -> str:
    return CLOUD_CONFIG_HEADER + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def write_seed(spec: ResolvedSpec, directory: Path) -> SeedFiles:
    """Render user-data, meta-data and optional network-config into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)

    user_data = directory / "user-data"
    meta_data = directory / "meta-data"
    user_data.write_text(render_user_data(build_user_data(spec, read_public_key(spec))))
    meta_data.write_text(yaml.safe_dump(build_meta_data(spec), sort_keys=False))

    seed = SeedFiles(directory=directory, user_data=user_data, meta_data=meta_data)

    network = build_network_config(spec)
    if network is not None:
        seed.network_config = directory / "network-config"
        seed.network_config.write_text(yaml.safe_dump(network, sort_keys=False))

    # user-data carries the password in plain text
    user_data.chmod(0o600)

    logger.debug("Wrote cloud-init seed", vm=spec.vm_name, directory=str(directory))
    return seed
