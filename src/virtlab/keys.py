"""SSH key pair bootstrap for VM access.

Creates the key pair referenced by ``ssh_key_path`` (and
``ssh_private_key_path``) with ssh-keygen when the public key is missing.
Existing keys are never overwritten.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path

import structlog

from virtlab.errors import ConfigurationError
from virtlab.hypervisor import LibvirtClient
from virtlab.models import ResolvedSpec

logger = structlog.get_logger()


@dataclass
class KeyPair:
    """Locations of an SSH key pair and whether this run created anything."""

    private: Path
    public: Path
    created: bool = False


def key_pair_for(spec: ResolvedSpec) -> KeyPair:
    """Derive key locations; the private key defaults to the public path without ``.pub``."""
    public = spec.ssh_key_path
    if public is None:
        raise ConfigurationError("ssh_key_path is not set", environment=spec.environment)
    private = spec.ssh_private_key_path
    if private is None:
        if public.suffix == ".pub":
            private = public.with_suffix("")
        else:
            private = public.with_name(public.name + ".key")
    return KeyPair(private=private, public=public)


def ensure_key_pair(
    spec: ResolvedSpec,
    client: LibvirtClient,
    key_type: str = "rsa",
    bits: int = 4096,
) -> KeyPair:
    """Make sure the SSH key pair for ``spec`` exists.

    Args:
        spec: Resolved configuration naming the key paths
        client: Runs ssh-keygen with the usual deadline
        key_type: ssh-keygen ``-t`` value
        bits: ssh-keygen ``-b`` value (ignored for ed25519)

    Returns:
        KeyPair with ``created`` set when a key was generated or derived
    """
    pair = key_pair_for(spec)
    if pair.public.is_file():
        logger.info("SSH public key present", path=str(pair.public))
        return pair

    pair.public.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    pair.private.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if pair.private.is_file():
        # Derive the missing public half from the existing private key
        result = client.run(["ssh-keygen", "-y", "-f", str(pair.private)])
        pair.public.write_text(result.stdout.strip() + "\n")
        logger.info("Derived SSH public key", path=str(pair.public))
    else:
        command = ["ssh-keygen", "-t", key_type]
        if key_type != "ed25519":
            command.extend(["-b", str(bits)])
        command.extend(["-N", "", "-C", f"virtlab@{spec.environment}", "-f", str(pair.private)])
        client.run(command)

        generated = pair.private.with_name(pair.private.name + ".pub")
        if generated != pair.public and generated.is_file():
            shutil.move(str(generated), str(pair.public))
        logger.info("Generated SSH key pair", private=str(pair.private), public=str(pair.public))

    pair.created = True
    return pair
