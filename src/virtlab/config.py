"""Configuration management for virtlab."""

from pathlib import Path
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and an optional .env file."""

    model_config = SettingsConfigDict(
        env_prefix="VIRTLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment selection
    environment: str = Field(default="dev", description="Default environment (inventory) name")
    project_dir: Path = Field(
        default=Path("."), description="Root holding group_vars/ and inventories/"
    )
    verbose: bool = Field(default=False, description="Enable debug logging")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Hypervisor
    libvirt_uri: str = Field(default="qemu:///system", description="libvirt connection URI")
    storage_dir: Path = Field(
        default=Path("/var/lib/libvirt/images"),
        description="Directory for disk images and cloud-init seeds",
    )
    libvirt_network: str = Field(default="default", description="libvirt network to attach")
    os_variant: str = Field(default="ubuntu22.04", description="virt-install --os-variant")

    # Resource ceilings
    max_memory_mb: int = Field(default=8192, description="Maximum memory per VM in MiB")
    max_vcpus: int = Field(default=8, description="Maximum vCPUs per VM")
    max_disk_gb: int = Field(default=100, description="Maximum disk size per VM in GiB")
    min_memory_mb: int = Field(default=512, description="Memory below this is a warning")

    # Timeouts
    command_timeout_seconds: int = Field(
        default=600, description="Deadline for any single external command"
    )
    shutdown_timeout_seconds: int = Field(
        default=120, description="Bounded wait for a graceful shutdown"
    )
    poll_interval_seconds: float = Field(default=2.0, description="State polling interval")

    # Toolchain pinning, e.g. VIRTLAB_TOOL_PINS='{"virt-install": "4.1.0"}'
    tool_pins: Dict[str, str] = Field(
        default_factory=dict, description="Exact versions required per external tool"
    )

    @property
    def shared_config_path(self) -> Path:
        """Path of the shared base configuration."""
        return self.project_dir / "group_vars" / "all.yml"

    @property
    def inventories_dir(self) -> Path:
        """Directory holding one sub-directory per environment."""
        return self.project_dir / "inventories"

    def environment_config_path(self, environment: str) -> Path:
        """Path of the configuration file for a single environment."""
        return self.inventories_dir / environment / "group_vars" / "all.yml"


def get_settings(**overrides) -> Settings:
    """Build settings from the environment, with explicit keyword overrides on top."""
    return Settings(**overrides)
