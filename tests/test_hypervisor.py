"""Tests for the libvirt command wrapper."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from virtlab.cloud_init import SeedFiles
from virtlab.errors import DependencyError, ExecutionError
from virtlab.hypervisor import DomainDefinition, LibvirtClient
from virtlab.models import DomainState


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def client() -> LibvirtClient:
    return LibvirtClient(uri="qemu:///system", timeout=30)


@pytest.fixture
def mock_run():
    with patch("virtlab.hypervisor.subprocess.run") as mock:
        mock.return_value = completed()
        yield mock


class TestRun:
    """Tests for command execution."""

    def test_passes_deadline(self, client, mock_run):
        client.run(["virsh", "list"])

        _, kwargs = mock_run.call_args
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    def test_missing_binary(self, client, mock_run):
        mock_run.side_effect = FileNotFoundError("virsh")

        with pytest.raises(DependencyError) as exc_info:
            client.run(["virsh", "list"])

        assert exc_info.value.tool == "virsh"
        assert exc_info.value.exit_code == 2

    def test_timeout(self, client, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="virsh", timeout=30, output=b"partial")

        with pytest.raises(ExecutionError, match="timed out after 30s") as exc_info:
            client.run(["virsh", "shutdown", "vm"])

        assert exc_info.value.output == "partial"
        assert exc_info.value.exit_code == 1

    def test_nonzero_exit(self, client, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="error: boom")

        with pytest.raises(ExecutionError) as exc_info:
            client.run(["qemu-img", "create"])

        assert exc_info.value.returncode == 1
        assert "error: boom" in str(exc_info.value)
        assert "qemu-img create" in str(exc_info.value)

    def test_nonzero_exit_unchecked(self, client, mock_run):
        mock_run.return_value = completed(returncode=3)

        assert client.run(["virsh", "x"], check=False).returncode == 3


class TestDomainState:
    """Tests for state queries."""

    def test_running(self, client, mock_run):
        mock_run.return_value = completed(stdout="running\n")

        assert client.domain_state("dev-vm") is DomainState.RUNNING
        assert mock_run.call_args[0][0] == ["virsh", "-c", "qemu:///system", "domstate", "dev-vm"]

    def test_not_found_is_absent(self, client, mock_run):
        mock_run.return_value = completed(
            returncode=1, stderr="error: failed to get domain 'dev-vm'\n"
        )

        assert client.domain_state("dev-vm") is DomainState.ABSENT

    def test_other_failure_raises(self, client, mock_run):
        mock_run.return_value = completed(returncode=1, stderr="error: failed to connect to the hypervisor")

        with pytest.raises(ExecutionError, match="Could not query domain state"):
            client.domain_state("dev-vm")

    def test_list_domains(self, client, mock_run):
        mock_run.return_value = completed(stdout="dev-vm\nstaging-vm\n\n")

        assert client.list_domains() == ["dev-vm", "staging-vm"]


class TestCommands:
    """Tests for the commands each operation issues."""

    @pytest.mark.parametrize(
        "method,verb",
        [("start", "start"), ("resume", "resume"), ("shutdown", "shutdown"), ("force_stop", "destroy"), ("undefine", "undefine")],
    )
    def test_virsh_verbs(self, client, mock_run, method, verb):
        getattr(client, method)("dev-vm")

        assert mock_run.call_args[0][0] == ["virsh", "-c", "qemu:///system", verb, "dev-vm"]

    def test_create_disk(self, client, mock_run, tmp_path):
        disk = tmp_path / "pool" / "dev-vm.qcow2"

        client.create_disk(Path("/images/base.img"), disk, "20G")

        command = mock_run.call_args[0][0]
        assert command[:2] == ["qemu-img", "create"]
        assert command[-3:] == ["/images/base.img", str(disk), "20G"]
        assert disk.parent.is_dir()

    def test_create_seed_iso_with_network_config(self, client, mock_run, tmp_path):
        seed = SeedFiles(
            directory=tmp_path,
            user_data=tmp_path / "user-data",
            meta_data=tmp_path / "meta-data",
            network_config=tmp_path / "network-config",
        )

        client.create_seed_iso(seed, tmp_path / "seed.iso")

        assert mock_run.call_args[0][0] == [
            "cloud-localds",
            f"--network-config={tmp_path / 'network-config'}",
            str(tmp_path / "seed.iso"),
            str(tmp_path / "user-data"),
            str(tmp_path / "meta-data"),
        ]

    def test_virt_install(self, client, mock_run):
        domain = DomainDefinition(
            name="dev-vm",
            memory_mb=1024,
            vcpus=2,
            disk_path=Path("/pool/dev-vm.qcow2"),
            seed_iso=Path("/pool/dev-vm-seed.iso"),
            os_variant="ubuntu22.04",
            network="default",
        )

        client.virt_install(domain)

        command = mock_run.call_args[0][0]
        assert command[0] == "virt-install"
        assert command[command.index("--memory") + 1] == "1024"
        assert command[command.index("--vcpus") + 1] == "2"
        assert "path=/pool/dev-vm.qcow2,format=qcow2,bus=virtio" in command
        assert "--import" in command
        assert "--noautoconsole" in command

    def test_from_settings(self, settings):
        client = LibvirtClient.from_settings(settings)

        assert client.uri == settings.libvirt_uri
        assert client.timeout == settings.command_timeout_seconds
