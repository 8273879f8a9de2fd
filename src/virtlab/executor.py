"""Lifecycle executor: drive a VM to a declared LifecycleState.

Transitions::

    absent --create--> running --shutdown--> stopped --start--> running
    running/paused --force stop--> stopped --undefine + cleanup--> absent

Destroying a running domain is always two explicit steps (force stop, then
undefine). Destroy requires confirmation. Dry-run only queries state and
returns the plan.
"""

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import structlog

from virtlab.cloud_init import write_seed
from virtlab.config import Settings
from virtlab.errors import (
    ConfigurationError,
    ConfirmationRequiredError,
    ExecutionError,
    VirtlabError,
)
from virtlab.hypervisor import DomainDefinition, LibvirtClient
from virtlab.models import DomainState, ExecutionOutcome, LifecycleState, ResolvedSpec

logger = structlog.get_logger()

PREDICTED_STATE = {
    LifecycleState.PRESENT: DomainState.RUNNING,
    LifecycleState.RUNNING: DomainState.RUNNING,
    LifecycleState.STOPPED: DomainState.STOPPED,
    LifecycleState.ABSENT: DomainState.ABSENT,
}


@dataclass
class VMArtifacts:
    """On-disk files owned by one VM."""

    disk: Path
    seed_dir: Path
    seed_iso: Path

    @classmethod
    def for_vm(cls, storage_dir: Path, vm_name: str) -> "VMArtifacts":
        return cls(
            disk=storage_dir / f"{vm_name}.qcow2",
            seed_dir=storage_dir / f"{vm_name}-cloudinit",
            seed_iso=storage_dir / f"{vm_name}-seed.iso",
        )

    def existing(self) -> List[Path]:
        return [path for path in (self.disk, self.seed_iso, self.seed_dir) if path.exists()]


def remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


class LifecycleExecutor:
    """Drives the hypervisor towards a target state, one command at a time."""

    def __init__(
        self,
        client: LibvirtClient,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.settings = settings
        self._sleep = sleep
        self._clock = clock

    def artifacts_for(self, spec: ResolvedSpec) -> VMArtifacts:
        storage_dir = spec.storage_dir or self.settings.storage_dir
        return VMArtifacts.for_vm(storage_dir, self._vm_name(spec))

    def ensure(
        self,
        spec: ResolvedSpec,
        target: LifecycleState,
        confirm: bool = False,
        dry_run: bool = False,
    ) -> ExecutionOutcome:
        """Drive the VM described by ``spec`` to ``target``.

        Args:
            spec: Resolved (and validated) configuration
            target: Desired lifecycle state
            confirm: Explicit confirmation for destructive transitions
            dry_run: Only report what would be done

        Returns:
            ExecutionOutcome with the actions taken (or planned)

        Raises:
            ConfirmationRequiredError: target is ABSENT without confirmation
            ExecutionError: an external command failed or timed out
        """
        name = self._vm_name(spec)
        if target == LifecycleState.ABSENT and not (confirm or dry_run):
            raise ConfirmationRequiredError(
                f"Refusing to destroy '{name}' without confirmation", environment=spec.environment
            )

        log = logger.bind(environment=spec.environment, vm=name, target=target.value)

        try:
            initial = self.client.domain_state(name)
            outcome = ExecutionOutcome(
                environment=spec.environment,
                vm_name=name,
                target=target,
                initial_state=initial,
                final_state=initial,
                dry_run=dry_run,
            )
            log.info("Current domain state", state=initial.value, dry_run=dry_run)

            if target in (LifecycleState.PRESENT, LifecycleState.RUNNING):
                self._ensure_running(spec, initial, outcome)
            elif target == LifecycleState.STOPPED:
                self._ensure_stopped(spec, initial, outcome)
            else:
                self._ensure_absent(spec, initial, outcome)

            if outcome.changed:
                outcome.final_state = (
                    PREDICTED_STATE[target] if dry_run else self.client.domain_state(name)
                )
        except VirtlabError as e:
            if e.environment is None:
                e.environment = spec.environment
            log.error("Lifecycle transition failed", error=e.message)
            raise

        log.info(
            "Lifecycle transition complete",
            final_state=outcome.final_state.value,
            changed=outcome.changed,
            actions=len(outcome.actions),
        )
        return outcome

    def _step(self, outcome: ExecutionOutcome, description: str, action: Callable[[], None]) -> None:
        outcome.actions.append(description)
        if outcome.dry_run:
            logger.info("Would run", action=description, vm=outcome.vm_name)
            return
        logger.info("Running", action=description, vm=outcome.vm_name)
        action()

    def _ensure_running(
        self, spec: ResolvedSpec, state: DomainState, outcome: ExecutionOutcome
    ) -> None:
        name = outcome.vm_name
        if state == DomainState.RUNNING:
            return
        if state == DomainState.ABSENT:
            self._create(spec, outcome)
        elif state == DomainState.STOPPED:
            self._step(outcome, f"start {name}", lambda: self.client.start(name))
        elif state == DomainState.PAUSED:
            self._step(outcome, f"resume {name}", lambda: self.client.resume(name))
        else:
            raise ExecutionError(f"Domain '{name}' is in an unexpected state; inspect it manually")

    def _create(self, spec: ResolvedSpec, outcome: ExecutionOutcome) -> None:
        name = outcome.vm_name
        base_image = spec.base_image
        memory, vcpus, size = spec.memory_mb, spec.vcpus, spec.disk_size_arg
        if base_image is None:
            raise ConfigurationError("base_image is not set", environment=spec.environment)
        if memory is None or vcpus is None or size is None:
            raise ConfigurationError(
                "memory, vcpus and disk_size must be valid to create a VM",
                environment=spec.environment,
            )

        artifacts = self.artifacts_for(spec)
        seed_holder = {}

        def render_seed() -> None:
            seed_holder["seed"] = write_seed(spec, artifacts.seed_dir)

        self._step(
            outcome,
            f"create disk {artifacts.disk} ({size}) from {base_image}",
            lambda: self.client.create_disk(base_image, artifacts.disk, size),
        )
        self._step(outcome, f"render cloud-init seed in {artifacts.seed_dir}", render_seed)
        self._step(
            outcome,
            f"build seed image {artifacts.seed_iso}",
            lambda: self.client.create_seed_iso(seed_holder["seed"], artifacts.seed_iso),
        )
        domain = DomainDefinition(
            name=name,
            memory_mb=memory,
            vcpus=vcpus,
            disk_path=artifacts.disk,
            seed_iso=artifacts.seed_iso,
            os_variant=str(spec.get("os_variant") or self.settings.os_variant),
            network=str(spec.get("libvirt_network") or self.settings.libvirt_network),
        )
        self._step(outcome, f"define and boot {name}", lambda: self.client.virt_install(domain))

    def _ensure_stopped(
        self, spec: ResolvedSpec, state: DomainState, outcome: ExecutionOutcome
    ) -> None:
        name = outcome.vm_name
        if state == DomainState.STOPPED:
            return
        if state == DomainState.ABSENT:
            raise ExecutionError(f"Cannot stop '{name}': domain does not exist")
        if state == DomainState.PAUSED:
            self._step(outcome, f"resume {name}", lambda: self.client.resume(name))
        elif state != DomainState.RUNNING:
            raise ExecutionError(f"Domain '{name}' is in an unexpected state; inspect it manually")

        self._step(outcome, f"shutdown {name}", lambda: self._shutdown_and_wait(name))

    def _shutdown_and_wait(self, name: str) -> None:
        self.client.shutdown(name)
        self.wait_for_state(name, DomainState.STOPPED, self.settings.shutdown_timeout_seconds)

    def wait_for_state(self, name: str, wanted: DomainState, timeout: float) -> None:
        """Poll until the domain reaches ``wanted``; fail (without retrying) on expiry."""
        deadline = self._clock() + timeout
        while True:
            current = self.client.domain_state(name)
            if current == wanted:
                return
            if self._clock() >= deadline:
                raise ExecutionError(
                    f"Domain '{name}' did not reach '{wanted.value}' within {timeout:g}s "
                    f"(last state: {current.value})"
                )
            self._sleep(self.settings.poll_interval_seconds)

    def _ensure_absent(
        self, spec: ResolvedSpec, state: DomainState, outcome: ExecutionOutcome
    ) -> None:
        name = outcome.vm_name
        if state in (DomainState.RUNNING, DomainState.PAUSED, DomainState.OTHER):
            self._step(outcome, f"force stop {name}", lambda: self.client.force_stop(name))
        if state != DomainState.ABSENT:
            self._step(outcome, f"undefine {name}", lambda: self.client.undefine(name))

        for path in self.artifacts_for(spec).existing():
            self._step(outcome, f"remove {path}", lambda p=path: remove_path(p))

    @staticmethod
    def _vm_name(spec: ResolvedSpec) -> str:
        name = spec.vm_name
        if not name:
            raise ConfigurationError("vm_name is not set", environment=spec.environment)
        return name
