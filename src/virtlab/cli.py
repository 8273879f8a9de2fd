#!/usr/bin/env python3
"""
virtlab CLI - environment-driven KVM VM lifecycle.

    virtlab -i dev setup               # Create the SSH key pair if missing
    virtlab -i dev validate            # Check configuration, no side effects
    virtlab -i dev create              # Create and boot the VM
    virtlab -i dev destroy --yes       # Remove the VM and its artifacts
    virtlab ci dev staging prod        # Validate every environment for CI

Configuration lives in group_vars/all.yml (shared) and
inventories/<env>/group_vars/all.yml (per environment).
"""

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import pydantic
import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from virtlab.config import Settings, get_settings
from virtlab.errors import (
    EXIT_FAILURE,
    EXIT_MISSING_DEPENDENCY,
    VirtlabError,
)
from virtlab.executor import LifecycleExecutor
from virtlab.hypervisor import LibvirtClient
from virtlab.keys import ensure_key_pair
from virtlab.models import (
    ExecutionOutcome,
    LifecycleState,
    ResolvedSpec,
    RunReport,
    ValidationResult,
)
from virtlab.pipeline import PipelineDriver, load_matrix_file
from virtlab.resolver import ConfigurationResolver, parse_overrides
from virtlab.security import scan_paths
from virtlab.toolchain import check_toolchain, enforce_toolchain
from virtlab.validator import SpecValidator, raise_for_errors

app = typer.Typer(
    name="virtlab",
    help="KVM/libvirt VM lifecycle management per environment",
    add_completion=False,
)
console = Console()
logger = structlog.get_logger()

SCAN_DIRS = ("group_vars", "inventories")

ExtraVars = typer.Option(
    None, "--extra-vars", "-e", help="Runtime override as key=value (repeatable)"
)


def configure_logging(verbose: bool = False, json_output: bool = False) -> None:
    """Configure structlog for CLI use; log lines go to stderr."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn VirtlabError into a printed message and its exit code."""
    try:
        yield
    except VirtlabError as e:
        console.print(f"❌ {escape(str(e))}")
        logger.error("Command failed", error=e.message, environment=e.environment)
        raise typer.Exit(e.exit_code)


def get_state(ctx: typer.Context) -> Settings:
    return ctx.obj


def build_executor(settings: Settings) -> LifecycleExecutor:
    """Check the toolchain, then build an executor bound to libvirt."""
    enforce_toolchain(check_toolchain(settings.tool_pins))
    return LifecycleExecutor(LibvirtClient.from_settings(settings), settings)


def print_validation(result: ValidationResult) -> None:
    if not result.violations:
        console.print(f"✅ {escape(f'[{result.environment}]')} no violations")
        return

    table = Table(title=f"Validation Results - {result.environment}")
    table.add_column("Field", style="cyan")
    table.add_column("Severity", style="bold")
    table.add_column("Message", style="yellow")
    for violation in result.violations:
        severity = "❌ ERROR" if violation.is_error else "⚠️  WARNING"
        table.add_row(violation.field, severity, escape(violation.message))
    console.print(table)


def print_outcome(outcome: ExecutionOutcome) -> None:
    prefix = "🔍 DRY RUN: " if outcome.dry_run else ""
    if not outcome.changed:
        console.print(
            f"{prefix}✅ {outcome.vm_name} already {outcome.final_state.value}, nothing to do"
        )
        return

    table = Table(title=f"{prefix}{outcome.vm_name} → {outcome.target.value}")
    table.add_column("#", style="dim")
    table.add_column("Action", style="cyan")
    for index, action in enumerate(outcome.actions, start=1):
        table.add_row(str(index), escape(action))
    console.print(table)
    console.print(
        f"{prefix}{outcome.initial_state.value} → {outcome.final_state.value}"
    )


def print_report(report: RunReport) -> None:
    table = Table(title="Pipeline Results")
    table.add_column("Environment", style="cyan")
    table.add_column("Errors", style="red")
    table.add_column("Warnings", style="yellow")
    table.add_column("Plan", style="blue")
    table.add_column("Status", style="bold")
    for entry in report.entries:
        errors = str(len(entry.validation.errors)) if entry.validation else "-"
        warnings = str(len(entry.validation.warnings)) if entry.validation else "-"
        plan = str(len(entry.execution.actions)) if entry.execution else "-"
        status = "✅" if entry.passed else f"❌ {escape(entry.error or '')}"
        table.add_row(entry.label, errors, warnings, plan, status)
    console.print(table)
    console.print(
        f"  Total: {len(report.entries)}  ✅ Passed: {len(report.entries) - report.failed_count}"
        f"  ❌ Failed: {report.failed_count}"
    )


def resolve_and_validate(
    settings: Settings, extra_vars: Optional[List[str]]
) -> ResolvedSpec:
    """Resolve the selected environment and stop on any ERROR violation."""
    resolver = ConfigurationResolver(settings)
    spec = resolver.resolve(settings.environment, parse_overrides(extra_vars))
    reserved = resolver.addresses_reserved_before(settings.environment)
    result = SpecValidator.from_settings(settings).validate(spec, reserved)
    print_validation(result)
    raise_for_errors(result)
    return spec


def run_transition(
    settings: Settings,
    target: LifecycleState,
    extra_vars: Optional[List[str]],
    check: bool,
) -> None:
    with handle_errors():
        spec = resolve_and_validate(settings, extra_vars)
        executor = build_executor(settings)
        outcome = executor.ensure(spec, target, dry_run=check)
        print_outcome(outcome)


@app.command("validate")
def validate_environment(ctx: typer.Context, extra_vars: Optional[List[str]] = ExtraVars) -> None:
    """
    Validate the resolved configuration without making changes.

    Reports every violation at once; exits 1 on any ERROR.
    An address shared with an environment that sorts earlier is a conflict.
    """
    settings = get_state(ctx)
    console.print(f"🔍 Validating environment: {settings.environment}")
    with handle_errors():
        resolve_and_validate(settings, extra_vars)
    console.print(f"\n✅ Environment '{settings.environment}' is valid")


@app.command("create")
def create_vm(
    ctx: typer.Context,
    extra_vars: Optional[List[str]] = ExtraVars,
    check: bool = typer.Option(False, "--check", help="Show the plan without making changes"),
) -> None:
    """Create the VM if absent and make sure it is running."""
    run_transition(get_state(ctx), LifecycleState.PRESENT, extra_vars, check)


@app.command("start")
def start_vm(
    ctx: typer.Context,
    extra_vars: Optional[List[str]] = ExtraVars,
    check: bool = typer.Option(False, "--check", help="Show the plan without making changes"),
) -> None:
    """Start the VM (creating it first if it does not exist)."""
    run_transition(get_state(ctx), LifecycleState.RUNNING, extra_vars, check)


@app.command("stop")
def stop_vm(
    ctx: typer.Context,
    extra_vars: Optional[List[str]] = ExtraVars,
    check: bool = typer.Option(False, "--check", help="Show the plan without making changes"),
) -> None:
    """Gracefully shut the VM down, failing if it does not stop in time."""
    run_transition(get_state(ctx), LifecycleState.STOPPED, extra_vars, check)


@app.command("destroy")
def destroy_vm(
    ctx: typer.Context,
    extra_vars: Optional[List[str]] = ExtraVars,
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm destruction without prompting"),
    check: bool = typer.Option(False, "--check", help="Show the plan without making changes"),
) -> None:
    """
    Destroy the VM and remove its disk image and cloud-init artifacts.

    Requires --yes or an interactive confirmation. A running VM is force
    stopped first. Destroying an absent VM succeeds without changes.
    """
    settings = get_state(ctx)
    with handle_errors():
        spec = ConfigurationResolver(settings).resolve(
            settings.environment, parse_overrides(extra_vars)
        )
        confirmed = yes
        if not (yes or check):
            confirmed = typer.confirm(
                f"Destroy VM '{spec.vm_name}' in environment '{settings.environment}'?",
                default=False,
            )
            if not confirmed:
                console.print("Aborted, nothing was changed")
                raise typer.Exit(EXIT_FAILURE)

        executor = build_executor(settings)
        outcome = executor.ensure(spec, LifecycleState.ABSENT, confirm=confirmed, dry_run=check)
        print_outcome(outcome)


@app.command("info")
def show_info(ctx: typer.Context, extra_vars: Optional[List[str]] = ExtraVars) -> None:
    """Show the resolved configuration and the VM's current state."""
    settings = get_state(ctx)
    with handle_errors():
        resolver = ConfigurationResolver(settings)
        spec = resolver.resolve(settings.environment, parse_overrides(extra_vars))

        table = Table(title=f"Resolved Configuration - {settings.environment}")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key, value in spec.redacted().items():
            table.add_row(key, escape(str(value)))
        console.print(table)

        console.print(f"Sources: {', '.join(str(p) for p in spec.sources)}")
        console.print(f"Declared environments: {', '.join(resolver.declared_environments())}")

        if spec.vm_name:
            try:
                state = LibvirtClient.from_settings(settings).domain_state(spec.vm_name)
                console.print(f"Domain state: {state.value}")
            except VirtlabError as e:
                console.print(f"Domain state: unknown ({escape(e.message)})")


@app.command("ci")
def run_pipeline(
    ctx: typer.Context,
    environments: Optional[List[str]] = typer.Argument(
        None, help="Environments to run (default: matrix file or all declared)"
    ),
    matrix_file: Optional[Path] = typer.Option(
        None, "--matrix-file", "-m", help="YAML file with environments and matrix entries"
    ),
    execute: bool = typer.Option(
        False, "--execute", help="Also plan the lifecycle transition (dry-run)"
    ),
    target: LifecycleState = typer.Option(
        LifecycleState.RUNNING, "--target", help="Target state planned with --execute"
    ),
    extra_vars: Optional[List[str]] = ExtraVars,
) -> None:
    """
    Run resolve → validate → (dry-run) execute across environments.

    Continues after failures; exits 0 only if every entry passed.
    """
    settings = get_state(ctx)
    with handle_errors():
        resolver = ConfigurationResolver(settings)
        matrix = None
        selected = list(environments or [])
        if matrix_file:
            file_envs, matrix = load_matrix_file(matrix_file)
            selected = selected or file_envs
        selected = selected or resolver.declared_environments()
        if not selected:
            console.print("❌ No environments declared")
            raise typer.Exit(EXIT_MISSING_DEPENDENCY)

        executor = build_executor(settings) if execute else None
        driver = PipelineDriver(resolver, SpecValidator.from_settings(settings), executor)
        console.print(f"🚀 Running pipeline for: {', '.join(selected)}")
        report = driver.run(
            selected,
            matrix=matrix,
            execute=execute,
            target=target,
            overrides=parse_overrides(extra_vars),
        )

    for entry in report.entries:
        if entry.validation and entry.validation.violations:
            print_validation(entry.validation)
        if entry.execution:
            print_outcome(entry.execution)
    print_report(report)

    if not report.passed:
        console.print("\n❌ Pipeline completed with failures")
        raise typer.Exit(report.exit_code)
    console.print("\n✅ Pipeline passed")


@app.command("check-deps")
def check_dependencies(ctx: typer.Context) -> None:
    """Check required and optional tools, and pinned versions."""
    settings = get_state(ctx)
    statuses = check_toolchain(settings.tool_pins)

    table = Table(title="Toolchain")
    table.add_column("Tool", style="cyan")
    table.add_column("Required", style="blue")
    table.add_column("Status", style="bold")
    table.add_column("Details", style="yellow")
    for status in statuses:
        icon = "✅" if status.ok else "❌"
        if status.ok and not status.found:
            icon = "⚠️ "
        table.add_row(status.name, "yes" if status.required else "no", icon, status.message)
    console.print(table)

    with handle_errors():
        enforce_toolchain(statuses)
    console.print("\n✅ Core dependencies available")


@app.command("setup")
def setup_keys(
    ctx: typer.Context,
    extra_vars: Optional[List[str]] = ExtraVars,
    key_type: str = typer.Option("rsa", "--type", "-t", help="ssh-keygen key type"),
    bits: int = typer.Option(4096, "--bits", "-b", help="Key size in bits"),
) -> None:
    """Create the SSH key pair named by ssh_key_path if it does not exist yet."""
    settings = get_state(ctx)
    with handle_errors():
        spec = ConfigurationResolver(settings).resolve(
            settings.environment, parse_overrides(extra_vars)
        )
        pair = ensure_key_pair(spec, LibvirtClient.from_settings(settings), key_type, bits)

    if pair.created:
        console.print(f"🔑 Created SSH key pair: {pair.private} / {pair.public}")
    else:
        console.print(f"✅ SSH key found at {pair.public}")


@app.command("security-scan")
def security_scan(
    ctx: typer.Context,
    paths: Optional[List[Path]] = typer.Argument(
        None, help="Files or directories to scan (default: configuration directories)"
    ),
) -> None:
    """Scan YAML configuration for hardcoded passwords and private keys."""
    settings = get_state(ctx)
    targets = list(paths or [])
    if not targets:
        targets = [settings.project_dir / name for name in SCAN_DIRS]
        targets = [path for path in targets if path.exists()]

    console.print("🛡️  Checking for hardcoded secrets...")
    findings = scan_paths(targets)
    for finding in findings:
        console.print(f"  {finding}", markup=False)

    if findings:
        console.print(f"\n❌ {len(findings)} potential secret(s) found")
        raise typer.Exit(EXIT_FAILURE)
    console.print("✅ Security scan completed - no issues found")


@app.callback()
def main(
    ctx: typer.Context,
    environment: Optional[str] = typer.Option(
        None, "--env", "-i", envvar="VIRTLAB_ENV", help="Environment (inventory) to operate on"
    ),
    project_dir: Optional[Path] = typer.Option(
        None, "--project-dir", envvar="VIRTLAB_PROJECT_DIR", help="Configuration root"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", envvar="VIRTLAB_VERBOSE", help="Enable debug logging"
    ),
    log_json: bool = typer.Option(False, "--log-json", help="Emit JSON log lines"),
) -> None:
    """
    KVM/libvirt VM lifecycle per environment.

    Exit codes: 0 success, 1 validation or execution failure,
    2 missing dependency or configuration file.
    """
    overrides = {}
    if environment:
        overrides["environment"] = environment
    if project_dir:
        overrides["project_dir"] = project_dir
    if verbose:
        overrides["verbose"] = True
    if log_json:
        overrides["log_json"] = True

    try:
        settings = get_settings(**overrides)
    except pydantic.ValidationError as e:
        console.print(f"❌ Invalid settings: {e}")
        raise typer.Exit(EXIT_MISSING_DEPENDENCY)

    configure_logging(settings.verbose, settings.log_json)
    ctx.obj = settings


if __name__ == "__main__":
    app()
