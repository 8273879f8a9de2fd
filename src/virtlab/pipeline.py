"""CI pipeline driver.

Runs resolve -> validate -> (optionally) dry-run execute for every
environment and matrix entry, continuing past failures so one report covers
the whole matrix.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog
import yaml

from virtlab.errors import EXIT_FAILURE, ConfigurationError, VirtlabError
from virtlab.executor import LifecycleExecutor
from virtlab.models import EnvironmentReport, LifecycleState, RunReport
from virtlab.resolver import ConfigurationResolver, parse_overrides
from virtlab.validator import SpecValidator, normalize_address

logger = structlog.get_logger()


@dataclass
class MatrixEntry:
    """A named set of overrides applied to every environment (e.g. an OS variant)."""

    name: str
    overrides: Dict[str, Any] = field(default_factory=dict)


def load_matrix_file(path: Path) -> Tuple[List[str], List[MatrixEntry]]:
    """Load ``{environments: [...], matrix: [{name, overrides}]}`` from YAML."""
    if not path.is_file():
        raise ConfigurationError(f"Matrix file not found: {path}", path=str(path))
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed YAML in {path}: {e}", path=str(path)) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}", path=str(path))

    environments = data.get("environments") or []
    if not isinstance(environments, list):
        raise ConfigurationError(f"'environments' in {path} must be a list", path=str(path))

    matrix = []
    for index, raw in enumerate(data.get("matrix") or []):
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ConfigurationError(
                f"Matrix entry #{index + 1} in {path} needs a 'name'", path=str(path)
            )
        overrides = raw.get("overrides") or {}
        if not isinstance(overrides, dict):
            raise ConfigurationError(
                f"Matrix entry '{raw['name']}' overrides must be a mapping", path=str(path)
            )
        matrix.append(MatrixEntry(name=str(raw["name"]), overrides=overrides))

    return [str(env) for env in environments], matrix


class PipelineDriver:
    """Supervises resolver, validator and executor across environments."""

    def __init__(
        self,
        resolver: ConfigurationResolver,
        validator: SpecValidator,
        executor: Optional[LifecycleExecutor] = None,
    ):
        self.resolver = resolver
        self.validator = validator
        self.executor = executor

    def run(
        self,
        environments: Sequence[str],
        matrix: Optional[Sequence[MatrixEntry]] = None,
        execute: bool = False,
        target: LifecycleState = LifecycleState.RUNNING,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RunReport:
        """Run every environment x matrix entry and aggregate the results.

        Args:
            environments: Environment names, in order; later environments see
                addresses reserved by earlier ones
            matrix: Override sets to run per environment (None runs each once)
            execute: Also plan the lifecycle transition in dry-run mode
            target: Lifecycle state to plan for when ``execute`` is set
            overrides: Run-wide overrides, taking precedence over matrix entries

        Returns:
            RunReport with one entry per (environment, matrix entry)
        """
        report = RunReport()
        entries: Sequence[Optional[MatrixEntry]] = list(matrix) if matrix else [None]
        run_overrides = parse_overrides(overrides)

        reserved: Dict[str, str] = {}
        for address, owner in self.resolver.declared_addresses(exclude=set(environments)).items():
            normalized = normalize_address(address)
            if normalized:
                reserved.setdefault(normalized, owner)

        for environment in environments:
            for entry in entries:
                merged = dict(entry.overrides) if entry else {}
                merged.update(run_overrides)
                result = self._run_one(
                    environment, entry, merged, reserved, execute and self.executor is not None, target
                )
                report.add(result)

        logger.info(
            "Pipeline complete",
            entries=len(report.entries),
            failed=report.failed_count,
            exit_code=report.exit_code,
        )
        return report

    def _run_one(
        self,
        environment: str,
        entry: Optional[MatrixEntry],
        overrides: Dict[str, Any],
        reserved: Dict[str, str],
        execute: bool,
        target: LifecycleState,
    ) -> EnvironmentReport:
        result = EnvironmentReport(environment=environment, matrix_entry=entry.name if entry else None)
        log = logger.bind(environment=environment, matrix=result.matrix_entry)

        try:
            spec = self.resolver.resolve(environment, overrides)
            validation = self.validator.validate(spec, reserved)
            result.validation = validation

            address = normalize_address(spec.network_address)
            if address:
                reserved.setdefault(address, environment)

            if not validation.passed:
                result.exit_code = EXIT_FAILURE
                result.error = f"{len(validation.errors)} validation error(s)"
            elif execute:
                result.execution = self.executor.ensure(spec, target, dry_run=True)
        except VirtlabError as e:
            result.error = str(e)
            result.exit_code = e.exit_code

        if result.passed:
            log.info("Pipeline entry passed")
        else:
            log.warning("Pipeline entry failed", error=result.error, exit_code=result.exit_code)
        return result
