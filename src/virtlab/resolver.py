"""Layered configuration resolution.

Merges, from lowest to highest precedence:

1. ``group_vars/all.yml`` (shared defaults)
2. ``inventories/<env>/group_vars/all.yml`` (environment file)
3. runtime overrides (``-e key=value`` style)

String values may reference environment variables as
``{{ lookup('env', 'NAME') }}`` or ``${NAME}``; these are filled in from the
process environment. References to unset variables are left as they are so
the validator can report them.

Configuration files are only ever read. Per-run variation (CI matrices,
command-line overrides) is passed as overrides, never written to disk.
"""

import os
import re
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog
import yaml

from virtlab.config import Settings
from virtlab.errors import ConfigurationError
from virtlab.models import EnvironmentProfile, ResolvedSpec

logger = structlog.get_logger()

Overrides = Union[Mapping[str, Any], Iterable[str], None]

ENV_REFERENCE_RE = re.compile(
    r"\{\{\s*lookup\(\s*['\"]env['\"]\s*,\s*['\"](?P<lookup>\w+)['\"]\s*\)\s*\}\}"
    r"|\$\{(?P<var>\w+)\}"
)


def parse_overrides(overrides: Overrides) -> Dict[str, Any]:
    """Normalize overrides into a mapping.

    Accepts a mapping or an iterable of ``key=value`` strings. Values are
    parsed as YAML, so ``memory=2048`` yields an int and ``packages=[a, b]``
    a list.
    """
    if overrides is None:
        return {}
    if isinstance(overrides, Mapping):
        return dict(overrides)

    parsed: Dict[str, Any] = {}
    for item in overrides:
        key, sep, raw = str(item).partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigurationError(f"Invalid override '{item}', expected key=value")
        try:
            value = yaml.safe_load(raw) if raw.strip() else ""
        except yaml.YAMLError:
            value = raw
        parsed[key] = value
    return parsed


def render_env_references(value: Any, environ: Mapping[str, str]) -> Tuple[Any, bool]:
    """Fill environment references in strings, recursing into lists and mappings.

    Returns the rendered value and whether any reference was replaced.
    """
    if isinstance(value, str):
        replaced = False

        def substitute(match: "re.Match[str]") -> str:
            nonlocal replaced
            name = match.group("lookup") or match.group("var")
            if name not in environ:
                return match.group(0)
            replaced = True
            return environ[name]

        return ENV_REFERENCE_RE.sub(substitute, value), replaced
    if isinstance(value, list):
        items = [render_env_references(item, environ) for item in value]
        return [item for item, _ in items], any(changed for _, changed in items)
    if isinstance(value, dict):
        pairs = {key: render_env_references(item, environ) for key, item in value.items()}
        return (
            {key: item for key, (item, _) in pairs.items()},
            any(changed for _, changed in pairs.values()),
        )
    return value, False


def _load_mapping(path: Path, environment: Optional[str] = None) -> Dict[str, Any]:
    """Load a YAML mapping, raising ConfigurationError when missing or malformed."""
    if not path.is_file():
        raise ConfigurationError(
            f"Configuration file not found: {path}", environment=environment, path=str(path)
        )
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Malformed YAML in {path}: {e}", environment=environment, path=str(path)
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read {path}: {e}", environment=environment, path=str(path)
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a mapping at the top of {path}, got {type(data).__name__}",
            environment=environment,
            path=str(path),
        )
    return data


class ConfigurationResolver:
    """Resolve effective VM parameters for an environment."""

    def __init__(self, settings: Settings, environ: Optional[Mapping[str, str]] = None):
        self.settings = settings
        self.environ = os.environ if environ is None else environ

    def declared_environments(self) -> List[str]:
        """Names of every environment that has a configuration file, sorted."""
        inventories = self.settings.inventories_dir
        if not inventories.is_dir():
            return []
        return sorted(
            entry.name
            for entry in inventories.iterdir()
            if entry.is_dir() and self.settings.environment_config_path(entry.name).is_file()
        )

    def load_profile(self, environment: str) -> EnvironmentProfile:
        """Merge the shared base with one environment file."""
        shared_path = self.settings.shared_config_path
        env_path = self.settings.environment_config_path(environment)

        shared = _load_mapping(shared_path, environment)
        env_values = _load_mapping(env_path, environment)

        merged = dict(shared)
        merged.update(env_values)
        return EnvironmentProfile(name=environment, values=merged, sources=(shared_path, env_path))

    def resolve(self, environment: str, overrides: Overrides = None) -> ResolvedSpec:
        """Produce the effective parameter set: runtime > environment > shared."""
        profile = self.load_profile(environment)
        runtime = parse_overrides(overrides)

        merged = dict(profile.values)
        merged.update(runtime)

        values: Dict[str, Any] = {}
        rendered: List[str] = []
        for key, value in merged.items():
            values[key], changed = render_env_references(value, self.environ)
            if changed:
                rendered.append(key)

        logger.debug(
            "Resolved configuration",
            environment=environment,
            keys=len(values),
            overridden=sorted(runtime),
            rendered=rendered,
        )
        return ResolvedSpec(
            environment=environment,
            values=values,
            sources=profile.sources,
            rendered=tuple(rendered),
        )

    def declared_addresses(self, exclude: Collection[str] = ()) -> Dict[str, str]:
        """Map each declared network address to the first environment claiming it.

        Environments whose files fail to load are skipped; they surface their
        own ConfigurationError when resolved directly.
        """
        addresses: Dict[str, str] = {}
        for name in self.declared_environments():
            if name in exclude:
                continue
            try:
                profile = self.load_profile(name)
            except ConfigurationError as e:
                logger.warning("Skipping environment for address reservation", error=str(e))
                continue
            address = profile.network_address
            if address and address not in addresses:
                addresses[address] = name
        return addresses

    def addresses_reserved_before(self, environment: str) -> Dict[str, str]:
        """Addresses claimed by declared environments that sort before ``environment``.

        A duplicated address is then reported on the later environment only,
        the same way a pipeline run over the sorted environments reports it.
        """
        later = {name for name in self.declared_environments() if name >= environment}
        return self.declared_addresses(exclude=later | {environment})
