"""Scan configuration files for hardcoded secrets."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List

import structlog

logger = structlog.get_logger()

YAML_SUFFIXES = (".yml", ".yaml")
PASSWORD_RE = re.compile(r"password[\w-]*\s*:\s*(?P<value>.+)$", re.IGNORECASE)
PRIVATE_KEY_RE = re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")
SAFE_VALUE_RE = re.compile(r"\{\{.*\}\}|^['\"]?\$\{\w+\}['\"]?$|^!vault|^\$ANSIBLE_VAULT|^['\"]?\s*['\"]?$")


@dataclass(frozen=True)
class Finding:
    """A suspected secret in a file."""

    path: Path
    line: int
    kind: str
    text: str

    def __str__(self) -> str:
        return f"{self.path}:{self.line}: {self.kind}: {self.text}"


def iter_yaml_files(paths: Iterable[Path]) -> Iterator[Path]:
    for path in paths:
        if path.is_file() and path.suffix in YAML_SUFFIXES:
            yield path
        elif path.is_dir():
            for candidate in sorted(path.rglob("*")):
                if candidate.is_file() and candidate.suffix in YAML_SUFFIXES:
                    yield candidate


def _strip_comment(line: str) -> str:
    if line.lstrip().startswith("#"):
        return ""
    return re.split(r"\s+#", line, maxsplit=1)[0]


def scan_file(path: Path) -> List[Finding]:
    findings = []
    try:
        lines = path.read_text(errors="replace").splitlines()
    except OSError as e:
        logger.warning("Cannot read file for scanning", path=str(path), error=str(e))
        return findings

    for number, raw in enumerate(lines, start=1):
        if PRIVATE_KEY_RE.search(raw):
            findings.append(Finding(path, number, "private key", raw.strip()))
            continue
        line = _strip_comment(raw)
        match = PASSWORD_RE.search(line)
        if match and not SAFE_VALUE_RE.search(match.group("value").strip()):
            findings.append(Finding(path, number, "hardcoded password", line.strip()))
    return findings


def scan_paths(paths: Iterable[Path]) -> List[Finding]:
    """Scan every YAML file under ``paths`` and return all findings."""
    findings: List[Finding] = []
    for path in iter_yaml_files(paths):
        findings.extend(scan_file(path))
    logger.info("Security scan complete", findings=len(findings))
    return findings
