"""Exception hierarchy and exit codes."""

from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from virtlab.models import Violation

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MISSING_DEPENDENCY = 2


class VirtlabError(Exception):
    """Base class for all virtlab errors."""

    exit_code = EXIT_FAILURE

    def __init__(self, message: str, environment: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.environment = environment

    def __str__(self) -> str:
        if self.environment:
            return f"[{self.environment}] {self.message}"
        return self.message


class ConfigurationError(VirtlabError):
    """Raised when a configuration file is missing or malformed."""

    exit_code = EXIT_MISSING_DEPENDENCY

    def __init__(
        self,
        message: str,
        environment: Optional[str] = None,
        path: Optional[str] = None,
    ):
        super().__init__(message, environment)
        self.path = path


class DependencyError(VirtlabError):
    """Raised when an external tool is missing or does not match its pinned version."""

    exit_code = EXIT_MISSING_DEPENDENCY

    def __init__(self, message: str, tool: Optional[str] = None):
        super().__init__(message)
        self.tool = tool


class ValidationError(VirtlabError):
    """Raised when a resolved spec has ERROR-severity violations."""

    def __init__(self, violations: Sequence["Violation"], environment: Optional[str] = None):
        self.violations: List["Violation"] = list(violations)
        fields = ", ".join(sorted({v.field for v in self.violations}))
        super().__init__(
            f"{len(self.violations)} validation error(s) on: {fields}",
            environment,
        )


class ExecutionError(VirtlabError):
    """Raised when an external tool fails, times out, or a transition cannot complete."""

    def __init__(
        self,
        message: str,
        environment: Optional[str] = None,
        command: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, environment)
        self.command = list(command) if command else []
        self.returncode = returncode
        self.output = output

    def __str__(self) -> str:
        text = super().__str__()
        if self.command:
            text += f" (command: {' '.join(self.command)}"
            if self.returncode is not None:
                text += f", exit code {self.returncode}"
            text += ")"
        if self.output:
            text += f"\n{self.output}"
        return text


class ConfirmationRequiredError(VirtlabError):
    """Raised when a destructive transition is requested without confirmation."""
