"""
Exception hierarchy shared by every stage of the deployment pipeline.
"""

from typing import Optional


class ShipyardError(Exception):
    """Base class for every error the orchestrator knows how to report."""

    stage: Optional[str] = None


class ValidationError(ShipyardError):
    """Rejected input (repository URL, env key, route). Raised before any side effect."""


class ClassificationError(ShipyardError):
    """The analyzer could not find a manifest or decide what to deploy."""


class ConfigurationError(ShipyardError):
    """A required setting is missing, e.g. a port for a proxied project."""


class ProjectNotFound(ShipyardError):
    """No metadata record exists for the requested project name."""

    def __init__(self, name: str):
        super().__init__(f"Project not found: {name}")
        self.name = name


class ProjectBusy(ShipyardError):
    """Another pipeline run currently holds the project's lock."""

    def __init__(self, name: str):
        super().__init__(f"Project {name} is busy: another operation is in progress")
        self.name = name


class ToolError(ShipyardError):
    """An external tool (git, npm, pm2, nginx, ...) failed."""

    def __init__(
        self,
        message: str,
        command: Optional[list] = None,
        output: str = "",
        stage: Optional[str] = None,
        log_path: Optional[str] = None,
    ):
        super().__init__(message)
        self.command = command or []
        self.output = output
        self.stage = stage
        self.log_path = log_path

    def __str__(self) -> str:
        text = super().__str__()
        tail = self.output.strip()
        if tail:
            lines = tail.splitlines()[-20:]
            text = f"{text}\n" + "\n".join(lines)
        return text


class CommandFailed(ToolError):
    """The command ran and exited non-zero."""

    def __init__(self, command: list, returncode: int, output: str = "", **kwargs):
        super().__init__(
            f"Command failed with exit code {returncode}: {' '.join(command)}",
            command=command,
            output=output,
            **kwargs,
        )
        self.returncode = returncode


class CommandTimeout(ToolError):
    """The command did not finish within its time budget."""

    def __init__(self, command: list, timeout: float, output: str = "", **kwargs):
        super().__init__(
            f"Command timed out after {timeout:g}s: {' '.join(command)}",
            command=command,
            output=output,
            **kwargs,
        )
        self.timeout = timeout


class CommandNotFound(ToolError):
    """The executable is not installed on this host."""

    def __init__(self, command: list, **kwargs):
        super().__init__(f"Executable not found: {command[0]}", command=command, **kwargs)
