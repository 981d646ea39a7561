"""
Error classes for aquarium.

Two families:
- Validation errors (UnknownComponent, UnknownInstance): raised before any
  side effect, caught at the CLI boundary and reported with usage guidance.
- Runtime errors (RemoteCommandFailure, MissingPrerequisiteFile, ...):
  propagate out of the orchestrator and terminate the invocation.
  Nothing is rolled back or retried; the status file keeps whatever was
  last written.
"""

from typing import Iterable, Optional


class AquariumError(Exception):
    """Base exception for aquarium."""
    pass


class UnknownComponent(AquariumError):
    """Component name is not in the catalog."""

    def __init__(self, name: str, available: Iterable[str] = ()):
        self.name = name
        self.available = sorted(available)
        super().__init__(f"Unknown component: {name}")


class UnknownInstance(AquariumError):
    """Requested instance id is not declared for the component."""

    def __init__(self, component: str, instance: str, declared: Iterable[str] = ()):
        self.component = component
        self.instance = instance
        self.declared = list(declared)
        declared_text = ", ".join(self.declared) if self.declared else "none"
        super().__init__(
            f"Unknown instance '{instance}' for {component} (declared: {declared_text})"
        )


class RemoteCommandFailure(AquariumError):
    """
    A checked command exited non-zero.

    Aborts the current instance's pipeline. Partial side effects on the
    managed host are left in place.
    """

    def __init__(self, command: str, exit_code: int, output: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.stderr = stderr
        message = f"Command failed (exit code {exit_code}): {command}"
        if stderr:
            message += f"\n{stderr}"
        super().__init__(message)


class MissingPrerequisiteFile(AquariumError):
    """A required local file is absent; raised before any remote command."""

    def __init__(self, path, hint: Optional[str] = None):
        self.path = str(path)
        message = f"Missing prerequisite file: {self.path}"
        if hint:
            message += f"\nhint: {hint}"
        super().__init__(message)


class HostUnavailable(AquariumError):
    """The managed host could not be started or reached over SSH."""
    pass


class ComponentNotRunning(AquariumError):
    """An operation needs the address of an instance that has none recorded."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"{name} is not running (no ip recorded)")


class CorruptStatusFile(AquariumError):
    """The status file could not be parsed or does not match the record schema."""
    pass
