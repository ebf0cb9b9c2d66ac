"""Exception hierarchy for the kiosk supervisor."""

from __future__ import annotations


class SupervisorError(Exception):
    """Base class for all supervisor failures."""


class ServiceControlError(SupervisorError):
    """A service, display or OS command failed or timed out."""

    def __init__(self, command: list[str] | str, message: str, returncode: int | None = None):
        self.command = command if isinstance(command, str) else " ".join(command)
        self.returncode = returncode
        super().__init__(f"{self.command}: {message}")


class RemediationError(SupervisorError):
    """A remediation action could not complete."""

    def __init__(self, action: str, message: str):
        self.action = action
        super().__init__(f"{action}: {message}")


class StateError(SupervisorError):
    """The recovery state file could not be written."""
