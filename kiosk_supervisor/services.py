"""Service control and display introspection ports.

The supervisor never touches init systems or X directly; it goes through these
small interfaces so the recovery logic can be exercised with fakes. The
concrete adapters shell out with bounded timeouts and raise
ServiceControlError on failure.
"""

from __future__ import annotations

import os
import subprocess
from abc import ABC, abstractmethod

from .errors import ServiceControlError
from .logging_config import get_logger


def run_command(
    cmd: list[str],
    timeout: float,
    check: bool = True,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run a command with a timeout, raising ServiceControlError on failure."""
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ServiceControlError(cmd, f"timed out after {timeout}s") from e
    except OSError as e:
        raise ServiceControlError(cmd, str(e)) from e

    if check and result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()[:200]
        raise ServiceControlError(cmd, f"exit {result.returncode}: {detail}", result.returncode)
    return result


# =============================================================================
# Service Control Port
# =============================================================================

class ServiceControl(ABC):
    """Check and restart named services."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """True when the named service is up."""

    @abstractmethod
    def start(self, name: str) -> None:
        pass

    @abstractmethod
    def stop(self, name: str) -> None:
        pass

    @abstractmethod
    def restart(self, name: str) -> None:
        """Restart the named service; raises ServiceControlError on failure."""


class OpenRCServiceControl(ServiceControl):
    """rc-service based adapter."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._logger = get_logger("service_control")

    def _rc(self, name: str, verb: str) -> subprocess.CompletedProcess:
        self._logger.info(f"rc-service {name} {verb}", service=name, verb=verb)
        return run_command(["rc-service", name, verb], self.timeout)

    def is_running(self, name: str) -> bool:
        try:
            result = run_command(["rc-service", name, "status"], self.timeout, check=False)
        except ServiceControlError:
            return False
        return result.returncode == 0 and "started" in result.stdout

    def start(self, name: str) -> None:
        self._rc(name, "start")

    def stop(self, name: str) -> None:
        self._rc(name, "stop")

    def restart(self, name: str) -> None:
        self._rc(name, "restart")


class SystemdServiceControl(ServiceControl):
    """systemctl based adapter."""

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._logger = get_logger("service_control")

    def _systemctl(self, verb: str, name: str) -> subprocess.CompletedProcess:
        self._logger.info(f"systemctl {verb} {name}", service=name, verb=verb)
        return run_command(["systemctl", verb, name], self.timeout)

    def is_running(self, name: str) -> bool:
        try:
            result = run_command(["systemctl", "is-active", "--quiet", name], self.timeout, check=False)
        except ServiceControlError:
            return False
        return result.returncode == 0

    def start(self, name: str) -> None:
        self._systemctl("start", name)

    def stop(self, name: str) -> None:
        self._systemctl("stop", name)

    def restart(self, name: str) -> None:
        self._systemctl("restart", name)


SERVICE_MANAGERS = {
    "openrc": OpenRCServiceControl,
    "systemd": SystemdServiceControl,
}


def create_service_control(manager: str, timeout: float = 30.0) -> ServiceControl:
    """Build the adapter for the configured init system."""
    try:
        return SERVICE_MANAGERS[manager.lower()](timeout=timeout)
    except KeyError:
        raise ValueError(
            f"Unknown service manager {manager!r}; expected one of {sorted(SERVICE_MANAGERS)}"
        ) from None


# =============================================================================
# Display Introspection Port
# =============================================================================

class DisplayIntrospection(ABC):
    """Read-only queries against the display server."""

    @abstractmethod
    def is_display_connected(self) -> bool:
        pass

    @abstractmethod
    def is_window_visible(self, title: str) -> bool:
        pass


class X11Display(DisplayIntrospection):
    """xrandr / xwininfo based adapter."""

    def __init__(self, display: str = ":0", timeout: float = 5.0):
        self.display = display
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["DISPLAY"] = self.display
        return env

    def is_display_connected(self) -> bool:
        try:
            result = run_command(["xrandr", "--query"], self.timeout, check=False, env=self._env())
        except ServiceControlError:
            return False
        if result.returncode != 0:
            return False
        return any(" connected" in line for line in result.stdout.splitlines())

    def is_window_visible(self, title: str) -> bool:
        env = self._env()
        try:
            result = run_command(["xwininfo", "-name", title], self.timeout, check=False, env=env)
            if result.returncode == 0:
                return True
        except ServiceControlError:
            pass

        # xwininfo missing or exact-name miss; xdotool matches by substring
        try:
            result = run_command(["xdotool", "search", "--name", title], self.timeout, check=False, env=env)
        except ServiceControlError:
            return False
        return result.returncode == 0 and bool(result.stdout.strip())
