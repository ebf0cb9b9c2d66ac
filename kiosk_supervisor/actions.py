"""Remediation actions.

Severity-indexed catalog of the four recovery actions. Each action is safe to
run when the kiosk is already partially recovered: stopping a stopped service
or clearing an empty directory is not an error. ``run()`` raises
RemediationError when the action could not complete; ``verify()`` re-runs the
health checks and never raises.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .cleanup import clear_directory
from .errors import RemediationError, ServiceControlError
from .health_probe import HealthReport
from .logging_config import capture_error_context, flush_logs, get_logger
from .services import ServiceControl
from .system import SystemOps

# Pauses between dependent service steps
SERVICE_STEP_DELAY = 3.0
DISPLAY_START_DELAY = 10.0


@dataclass
class RemediationContext:
    """Everything an action needs to touch the appliance."""
    services: ServiceControl
    system: SystemOps
    verify: Callable[[str | None], HealthReport]
    app_service: str = "kiosk-app"
    browser_service: str = "kiosk-browser"
    display_service: str = "kiosk-display"
    browser_profile_dir: Path = Path("/tmp/chrome-kiosk")
    reboot_grace_seconds: float = 30.0
    disk_path: Path = Path("/")
    sleep: Callable[[float], None] = time.sleep
    diagnostics: dict[str, Any] = field(default_factory=dict)


class RemediationAction(ABC):
    """One rung of the escalation ladder."""

    severity: int = 0
    name: str = ""

    def __init__(self, context: RemediationContext, settle_time: float = 0.0):
        self.context = context
        self.settle_time = settle_time
        self._logger = get_logger("recovery")

    @abstractmethod
    def run(self, trace_id: str | None = None) -> None:
        """Perform the action; raise RemediationError if it cannot complete."""

    def verify(self, trace_id: str | None = None) -> HealthReport:
        return self.context.verify(trace_id)

    def _stop_quietly(self, service: str, trace_id: str | None) -> None:
        # Stopping is best effort; a service that is already down is fine
        try:
            self.context.services.stop(service)
        except ServiceControlError as e:
            self._logger.warning(
                f"Stopping {service} failed, continuing",
                trace_id=trace_id,
                action=self.name,
                service=service,
                error=str(e),
            )

    def _require(self, verb: str, service: str) -> None:
        try:
            getattr(self.context.services, verb)(service)
        except ServiceControlError as e:
            raise RemediationError(self.name, f"{verb} {service} failed: {e}") from e

    def __repr__(self) -> str:
        return f"{type(self).__name__}(severity={self.severity}, settle_time={self.settle_time})"


class ServiceRestart(RemediationAction):
    """Restart the application service, then the renderer."""

    severity = 1
    name = "service_restart"

    def run(self, trace_id: str | None = None) -> None:
        ctx = self.context
        failures = []
        for index, service in enumerate((ctx.app_service, ctx.browser_service)):
            if index:
                ctx.sleep(SERVICE_STEP_DELAY)
            try:
                ctx.services.restart(service)
            except ServiceControlError as e:
                failures.append(f"{service}: {e}")

        if failures:
            raise RemediationError(self.name, "; ".join(failures))


class CacheClearRestart(RemediationAction):
    """Stop the renderer, wipe its profile, drop page cache, start it again."""

    severity = 2
    name = "cache_clear_restart"

    def run(self, trace_id: str | None = None) -> None:
        ctx = self.context
        self._stop_quietly(ctx.browser_service, trace_id)

        cleared = clear_directory(ctx.browser_profile_dir)
        self._logger.info(
            "Cleared renderer profile",
            trace_id=trace_id,
            profile_dir=str(ctx.browser_profile_dir),
            removed=len(cleared["removed"]),
            freed_bytes=cleared["freed_bytes"],
            errors=cleared["errors"],
        )

        ctx.system.drop_caches(1)
        self._require("start", ctx.browser_service)


class DisplayServerRestart(RemediationAction):
    """Restart the display server with the renderer and application around it."""

    severity = 3
    name = "display_server_restart"

    def run(self, trace_id: str | None = None) -> None:
        ctx = self.context
        self._stop_quietly(ctx.browser_service, trace_id)
        self._stop_quietly(ctx.app_service, trace_id)

        self._require("restart", ctx.display_service)
        ctx.sleep(DISPLAY_START_DELAY)

        self._require("start", ctx.app_service)
        ctx.sleep(SERVICE_STEP_DELAY)
        self._require("start", ctx.browser_service)


class FullReboot(RemediationAction):
    """Record the terminal failure, flush everything to disk, reboot."""

    severity = 4
    name = "full_reboot"

    def run(self, trace_id: str | None = None) -> None:
        ctx = self.context
        capture_error_context(
            self._logger,
            trace_id=trace_id,
            additional_context={"action": self.name, **ctx.diagnostics},
            disk_path=str(ctx.disk_path),
        )
        self._logger.critical(
            "All recovery levels exhausted, rebooting",
            trace_id=trace_id,
            grace_seconds=ctx.reboot_grace_seconds,
        )
        flush_logs()
        ctx.system.sync()
        ctx.sleep(ctx.reboot_grace_seconds)

        try:
            ctx.system.reboot()
        except ServiceControlError as e:
            raise RemediationError(self.name, f"reboot failed: {e}") from e


ACTION_TYPES: tuple[type[RemediationAction], ...] = (
    ServiceRestart,
    CacheClearRestart,
    DisplayServerRestart,
    FullReboot,
)


def build_catalog(
    context: RemediationContext,
    settle_times: dict[int, float] | None = None,
) -> dict[int, RemediationAction]:
    """Instantiate every action keyed by severity."""
    settle_times = settle_times or {}
    return {
        action_type.severity: action_type(context, float(settle_times.get(action_type.severity, 0.0)))
        for action_type in ACTION_TYPES
    }
