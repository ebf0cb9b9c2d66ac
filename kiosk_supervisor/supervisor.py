"""Component wiring.

Builds the probe, state machine and resource monitor from Settings and connects
them: an unhealthy probe triggers recovery, remediation verifies through the
probe's checks, and the resource monitor escalates through the same machine.
"""

from __future__ import annotations

import time
from typing import Any, Callable

import httpx

from .actions import RemediationContext, build_catalog
from .config import Settings
from .health_probe import HealthProbe, HealthReport, quiet_hours_policy
from .lock import SupervisorLock
from .recovery import RecoveryOutcome, RecoveryStateMachine
from .resource_monitor import (
    CleanupPolicy,
    ResourceMonitor,
    ResourceSampler,
    ResourceSnapshot,
    ResourceThresholds,
    SweepReport,
)
from .services import DisplayIntrospection, ServiceControl, X11Display, create_service_control
from .state import StateStore
from .system import SystemOps


class Supervisor:
    """The operator-facing port: status, trigger, reset, probe, sweep."""

    def __init__(
        self,
        probe: HealthProbe,
        machine: RecoveryStateMachine,
        monitor: ResourceMonitor,
        services: ServiceControl,
        browser_service: str = "kiosk-browser",
    ):
        self.probe_component = probe
        self.machine = machine
        self.monitor = monitor
        self.services = services
        self.browser_service = browser_service

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        services: ServiceControl | None = None,
        display: DisplayIntrospection | None = None,
        system: SystemOps | None = None,
        sampler: ResourceSampler | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "Supervisor":
        services = services or create_service_control(settings.SERVICE_MANAGER, settings.COMMAND_TIMEOUT)
        display = display or X11Display(settings.DISPLAY, settings.DISPLAY_TIMEOUT)
        system = system or SystemOps(settings.COMMAND_TIMEOUT, list(settings.PACKAGE_CACHE_COMMAND))
        sampler = sampler or ResourceSampler(settings.CPU_SAMPLE_SECONDS)

        probe = HealthProbe(
            display=display,
            endpoint_for_time=quiet_hours_policy(
                settings.APP_URL,
                settings.SCREENSAVER_URL,
                settings.QUIET_START_HOUR,
                settings.QUIET_END_HOUR,
            ),
            process_pattern=settings.BROWSER_PROCESS_PATTERN,
            window_title=settings.WINDOW_TITLE,
            http_timeout=settings.HTTP_TIMEOUT,
            status_file=settings.HEALTH_STATUS_FILE,
            http_client=http_client,
        )

        context = RemediationContext(
            services=services,
            system=system,
            verify=probe.run_checks,
            app_service=settings.APP_SERVICE,
            browser_service=settings.BROWSER_SERVICE,
            display_service=settings.DISPLAY_SERVICE,
            browser_profile_dir=settings.BROWSER_PROFILE_DIR,
            reboot_grace_seconds=settings.REBOOT_GRACE_SECONDS,
            disk_path=settings.DISK_PATH,
            sleep=sleep,
        )

        lock = SupervisorLock(settings.LOCK_FILE, owner="recovery", stale_after=settings.LOCK_STALE_SECONDS, clock=clock)
        machine = RecoveryStateMachine(
            store=StateStore(settings.STATE_FILE),
            lock=lock,
            catalog=build_catalog(context, settings.SETTLE_TIMES),
            check_health=probe.run_checks,
            quiescence_window=settings.QUIESCENCE_WINDOW,
            clock=clock,
            sleep=sleep,
        )
        probe.on_unhealthy = lambda report: machine.trigger(reason=_reason(report))

        monitor = ResourceMonitor(
            sampler=sampler,
            system=system,
            services=services,
            lock=SupervisorLock(
                settings.LOCK_FILE, owner="resource_monitor", stale_after=settings.LOCK_STALE_SECONDS, clock=clock
            ),
            sweep_lock=SupervisorLock(
                settings.SWEEP_LOCK_FILE, owner="resource_sweep", stale_after=settings.LOCK_STALE_SECONDS, clock=clock
            ),
            thresholds=ResourceThresholds.from_settings(settings),
            policy=CleanupPolicy.from_settings(settings),
            app_service=settings.APP_SERVICE,
            browser_service=settings.BROWSER_SERVICE,
            check_health=probe.run_checks,
            trigger_recovery=machine.trigger,
        )
        return cls(probe, machine, monitor, services, settings.BROWSER_SERVICE)

    def status(self, include_health: bool = True) -> dict[str, Any]:
        return self.machine.status(include_health=include_health)

    def trigger(self, reason: str = "operator") -> RecoveryOutcome:
        return self.machine.trigger(reason=reason)

    def reset(self) -> bool:
        return self.machine.reset()

    def probe(self) -> HealthReport:
        return self.probe_component.probe()

    def sweep(self) -> SweepReport:
        return self.monitor.sweep()

    def resources(self) -> ResourceSnapshot:
        return self.monitor.snapshot()

    def run_recovery_test(self) -> RecoveryOutcome:
        """Stop the renderer and let recovery bring it back."""
        self.services.stop(self.browser_service)
        return self.machine.trigger(reason="recovery_test")


def _reason(report: HealthReport) -> str:
    first = report.first_failure
    return f"{first.name}_failed" if first else "health_check_failed"
