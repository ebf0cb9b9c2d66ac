"""Health probe.

Runs the fixed liveness battery (renderer process, time-appropriate endpoint,
display connection, window visibility) and reduces it to a HealthReport. Every
check always runs so the report is complete; only the first failure is logged
loudly. ``probe()`` hands an unhealthy report to the recovery state machine,
``run_checks()`` is the side-effect-free half used for verification.
"""

from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import httpx
import psutil

from .errors import ServiceControlError
from .logging_config import generate_correlation_id, get_logger
from .services import DisplayIntrospection

PROCESS_ALIVE = "process_alive"
APP_RESPONSIVE = "app_responsive"
DISPLAY_CONNECTED = "display_connected"
WINDOW_VISIBLE = "window_visible"

CHECK_ORDER = (PROCESS_ALIVE, APP_RESPONSIVE, DISPLAY_CONNECTED, WINDOW_VISIBLE)


@dataclass
class CheckResult:
    """Outcome of one named check."""
    name: str
    passed: bool
    detail: str = ""
    duration_ms: float = 0.0


@dataclass
class HealthReport:
    """Ordered check results plus the derived verdict."""
    checks: list[CheckResult] = field(default_factory=list)
    endpoint: str | None = None
    checked_at: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def failed_checks(self) -> list[str]:
        return [c.name for c in self.checks if not c.passed]

    @property
    def first_failure(self) -> CheckResult | None:
        return next((c for c in self.checks if not c.passed), None)

    def get(self, name: str) -> CheckResult | None:
        return next((c for c in self.checks if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "endpoint": self.endpoint,
            "checked_at": self.checked_at,
            "failed_checks": self.failed_checks,
            "checks": [asdict(c) for c in self.checks],
        }


# =============================================================================
# Endpoint Policy
# =============================================================================

def in_quiet_window(hour: int, start_hour: int, end_hour: int) -> bool:
    """True when ``hour`` falls in [start_hour, end_hour), wrapping midnight."""
    if start_hour == end_hour:
        return False
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def quiet_hours_policy(
    app_url: str,
    screensaver_url: str,
    start_hour: int = 23,
    end_hour: int = 7,
) -> Callable[[datetime], str]:
    """Build an ``endpoint_for_time(now)`` policy from wall-clock hours."""

    def endpoint_for_time(now: datetime) -> str:
        if in_quiet_window(now.hour, start_hour, end_hour):
            return screensaver_url
        return app_url

    return endpoint_for_time


# =============================================================================
# Probe
# =============================================================================

class HealthProbe:
    """Liveness battery for the kiosk display."""

    def __init__(
        self,
        display: DisplayIntrospection,
        endpoint_for_time: Callable[[datetime], str],
        process_pattern: str = r"chromium.*kiosk",
        window_title: str = "Chromium",
        http_timeout: float = 5.0,
        status_file: Path | None = None,
        http_client: httpx.Client | None = None,
        now: Callable[[], datetime] = datetime.now,
        on_unhealthy: Callable[[HealthReport], Any] | None = None,
    ):
        self.display = display
        self.endpoint_for_time = endpoint_for_time
        self.process_pattern = re.compile(process_pattern)
        self.window_title = window_title
        self.http_timeout = http_timeout
        self.status_file = Path(status_file) if status_file else None
        self._http_client = http_client
        self._now = now
        self.on_unhealthy = on_unhealthy
        self._logger = get_logger("health_probe")

    # -- individual checks ---------------------------------------------------

    def check_process(self) -> CheckResult:
        for proc in psutil.process_iter(["pid", "cmdline"]):
            cmdline = " ".join(proc.info.get("cmdline") or [])
            if cmdline and self.process_pattern.search(cmdline):
                return CheckResult(PROCESS_ALIVE, True, f"pid {proc.info['pid']}")
        return CheckResult(PROCESS_ALIVE, False, f"no process matching {self.process_pattern.pattern!r}")

    def check_endpoint(self, url: str) -> CheckResult:
        client = self._http_client or httpx.Client(timeout=self.http_timeout)
        try:
            response = client.get(url, timeout=self.http_timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return CheckResult(APP_RESPONSIVE, False, f"{url}: {type(e).__name__}: {e}")
        finally:
            if self._http_client is None:
                client.close()

        if response.status_code >= 500:
            return CheckResult(APP_RESPONSIVE, False, f"{url}: HTTP {response.status_code}")
        return CheckResult(APP_RESPONSIVE, True, f"{url}: HTTP {response.status_code}")

    def check_display(self) -> CheckResult:
        if self.display.is_display_connected():
            return CheckResult(DISPLAY_CONNECTED, True)
        return CheckResult(DISPLAY_CONNECTED, False, "no connected output")

    def check_window(self) -> CheckResult:
        if self.display.is_window_visible(self.window_title):
            return CheckResult(WINDOW_VISIBLE, True, self.window_title)
        return CheckResult(WINDOW_VISIBLE, False, f"window {self.window_title!r} not found")

    def _timed(self, name: str, check: Callable[[], CheckResult]) -> CheckResult:
        start = time.monotonic()
        try:
            result = check()
        except (ServiceControlError, psutil.Error, OSError) as e:
            result = CheckResult(name, False, f"{type(e).__name__}: {e}")
        result.duration_ms = round((time.monotonic() - start) * 1000, 2)
        return result

    # -- battery -------------------------------------------------------------

    def run_checks(self, trace_id: str | None = None) -> HealthReport:
        """Run every check in order and return the report. No side effects."""
        endpoint = self.endpoint_for_time(self._now())
        report = HealthReport(endpoint=endpoint)
        report.checks = [
            self._timed(PROCESS_ALIVE, self.check_process),
            self._timed(APP_RESPONSIVE, lambda: self.check_endpoint(endpoint)),
            self._timed(DISPLAY_CONNECTED, self.check_display),
            self._timed(WINDOW_VISIBLE, self.check_window),
        ]

        first = report.first_failure
        for check in report.checks:
            if check.passed:
                continue
            if check is first:
                self._logger.warning(
                    f"Health check failed: {check.name}",
                    trace_id=trace_id,
                    check=check.name,
                    detail=check.detail,
                )
            else:
                self._logger.debug(
                    f"Health check failed: {check.name}",
                    trace_id=trace_id,
                    check=check.name,
                    detail=check.detail,
                )
        return report

    def write_status(self, report: HealthReport) -> None:
        if self.status_file is None:
            return
        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            self.status_file.write_text("healthy\n" if report.healthy else "unhealthy\n")
        except OSError as e:
            self._logger.warning("Cannot write health status file", status_file=str(self.status_file), error=str(e))

    def probe(self) -> HealthReport:
        """One probe cycle: check, record, and hand failures to recovery."""
        trace_id = generate_correlation_id()
        report = self.run_checks(trace_id)
        self.write_status(report)

        self._logger.info(
            "Health probe completed",
            trace_id=trace_id,
            healthy=report.healthy,
            endpoint=report.endpoint,
            failed_checks=report.failed_checks,
            checks={c.name: c.passed for c in report.checks},
        )

        if not report.healthy and self.on_unhealthy is not None:
            self.on_unhealthy(report)
        return report
