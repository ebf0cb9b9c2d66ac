"""Shared test fixtures for the kiosk supervisor suite.

Provides:
- Fakes for the service control, display and OS ports
- A scripted health source for verification results
- Settings rooted in tmp_path
- Logging isolated per test
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pytest

from kiosk_supervisor.config import Settings
from kiosk_supervisor.errors import ServiceControlError
from kiosk_supervisor.health_probe import CHECK_ORDER, CheckResult, HealthReport
from kiosk_supervisor.logging_config import reset_logging, setup_logging
from kiosk_supervisor.resource_monitor import HotProcess
from kiosk_supervisor.services import DisplayIntrospection, ServiceControl


def make_report(healthy: bool = True, failing: Iterable[str] = ()) -> HealthReport:
    """HealthReport with every check passing except ``failing``."""
    failing = set(failing)
    if not healthy and not failing:
        failing = {CHECK_ORDER[0]}
    return HealthReport(
        checks=[CheckResult(name, name not in failing) for name in CHECK_ORDER],
        endpoint="http://localhost:3000",
    )


class FakeServiceControl(ServiceControl):
    """Records every call; ``fail`` holds (verb, service) pairs that raise."""

    def __init__(self, running: Iterable[str] = ()):
        self.running = set(running)
        self.fail: set[tuple[str, str]] = set()
        self._calls: list[tuple[str, str]] = []

    def _record(self, verb: str, name: str) -> None:
        self._calls.append((verb, name))
        if (verb, name) in self.fail:
            raise ServiceControlError(["fake-rc", name, verb], "exit 1: failed", 1)

    def is_running(self, name: str) -> bool:
        return name in self.running

    def start(self, name: str) -> None:
        self._record("start", name)
        self.running.add(name)

    def stop(self, name: str) -> None:
        self._record("stop", name)
        self.running.discard(name)

    def restart(self, name: str) -> None:
        self._record("restart", name)
        self.running.add(name)

    @property
    def calls(self) -> list[tuple[str, str]]:
        return self._calls.copy()


class FakeDisplay(DisplayIntrospection):
    def __init__(self, connected: bool = True, visible: bool = True):
        self.connected = connected
        self.visible = visible

    def is_display_connected(self) -> bool:
        return self.connected

    def is_window_visible(self, title: str) -> bool:
        return self.visible


class FakeSystemOps:
    """Stands in for SystemOps; records calls instead of touching the host."""

    def __init__(self):
        self._calls: list[tuple] = []
        self.zombies: list[int] = []
        self.reboot_error: Exception | None = None

    def sync(self) -> None:
        self._calls.append(("sync",))

    def drop_caches(self, level: int = 3) -> bool:
        self._calls.append(("drop_caches", level))
        return True

    def zombie_pids(self) -> list[int]:
        return list(self.zombies)

    def reap_zombies(self) -> list[int]:
        self._calls.append(("reap_zombies",))
        return list(self.zombies)

    def kill(self, pid: int, sig: int = 9) -> bool:
        self._calls.append(("kill", pid))
        return True

    def reboot(self) -> None:
        self._calls.append(("reboot",))
        if self.reboot_error is not None:
            raise self.reboot_error

    def clean_package_cache(self) -> bool:
        self._calls.append(("clean_package_cache",))
        return True

    def close_connections(self, peer: str) -> bool:
        self._calls.append(("close_connections", peer))
        return True

    def gc_repository(self, repo_dir: Path) -> bool:
        self._calls.append(("gc_repository", str(repo_dir)))
        return True

    @property
    def calls(self) -> list[tuple]:
        return self._calls.copy()

    def called(self, name: str) -> list[tuple]:
        return [c for c in self._calls if c[0] == name]


class FakeSampler:
    """Queued resource readings; the last value repeats."""

    def __init__(self, memory=(40.0,), disk=(50.0,), hot=(), connections=(), zombies=0):
        self.memory = list(memory)
        self.disk = list(disk)
        self.hot = list(hot)
        self.conns = list(connections)
        self.zombies = zombies

    @staticmethod
    def _next(values: list) -> float:
        return values.pop(0) if len(values) > 1 else values[0]

    def memory_pct(self) -> float:
        return self._next(self.memory)

    def disk_pct(self, path: Path) -> float:
        return self._next(self.disk)

    def hot_processes(self, min_cpu_pct: float) -> list[HotProcess]:
        return [p for p in self.hot if p.cpu_pct >= min_cpu_pct]

    def connections(self) -> list[tuple[str, str | None]]:
        return list(self.conns)

    def zombie_count(self) -> int:
        return self.zombies


class ScriptedHealth:
    """Returns queued verdicts in order, repeating the last one."""

    def __init__(self, *verdicts: bool):
        self.verdicts = list(verdicts) or [True]
        self.calls = 0

    def __call__(self, trace_id: str | None = None) -> HealthReport:
        index = min(self.calls, len(self.verdicts) - 1)
        self.calls += 1
        return make_report(self.verdicts[index])


@pytest.fixture(autouse=True)
def isolated_logging(tmp_path: Path):
    """Route decision logs into tmp_path and keep them off the console."""
    reset_logging()
    setup_logging(log_level="DEBUG", log_dir=tmp_path / "logs", log_to_console=False, log_to_file=True)
    yield tmp_path / "logs"
    reset_logging()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under tmp_path."""
    return Settings(
        STATE_FILE=tmp_path / "state" / "recovery-state.json",
        LOCK_FILE=tmp_path / "run" / "recovery.lock",
        SWEEP_LOCK_FILE=tmp_path / "run" / "resource-monitor.lock",
        HEALTH_STATUS_FILE=tmp_path / "run" / "kiosk-health.status",
        LOG_DIR=tmp_path / "logs",
        BROWSER_PROFILE_DIR=tmp_path / "chrome-kiosk",
        TEMP_DIRS=[tmp_path / "tmp"],
        CLEANUP_LOG_DIRS=[tmp_path / "var-log"],
        APP_REPO_DIR=tmp_path / "app",
        DISK_PATH=tmp_path,
        REBOOT_GRACE_SECONDS=30.0,
    )


@pytest.fixture
def services() -> FakeServiceControl:
    return FakeServiceControl(running={"kiosk-app", "kiosk-browser", "kiosk-display"})


@pytest.fixture
def display() -> FakeDisplay:
    return FakeDisplay()


@pytest.fixture
def system() -> FakeSystemOps:
    return FakeSystemOps()
