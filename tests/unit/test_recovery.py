"""Tests for the recovery state machine."""

import json
import threading
from pathlib import Path

import pytest

from kiosk_supervisor.actions import RemediationContext, build_catalog
from kiosk_supervisor.lock import SupervisorLock
from kiosk_supervisor.recovery import OutcomeStatus, RecoveryStateMachine
from kiosk_supervisor.state import RecoveryState, StateStore

from tests.conftest import FakeServiceControl, FakeSystemOps, ScriptedHealth

SETTLE_TIMES = {1: 13.0, 2: 15.0, 3: 20.0, 4: 0.0}


class Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Harness:
    """A state machine wired to fakes, sharing state and lock files in tmp_path."""

    def __init__(self, tmp_path: Path, health: ScriptedHealth, services=None, clock=None):
        self.tmp_path = tmp_path
        self.health = health
        self.services = services or FakeServiceControl()
        self.system = FakeSystemOps()
        self.clock = clock or Clock()
        self.sleeps: list[float] = []
        self.store = StateStore(tmp_path / "state.json")
        context = RemediationContext(
            services=self.services,
            system=self.system,
            verify=health,
            browser_profile_dir=tmp_path / "chrome-kiosk",
            disk_path=tmp_path,
            sleep=self.sleeps.append,
        )
        self.machine = RecoveryStateMachine(
            store=self.store,
            lock=SupervisorLock(tmp_path / "recovery.lock", owner="test", clock=self.clock),
            catalog=build_catalog(context, SETTLE_TIMES),
            check_health=health,
            quiescence_window=3600.0,
            clock=self.clock,
            sleep=self.sleeps.append,
        )

    def seed(self, level: int, failure_count: int, seconds_ago: float) -> None:
        self.store.save(RecoveryState(level, failure_count, self.clock() - seconds_ago))

    def state(self) -> RecoveryState:
        return self.store.load()


@pytest.fixture
def failing(tmp_path: Path) -> Harness:
    return Harness(tmp_path, ScriptedHealth(False))


@pytest.fixture
def healing(tmp_path: Path) -> Harness:
    return Harness(tmp_path, ScriptedHealth(True))


class TestEscalation:
    def test_first_failure_runs_service_restart(self, failing):
        outcome = failing.machine.trigger()

        assert outcome.status == OutcomeStatus.ESCALATED
        assert outcome.action == "service_restart"
        assert (outcome.level_before, outcome.level_after) == (0, 1)
        assert failing.state().level == 1
        assert failing.state().failure_count == 1
        assert failing.services.calls == [("restart", "kiosk-app"), ("restart", "kiosk-browser")]

    def test_full_ladder_ends_in_reboot(self, failing):
        actions = []
        for _ in range(4):
            outcome = failing.machine.trigger()
            actions.append(outcome.action)
            failing.clock.advance(120)

        assert actions == ["service_restart", "cache_clear_restart", "display_server_restart", "full_reboot"]
        assert outcome.status == OutcomeStatus.REBOOTING
        state = failing.state()
        assert state.level == 4
        assert state.failure_count == 4
        assert failing.system.called("reboot") == [("reboot",)]

    def test_level_persisted_before_reboot(self, failing):
        failing.seed(level=3, failure_count=3, seconds_ago=60)
        persisted_at_reboot = []

        def reboot():
            persisted_at_reboot.append(json.loads(failing.store.path.read_text()))

        failing.system.reboot = reboot
        failing.machine.trigger()

        assert persisted_at_reboot[0]["level"] == 4
        assert persisted_at_reboot[0]["failure_count"] == 4

    def test_repeated_trigger_at_terminal_level_reboots_again(self, failing):
        failing.seed(level=4, failure_count=4, seconds_ago=60)

        outcome = failing.machine.trigger()

        assert outcome.status == OutcomeStatus.REBOOTING
        assert outcome.action == "full_reboot"
        assert failing.state().level == 4
        assert failing.system.called("reboot") == [("reboot",)]

    def test_level_monotonic_and_bounded_without_recovery(self, failing):
        levels = []
        for _ in range(8):
            failing.machine.trigger()
            levels.append(failing.state().level)
            failing.clock.advance(60)

        assert levels == sorted(levels)
        assert max(levels) == 4
        assert all(0 <= level <= 4 for level in levels)

    def test_settle_time_applied_before_verification(self, failing):
        failing.machine.trigger()
        # 3 s between app and renderer restart, then the level 1 settle time
        assert failing.sleeps == [3.0, 13.0]
        assert failing.health.calls == 1


class TestRecovery:
    def test_healthy_verification_resets_to_nominal(self, healing):
        outcome = healing.machine.trigger()

        assert outcome.status == OutcomeStatus.RECOVERED
        state = healing.state()
        assert (state.level, state.failure_count) == (0, 0)
        assert state.last_failure_at == healing.clock()

    def test_level_two_success_resets(self, healing):
        healing.seed(level=1, failure_count=1, seconds_ago=120)

        outcome = healing.machine.trigger()

        assert outcome.action == "cache_clear_restart"
        assert outcome.status == OutcomeStatus.RECOVERED
        assert healing.state().level == 0
        assert healing.state().failure_count == 0

    def test_recover_after_two_failures(self, tmp_path: Path):
        harness = Harness(tmp_path, ScriptedHealth(False, False, True))
        statuses = []
        for _ in range(3):
            statuses.append(harness.machine.trigger().status)
            harness.clock.advance(120)

        assert statuses == [OutcomeStatus.ESCALATED, OutcomeStatus.ESCALATED, OutcomeStatus.RECOVERED]
        assert harness.state().level == 0

    def test_action_error_still_verifies(self, tmp_path: Path):
        services = FakeServiceControl()
        services.fail.add(("restart", "kiosk-app"))
        harness = Harness(tmp_path, ScriptedHealth(True), services=services)

        outcome = harness.machine.trigger()

        assert outcome.error is not None
        assert harness.health.calls == 1
        assert outcome.status == OutcomeStatus.RECOVERED


class TestUnwritableState:
    def test_remediation_runs_when_state_cannot_be_saved(self, failing, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        failing.machine.store = StateStore(blocker / "state.json")

        outcome = failing.machine.trigger()

        assert failing.services.calls == [("restart", "kiosk-app"), ("restart", "kiosk-browser")]
        assert failing.health.calls == 1
        assert outcome.status == OutcomeStatus.ESCALATED
        assert outcome.level_after == 1
        log = (tmp_path / "logs" / "recovery.log").read_text()
        assert "Cannot persist recovery state" in log


class TestQuiescence:
    def test_old_failure_resets_before_escalating(self, failing):
        failing.seed(level=3, failure_count=3, seconds_ago=3601)

        outcome = failing.machine.trigger()

        assert outcome.level_before == 0
        assert outcome.action == "service_restart"
        assert failing.state().level == 1
        assert failing.state().failure_count == 1

    def test_recent_failure_keeps_level(self, failing):
        failing.seed(level=2, failure_count=2, seconds_ago=3599)

        outcome = failing.machine.trigger()

        assert outcome.action == "display_server_restart"
        assert failing.state().failure_count == 3


class TestReset:
    def test_reset_is_idempotent(self, failing):
        failing.seed(level=3, failure_count=3, seconds_ago=10)

        assert failing.machine.reset()
        first = failing.state()
        assert failing.machine.reset()

        assert first == RecoveryState()
        assert failing.state() == first

    def test_reset_refused_while_lock_held(self, failing, tmp_path: Path):
        failing.seed(level=2, failure_count=2, seconds_ago=10)
        other = SupervisorLock(tmp_path / "recovery.lock", owner="other")
        other.acquire()

        assert not failing.machine.reset()
        assert failing.state().level == 2
        other.release()


class TestStatus:
    def test_status_reports_state_and_health(self, failing):
        failing.seed(level=2, failure_count=2, seconds_ago=10)

        status = failing.machine.status()

        assert status["level"] == 2
        assert status["level_name"] == "cache_clear_restart"
        assert status["next_action"] == "display_server_restart"
        assert status["currently_healthy"] is False
        assert status["lock_holder"] is None

    def test_status_works_while_lock_held(self, failing, tmp_path: Path):
        other = SupervisorLock(tmp_path / "recovery.lock", owner="other")
        other.acquire()

        status = failing.machine.status(include_health=False)

        assert status["lock_holder"]["owner"] == "other"
        assert status["currently_healthy"] is None
        other.release()


class TestLockContention:
    def test_busy_lock_skips_without_touching_state(self, failing, tmp_path: Path):
        failing.seed(level=1, failure_count=1, seconds_ago=10)
        before = failing.store.path.read_text()
        other = SupervisorLock(tmp_path / "recovery.lock", owner="other")
        other.acquire()

        outcome = failing.machine.trigger()

        assert outcome.status == OutcomeStatus.SKIPPED
        assert failing.services.calls == []
        assert failing.store.path.read_text() == before
        other.release()

    def test_concurrent_triggers_run_one_remediation(self, tmp_path: Path):
        started = threading.Event()
        proceed = threading.Event()

        class BlockingServices(FakeServiceControl):
            def restart(self, name: str) -> None:
                super().restart(name)
                if name == "kiosk-app":
                    started.set()
                    proceed.wait(timeout=5)

        services = BlockingServices()
        first = Harness(tmp_path, ScriptedHealth(True), services=services)
        second = Harness(tmp_path, ScriptedHealth(True), services=services)

        results = {}
        worker = threading.Thread(target=lambda: results.setdefault("first", first.machine.trigger()))
        worker.start()
        assert started.wait(timeout=5)

        results["second"] = second.machine.trigger()
        proceed.set()
        worker.join(timeout=5)

        assert results["second"].status == OutcomeStatus.SKIPPED
        assert results["first"].status == OutcomeStatus.RECOVERED
        assert services.calls.count(("restart", "kiosk-app")) == 1
        assert not (tmp_path / "recovery.lock").exists()
