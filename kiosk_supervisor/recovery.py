"""Recovery state machine.

Owns the escalation level. Each ``trigger()`` is one read-modify-write cycle
of RecoveryState under the supervisor lock:

    Nominal(0) -> ServiceRestart(1) -> CacheClearRestart(2)
               -> DisplayServerRestart(3) -> FullReboot(4)

The action run is always one rung above the persisted level. A healthy
re-probe after the settle time returns the machine to Nominal; an unhealthy
one moves it up one rung. Level 4 is written to disk before the reboot so the
next boot still knows where it was.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from .actions import RemediationAction
from .errors import StateError, SupervisorError
from .health_probe import HealthReport
from .lock import SupervisorLock
from .logging_config import generate_correlation_id, get_logger
from .state import TERMINAL_LEVEL, RecoveryState, StateStore

LEVEL_NAMES = {
    0: "nominal",
    1: "service_restart",
    2: "cache_clear_restart",
    3: "display_server_restart",
    4: "full_reboot",
}


class OutcomeStatus(Enum):
    SKIPPED = "skipped"
    RECOVERED = "recovered"
    ESCALATED = "escalated"
    REBOOTING = "rebooting"


@dataclass
class RecoveryOutcome:
    """Result of one trigger() call."""
    status: OutcomeStatus
    level_before: int
    level_after: int
    failure_count: int
    action: str | None = None
    report: HealthReport | None = None
    trace_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "action": self.action,
            "level_before": self.level_before,
            "level_after": self.level_after,
            "failure_count": self.failure_count,
            "report": self.report.to_dict() if self.report else None,
            "trace_id": self.trace_id,
            "error": self.error,
        }


class RecoveryStateMachine:
    """Escalating recovery driven by health-probe failures."""

    def __init__(
        self,
        store: StateStore,
        lock: SupervisorLock,
        catalog: dict[int, RemediationAction],
        check_health: Callable[[str | None], HealthReport] | None = None,
        quiescence_window: float = 3600.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        missing = [s for s in range(1, TERMINAL_LEVEL + 1) if s not in catalog]
        if missing:
            raise ValueError(f"Remediation catalog missing severities {missing}")
        self.store = store
        self.lock = lock
        self.catalog = catalog
        self.check_health = check_health
        self.quiescence_window = quiescence_window
        self._clock = clock
        self._sleep = sleep
        self._logger = get_logger("recovery")

    def action_for(self, level: int) -> RemediationAction:
        return self.catalog[min(level + 1, TERMINAL_LEVEL)]

    # -- trigger -------------------------------------------------------------

    def trigger(self, reason: str = "health_check_failed", trace_id: str | None = None) -> RecoveryOutcome:
        """Run one escalation step. Never blocks on the lock."""
        trace_id = trace_id or generate_correlation_id()

        if not self.lock.acquire():
            self._logger.info("Recovery already in progress, skipping", trace_id=trace_id, reason=reason)
            return RecoveryOutcome(
                status=OutcomeStatus.SKIPPED,
                level_before=-1,
                level_after=-1,
                failure_count=-1,
                trace_id=trace_id,
            )

        try:
            return self._step(reason, trace_id)
        finally:
            self.lock.release()

    def _step(self, reason: str, trace_id: str) -> RecoveryOutcome:
        now = self._clock()
        state = self.store.load()

        if state.quiescent_for(now, self.quiescence_window):
            if not state.is_nominal:
                self._logger.info(
                    "Quiescence window elapsed, resetting escalation",
                    trace_id=trace_id,
                    previous_level=state.level,
                    idle_seconds=round(now - state.last_failure_at, 1),
                )
            state.reset()

        level_before = state.level
        state.record_failure(now)
        self._persist(state, trace_id)

        action = self.action_for(level_before)
        self._logger.warning(
            f"Recovery triggered, running {action.name}",
            trace_id=trace_id,
            reason=reason,
            current_level=level_before,
            severity=action.severity,
            failure_count=state.failure_count,
        )

        if action.severity == TERMINAL_LEVEL:
            return self._reboot(state, action, level_before, trace_id)

        error = self._run_action(action, trace_id)

        if action.settle_time > 0:
            self._sleep(action.settle_time)
        report = action.verify(trace_id)

        if report.healthy:
            state.clear_failures()
            self._persist(state, trace_id)
            self._logger.info(
                f"Recovery succeeded at level {action.severity} ({action.name})",
                trace_id=trace_id,
                action=action.name,
                level_before=level_before,
            )
            status = OutcomeStatus.RECOVERED
        else:
            state.escalate()
            self._persist(state, trace_id)
            self._logger.warning(
                f"Recovery level {action.severity} failed, escalating",
                trace_id=trace_id,
                action=action.name,
                level_before=level_before,
                level_after=state.level,
                failed_checks=report.failed_checks,
                next_action=self.action_for(state.level).name,
            )
            status = OutcomeStatus.ESCALATED

        return RecoveryOutcome(
            status=status,
            action=action.name,
            level_before=level_before,
            level_after=state.level,
            failure_count=state.failure_count,
            report=report,
            trace_id=trace_id,
            error=error,
        )

    def _reboot(
        self,
        state: RecoveryState,
        action: RemediationAction,
        level_before: int,
        trace_id: str,
    ) -> RecoveryOutcome:
        state.level = TERMINAL_LEVEL
        self._persist(state, trace_id)
        action.context.diagnostics.update(state=state.to_dict(), level_before=level_before)
        error = self._run_action(action, trace_id)
        return RecoveryOutcome(
            status=OutcomeStatus.REBOOTING,
            action=action.name,
            level_before=level_before,
            level_after=state.level,
            failure_count=state.failure_count,
            trace_id=trace_id,
            error=error,
        )

    def _persist(self, state: RecoveryState, trace_id: str) -> None:
        # An unwritable state file must not stop remediation; carry on in memory
        try:
            self.store.save(state)
        except StateError as e:
            self._logger.error(
                "Cannot persist recovery state, continuing in memory",
                trace_id=trace_id,
                state_file=str(self.store.path),
                current_level=state.level,
                error=str(e),
            )

    def _run_action(self, action: RemediationAction, trace_id: str) -> str | None:
        try:
            action.run(trace_id)
        except SupervisorError as e:
            self._logger.error(
                f"Remediation {action.name} failed",
                trace_id=trace_id,
                action=action.name,
                error=str(e),
            )
            return str(e)
        return None

    # -- operator port -------------------------------------------------------

    def reset(self) -> bool:
        """Force the zero record. False when another cycle holds the lock."""
        with self.lock.hold() as acquired:
            if not acquired:
                self._logger.warning("Cannot reset recovery state, lock held")
                return False
            state = self.store.load()
            previous = state.to_dict()
            state.reset()
            self.store.save(state)
            self._logger.info("Recovery state reset", previous=previous)
            return True

    def status(self, include_health: bool = True) -> dict[str, Any]:
        """Current escalation state; reads without the lock."""
        state = self.store.load()
        result: dict[str, Any] = {
            "level": state.level,
            "level_name": LEVEL_NAMES[state.level],
            "failure_count": state.failure_count,
            "last_failure_at": state.last_failure_at,
            "next_action": self.action_for(state.level).name,
            "lock_holder": None,
            "currently_healthy": None,
        }
        holder = self.lock.read_holder()
        if holder is not None:
            result["lock_holder"] = holder.to_dict()
        if include_health and self.check_health is not None:
            report = self.check_health(None)
            result["currently_healthy"] = report.healthy
            result["failed_checks"] = report.failed_checks
        return result
