"""
Kiosk Supervisor

Self-healing supervisor for an unattended digital-signage kiosk. Cron-driven
cycles probe the display stack, climb an escalating recovery ladder when it is
unhealthy, and keep memory, disk, CPU and sockets under control.

Components:
- health_probe: Liveness battery and HealthReport
- recovery: Escalation state machine
- actions: Severity-indexed remediation catalog
- resource_monitor: Graduated resource cleanup
- lock: Staleness-aware supervisor lock
"""

from .actions import (
    CacheClearRestart,
    DisplayServerRestart,
    FullReboot,
    RemediationAction,
    RemediationContext,
    ServiceRestart,
    build_catalog,
)
from .errors import RemediationError, ServiceControlError, StateError, SupervisorError
from .health_probe import CheckResult, HealthProbe, HealthReport, quiet_hours_policy
from .lock import LockInfo, SupervisorLock
from .recovery import OutcomeStatus, RecoveryOutcome, RecoveryStateMachine
from .resource_monitor import (
    CleanupPolicy,
    HotProcess,
    ResourceMonitor,
    ResourceSampler,
    ResourceSnapshot,
    ResourceThresholds,
    SweepReport,
)
from .state import RecoveryState, StateStore
from .supervisor import Supervisor

__version__ = "0.3.0"
__all__ = [
    "CacheClearRestart",
    "DisplayServerRestart",
    "FullReboot",
    "RemediationAction",
    "RemediationContext",
    "ServiceRestart",
    "build_catalog",
    "RemediationError",
    "ServiceControlError",
    "StateError",
    "SupervisorError",
    "CheckResult",
    "HealthProbe",
    "HealthReport",
    "quiet_hours_policy",
    "LockInfo",
    "SupervisorLock",
    "OutcomeStatus",
    "RecoveryOutcome",
    "RecoveryStateMachine",
    "CleanupPolicy",
    "HotProcess",
    "ResourceMonitor",
    "ResourceSampler",
    "ResourceSnapshot",
    "ResourceThresholds",
    "SweepReport",
    "RecoveryState",
    "StateStore",
    "Supervisor",
]
