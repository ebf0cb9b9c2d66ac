"""Resource monitor.

Samples memory, disk, per-process CPU and socket pressure on a schedule and
applies graduated cleanup. Each resource class has its own threshold ladder;
the cheap step runs first and the expensive one only if the re-sampled value is
still over the upper threshold. When a targeted memory restart does not bring
the kiosk back, the recovery state machine takes over.
"""

from __future__ import annotations

import os
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

import psutil

from .cleanup import (
    clear_directory,
    delete_older_than,
    remove_rotated,
    rotate_oversized,
    truncate_oversized,
    truncate_stale,
)
from .errors import ServiceControlError
from .health_probe import HealthReport
from .lock import SupervisorLock
from .logging_config import generate_correlation_id, get_logger
from .services import ServiceControl
from .system import SystemOps

MB = 1024 * 1024

# Connection states counted per peer when shedding connections
SHED_STATES = (psutil.CONN_ESTABLISHED, psutil.CONN_TIME_WAIT)

RENDERER_CACHE_SUBDIRS = ("Default/Cache", "Default/Code Cache")


@dataclass
class ResourceThresholds:
    """Threshold ladders for one sweep."""
    memory_cleanup_pct: float = 85.0
    memory_restart_pct: float = 90.0
    disk_cleanup_pct: float = 80.0
    disk_emergency_pct: float = 95.0
    cpu_report_pct: float = 50.0
    cpu_kill_pct: float = 90.0
    cpu_kill_age_seconds: float = 300.0
    zombie_limit: int = 5
    connection_limit: int = 1000
    peer_connection_limit: int = 100
    max_peers_closed: int = 5

    @classmethod
    def from_settings(cls, settings) -> "ResourceThresholds":
        return cls(
            memory_cleanup_pct=settings.MEMORY_CLEANUP_PCT,
            memory_restart_pct=settings.MEMORY_RESTART_PCT,
            disk_cleanup_pct=settings.DISK_CLEANUP_PCT,
            disk_emergency_pct=settings.DISK_EMERGENCY_PCT,
            cpu_report_pct=settings.CPU_REPORT_PCT,
            cpu_kill_pct=settings.CPU_KILL_PCT,
            cpu_kill_age_seconds=settings.CPU_KILL_AGE_SECONDS,
            zombie_limit=settings.ZOMBIE_LIMIT,
            connection_limit=settings.CONNECTION_LIMIT,
            peer_connection_limit=settings.PEER_CONNECTION_LIMIT,
            max_peers_closed=settings.MAX_PEERS_CLOSED,
        )


@dataclass
class CleanupPolicy:
    """Where cleanup looks and how aggressive it is."""
    disk_path: Path = Path("/")
    browser_profile_dir: Path = Path("/tmp/chrome-kiosk")
    temp_dirs: list[Path] = field(default_factory=lambda: [Path("/tmp"), Path("/var/tmp")])
    log_dirs: list[Path] = field(default_factory=lambda: [Path("/var/log")])
    app_repo_dir: Path | None = None
    temp_max_age_days: float = 7.0
    scratch_max_age_days: float = 1.0
    stale_log_age_days: float = 3.0
    log_tail_lines: int = 1000
    log_truncate_bytes: int = 1 * MB
    log_rotate_bytes: int = 10 * MB

    @classmethod
    def from_settings(cls, settings) -> "CleanupPolicy":
        return cls(
            disk_path=settings.DISK_PATH,
            browser_profile_dir=settings.BROWSER_PROFILE_DIR,
            temp_dirs=list(settings.TEMP_DIRS),
            log_dirs=list(settings.CLEANUP_LOG_DIRS),
            app_repo_dir=settings.APP_REPO_DIR,
            temp_max_age_days=settings.TEMP_MAX_AGE_DAYS,
            scratch_max_age_days=settings.SCRATCH_MAX_AGE_DAYS,
            stale_log_age_days=settings.STALE_LOG_AGE_DAYS,
            log_tail_lines=settings.LOG_TAIL_LINES,
            log_truncate_bytes=int(settings.LOG_TRUNCATE_MB * MB),
            log_rotate_bytes=int(settings.LOG_ROTATE_MB * MB),
        )


@dataclass
class HotProcess:
    pid: int
    name: str
    cpu_pct: float
    age_seconds: float


@dataclass
class ResourceSnapshot:
    """Point-in-time resource readings."""
    memory_pct: float
    disk_pct: float
    hot_processes: list[HotProcess] = field(default_factory=list)
    connection_count: int = 0
    zombie_count: int = 0
    taken_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SweepReport:
    """What one sweep saw and did."""
    snapshot: ResourceSnapshot | None = None
    actions: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    escalated: bool = False
    skipped: bool = False
    trace_id: str | None = None

    def record(self, resource: str, action: str) -> None:
        self.actions.setdefault(resource, []).append(action)

    def took(self, resource: str, action: str) -> bool:
        return action in self.actions.get(resource, [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "actions": self.actions,
            "errors": self.errors,
            "freed_bytes": self.freed_bytes,
            "escalated": self.escalated,
            "skipped": self.skipped,
            "trace_id": self.trace_id,
        }


# =============================================================================
# Sampling
# =============================================================================

class ResourceSampler:
    """psutil-backed readings. Tests swap in a fake with the same methods."""

    def __init__(self, cpu_sample_seconds: float = 1.0):
        self.cpu_sample_seconds = cpu_sample_seconds

    def memory_pct(self) -> float:
        return psutil.virtual_memory().percent

    def disk_pct(self, path: Path) -> float:
        return psutil.disk_usage(str(path)).percent

    def hot_processes(self, min_cpu_pct: float) -> list[HotProcess]:
        """Processes at or above ``min_cpu_pct`` over a short sampling window."""
        procs = []
        for proc in psutil.process_iter(["pid", "name", "create_time"]):
            try:
                proc.cpu_percent(None)
                procs.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        time.sleep(self.cpu_sample_seconds)
        now = time.time()
        hot = []
        for proc in procs:
            try:
                cpu = proc.cpu_percent(None)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if cpu >= min_cpu_pct:
                hot.append(HotProcess(
                    pid=proc.info["pid"],
                    name=proc.info.get("name") or "?",
                    cpu_pct=cpu,
                    age_seconds=max(now - (proc.info.get("create_time") or now), 0.0),
                ))
        return sorted(hot, key=lambda p: p.cpu_pct, reverse=True)

    def connections(self) -> list[tuple[str, str | None]]:
        """(status, remote address) for every inet socket."""
        try:
            conns = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            return []
        return [(c.status, c.raddr.ip if c.raddr else None) for c in conns]

    def zombie_count(self) -> int:
        count = 0
        for proc in psutil.process_iter(["status"]):
            if proc.info.get("status") == psutil.STATUS_ZOMBIE:
                count += 1
        return count


# =============================================================================
# Monitor
# =============================================================================

class ResourceMonitor:
    """Graduated cleanup per resource class."""

    def __init__(
        self,
        sampler: ResourceSampler,
        system: SystemOps,
        services: ServiceControl,
        lock: SupervisorLock,
        sweep_lock: SupervisorLock | None = None,
        thresholds: ResourceThresholds | None = None,
        policy: CleanupPolicy | None = None,
        app_service: str = "kiosk-app",
        browser_service: str = "kiosk-browser",
        check_health: Callable[[str | None], HealthReport] | None = None,
        trigger_recovery: Callable[..., Any] | None = None,
    ):
        self.sampler = sampler
        self.system = system
        self.services = services
        self.lock = lock
        self.sweep_lock = sweep_lock
        self.thresholds = thresholds or ResourceThresholds()
        self.policy = policy or CleanupPolicy()
        self.app_service = app_service
        self.browser_service = browser_service
        self.check_health = check_health
        self.trigger_recovery = trigger_recovery
        self._logger = get_logger("resource_monitor")

    # -- sweep ---------------------------------------------------------------

    def sweep(self) -> SweepReport:
        """One full pass over every resource class."""
        trace_id = generate_correlation_id()
        report = SweepReport(trace_id=trace_id)

        if self.sweep_lock is not None and not self.sweep_lock.acquire():
            self._logger.info("Resource sweep already running, skipping", trace_id=trace_id)
            report.skipped = True
            return report

        try:
            self._logger.info("Resource sweep started", trace_id=trace_id)
            memory_pct = self.check_memory(report)
            disk_pct = self.check_disk(report)
            hot = self.check_processes(report)
            connection_count = self.check_network(report)
            self.maintenance(report)

            report.snapshot = ResourceSnapshot(
                memory_pct=memory_pct,
                disk_pct=disk_pct,
                hot_processes=hot,
                connection_count=connection_count,
            )
            self._logger.info(
                "Resource sweep completed",
                trace_id=trace_id,
                actions=report.actions,
                freed_bytes=report.freed_bytes,
                error_count=len(report.errors),
                escalated=report.escalated,
            )
            return report
        finally:
            if self.sweep_lock is not None:
                self.sweep_lock.release()

    # -- memory --------------------------------------------------------------

    def check_memory(self, report: SweepReport) -> float:
        t = self.thresholds
        memory_pct = self.sampler.memory_pct()
        self._logger.info("Memory usage", trace_id=report.trace_id, memory_pct=memory_pct)
        if memory_pct <= t.memory_cleanup_pct:
            return memory_pct

        self._logger.warning(
            "Memory usage high, dropping caches",
            trace_id=report.trace_id,
            memory_pct=memory_pct,
            threshold=t.memory_cleanup_pct,
        )
        self.system.drop_caches(3)
        report.record("memory", "drop_caches")
        self.system.reap_zombies()
        report.record("memory", "reap_zombies")

        memory_pct = self.sampler.memory_pct()
        if memory_pct <= t.memory_restart_pct:
            return memory_pct

        self._logger.warning(
            "Memory still critical after cleanup, restarting kiosk services",
            trace_id=report.trace_id,
            memory_pct=memory_pct,
            threshold=t.memory_restart_pct,
        )
        if self._restart_services(report):
            report.record("memory", "restart_services")
            self._escalate_if_unhealthy(report)
        return memory_pct

    def _restart_services(self, report: SweepReport) -> bool:
        with self.lock.hold() as acquired:
            if not acquired:
                self._logger.info(
                    "Recovery in progress, skipping memory restart",
                    trace_id=report.trace_id,
                )
                return False
            for service in (self.browser_service, self.app_service):
                try:
                    self.services.restart(service)
                except ServiceControlError as e:
                    report.errors.append(str(e))
                    self._logger.error(
                        f"Restarting {service} failed",
                        trace_id=report.trace_id,
                        service=service,
                        error=str(e),
                    )
            return True

    def _escalate_if_unhealthy(self, report: SweepReport) -> None:
        if self.check_health is None:
            return
        health = self.check_health(report.trace_id)
        if health.healthy:
            return
        self._logger.warning(
            "Kiosk unhealthy after memory restart, escalating to recovery",
            trace_id=report.trace_id,
            failed_checks=health.failed_checks,
        )
        report.escalated = True
        if self.trigger_recovery is not None:
            self.trigger_recovery(reason="memory_pressure", trace_id=report.trace_id)

    # -- disk ----------------------------------------------------------------

    def check_disk(self, report: SweepReport) -> float:
        t = self.thresholds
        disk_pct = self.sampler.disk_pct(self.policy.disk_path)
        self._logger.info("Disk usage", trace_id=report.trace_id, disk_pct=disk_pct)
        if disk_pct <= t.disk_cleanup_pct:
            return disk_pct

        self._logger.warning(
            "Disk usage high, cleaning up",
            trace_id=report.trace_id,
            disk_pct=disk_pct,
            threshold=t.disk_cleanup_pct,
        )
        self.standard_disk_cleanup(report)

        disk_pct = self.sampler.disk_pct(self.policy.disk_path)
        if disk_pct <= t.disk_emergency_pct:
            return disk_pct

        self._logger.error(
            "Disk usage critical after cleanup, running emergency cleanup",
            trace_id=report.trace_id,
            disk_pct=disk_pct,
            threshold=t.disk_emergency_pct,
        )
        self.emergency_disk_cleanup(report)
        return self.sampler.disk_pct(self.policy.disk_path)

    def standard_disk_cleanup(self, report: SweepReport) -> None:
        p = self.policy
        if self.system.clean_package_cache():
            report.record("disk", "package_cache")

        self._apply(report, "disk", "temp_files", delete_older_than(p.temp_dirs, p.temp_max_age_days))
        self._apply(report, "disk", "renderer_cache", clear_directory(p.browser_profile_dir, RENDERER_CACHE_SUBDIRS))
        self._apply(
            report, "disk", "truncate_logs",
            truncate_oversized(p.log_dirs, p.log_truncate_bytes, p.log_tail_lines),
        )

        if p.app_repo_dir and self.system.gc_repository(p.app_repo_dir):
            report.record("disk", "git_gc")

    def emergency_disk_cleanup(self, report: SweepReport) -> None:
        p = self.policy
        self._apply(report, "disk", "remove_rotated_logs", remove_rotated(p.log_dirs))
        self._apply(report, "disk", "wipe_renderer_profile", clear_directory(p.browser_profile_dir))
        self._apply(report, "disk", "truncate_stale_logs", truncate_stale(p.log_dirs, p.stale_log_age_days))

    def _apply(self, report: SweepReport, resource: str, action: str, result: dict[str, Any]) -> None:
        report.record(resource, action)
        report.freed_bytes += result.get("freed_bytes", 0)
        report.errors.extend(result.get("errors", []))
        self._logger.info(
            f"Cleanup step {action}",
            trace_id=report.trace_id,
            removed=len(result.get("removed", [])),
            truncated=len(result.get("truncated", [])),
            rotated=len(result.get("rotated", [])),
            freed_bytes=result.get("freed_bytes", 0),
        )

    # -- processes -----------------------------------------------------------

    def check_processes(self, report: SweepReport) -> list[HotProcess]:
        t = self.thresholds
        hot = self.sampler.hot_processes(t.cpu_report_pct)
        own_pid = os.getpid()

        for proc in hot:
            self._logger.info(
                "High CPU process",
                trace_id=report.trace_id,
                pid=proc.pid,
                process_name=proc.name,
                cpu_pct=proc.cpu_pct,
                age_seconds=round(proc.age_seconds),
            )
            if proc.pid <= 1 or proc.pid == own_pid:
                continue
            if proc.cpu_pct > t.cpu_kill_pct and proc.age_seconds > t.cpu_kill_age_seconds:
                self._logger.warning(
                    "Killing runaway process",
                    trace_id=report.trace_id,
                    pid=proc.pid,
                    process_name=proc.name,
                    cpu_pct=proc.cpu_pct,
                    age_seconds=round(proc.age_seconds),
                )
                if self.system.kill(proc.pid):
                    report.record("cpu", f"kill:{proc.pid}")

        zombies = self.sampler.zombie_count()
        if zombies > t.zombie_limit:
            self._logger.warning("Too many zombie processes", trace_id=report.trace_id, zombie_count=zombies)
            self.system.reap_zombies()
            report.record("processes", "reap_zombies")
        return hot

    # -- network -------------------------------------------------------------

    def check_network(self, report: SweepReport) -> int:
        t = self.thresholds
        connections = self.sampler.connections()
        count = len(connections)
        self._logger.debug("Open connections", trace_id=report.trace_id, connection_count=count)
        if count <= t.connection_limit:
            return count

        per_peer = Counter(peer for status, peer in connections if peer and status in SHED_STATES)
        offenders = [
            (peer, n) for peer, n in per_peer.most_common(t.max_peers_closed)
            if n > t.peer_connection_limit
        ]
        self._logger.warning(
            "Connection count high",
            trace_id=report.trace_id,
            connection_count=count,
            offenders=dict(offenders),
        )
        for peer, n in offenders:
            if self.system.close_connections(peer):
                report.record("network", f"close:{peer}")
        return count

    # -- routine maintenance -------------------------------------------------

    def maintenance(self, report: SweepReport) -> None:
        p = self.policy
        self._apply(report, "maintenance", "rotate_logs", rotate_oversized(p.log_dirs, p.log_rotate_bytes))
        self._apply(
            report, "maintenance", "scratch_files",
            delete_older_than(p.temp_dirs, p.scratch_max_age_days, pattern="*.tmp"),
        )

    # -- overview ------------------------------------------------------------

    def snapshot(self) -> ResourceSnapshot:
        """Read-only readings for the operator overview."""
        return ResourceSnapshot(
            memory_pct=self.sampler.memory_pct(),
            disk_pct=self.sampler.disk_pct(self.policy.disk_path),
            hot_processes=self.sampler.hot_processes(self.thresholds.cpu_report_pct),
            connection_count=len(self.sampler.connections()),
            zombie_count=self.sampler.zombie_count(),
        )
