"""Tests for the resource monitor threshold ladders."""

import os
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from kiosk_supervisor.lock import SupervisorLock
from kiosk_supervisor.resource_monitor import (
    CleanupPolicy,
    HotProcess,
    ResourceMonitor,
    ResourceThresholds,
)

from tests.conftest import FakeSampler, ScriptedHealth

ESTABLISHED = "ESTABLISHED"


@pytest.fixture
def policy(tmp_path: Path) -> CleanupPolicy:
    return CleanupPolicy(
        disk_path=tmp_path,
        browser_profile_dir=tmp_path / "chrome-kiosk",
        temp_dirs=[tmp_path / "tmp"],
        log_dirs=[tmp_path / "log"],
        app_repo_dir=tmp_path / "app",
    )


def _monitor(tmp_path, sampler, system, services, policy, health=None, trigger=None) -> ResourceMonitor:
    return ResourceMonitor(
        sampler=sampler,
        system=system,
        services=services,
        lock=SupervisorLock(tmp_path / "recovery.lock", owner="resource_monitor"),
        sweep_lock=SupervisorLock(tmp_path / "sweep.lock", owner="resource_sweep"),
        thresholds=ResourceThresholds(),
        policy=policy,
        check_health=health or ScriptedHealth(True),
        trigger_recovery=trigger,
    )


class TestMemory:
    def test_below_threshold_does_nothing(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(memory=[60.0]), system, services, policy).sweep()

        assert "memory" not in report.actions
        assert system.called("drop_caches") == []

    def test_87_percent_cleans_without_restart(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(memory=[87.0]), system, services, policy).sweep()

        assert report.actions["memory"] == ["drop_caches", "reap_zombies"]
        assert system.called("drop_caches") == [("drop_caches", 3)]
        assert services.calls == []

    def test_93_percent_cleans_then_restarts_renderer_and_app(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(memory=[93.0]), system, services, policy).sweep()

        assert report.actions["memory"] == ["drop_caches", "reap_zombies", "restart_services"]
        assert services.calls == [("restart", "kiosk-browser"), ("restart", "kiosk-app")]
        assert not report.escalated

    def test_cleanup_that_helps_skips_restart(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(memory=[93.0, 70.0]), system, services, policy).sweep()

        assert "restart_services" not in report.actions["memory"]
        assert services.calls == []

    def test_restart_skipped_while_recovery_holds_lock(self, tmp_path, system, services, policy):
        other = SupervisorLock(tmp_path / "recovery.lock", owner="recovery")
        other.acquire()

        report = _monitor(tmp_path, FakeSampler(memory=[93.0]), system, services, policy).sweep()

        assert services.calls == []
        assert "restart_services" not in report.actions["memory"]
        other.release()

    def test_unhealthy_after_restart_escalates(self, tmp_path, system, services, policy):
        trigger = MagicMock()
        monitor = _monitor(
            tmp_path, FakeSampler(memory=[95.0]), system, services, policy,
            health=ScriptedHealth(False), trigger=trigger,
        )

        report = monitor.sweep()

        assert report.escalated
        trigger.assert_called_once_with(reason="memory_pressure", trace_id=report.trace_id)
        # Restart lock is released before recovery takes over
        assert not (tmp_path / "recovery.lock").exists()


class TestDisk:
    def test_82_percent_runs_standard_cleanup_only(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(disk=[82.0]), system, services, policy).sweep()

        disk = report.actions["disk"]
        assert disk[:4] == ["package_cache", "temp_files", "renderer_cache", "truncate_logs"]
        assert "git_gc" in disk
        assert "remove_rotated_logs" not in disk
        assert "wipe_renderer_profile" not in disk

    def test_96_percent_adds_emergency_pass(self, tmp_path, system, services, policy):
        profile = tmp_path / "chrome-kiosk"
        (profile / "Default").mkdir(parents=True)
        (profile / "Default" / "Preferences").write_text("{}")
        log_dir = tmp_path / "log"
        log_dir.mkdir()
        (log_dir / "messages.log.old").write_text("old")

        report = _monitor(tmp_path, FakeSampler(disk=[96.0]), system, services, policy).sweep()

        disk = report.actions["disk"]
        assert "package_cache" in disk
        assert disk[-3:] == ["remove_rotated_logs", "wipe_renderer_profile", "truncate_stale_logs"]
        assert list(profile.iterdir()) == []
        assert not (log_dir / "messages.log.old").exists()

    def test_old_temp_files_removed(self, tmp_path, system, services, policy):
        temp = tmp_path / "tmp"
        temp.mkdir()
        old = temp / "upload.bin"
        old.write_bytes(b"x" * 64)
        stamp = time.time() - 8 * 86400
        os.utime(old, (stamp, stamp))

        report = _monitor(tmp_path, FakeSampler(disk=[85.0]), system, services, policy).sweep()

        assert not old.exists()
        assert report.freed_bytes >= 64


class TestProcesses:
    def test_kills_long_running_hog(self, tmp_path, system, services, policy):
        hog = HotProcess(pid=5001, name="chromium", cpu_pct=97.0, age_seconds=360)
        report = _monitor(tmp_path, FakeSampler(hot=[hog]), system, services, policy).sweep()

        assert system.called("kill") == [("kill", 5001)]
        assert report.actions["cpu"] == ["kill:5001"]

    def test_spares_young_process(self, tmp_path, system, services, policy):
        burst = HotProcess(pid=5002, name="node", cpu_pct=97.0, age_seconds=120)
        _monitor(tmp_path, FakeSampler(hot=[burst]), system, services, policy).sweep()

        assert system.called("kill") == []

    def test_moderate_cpu_only_reported(self, tmp_path, system, services, policy, isolated_logging):
        busy = HotProcess(pid=5003, name="node", cpu_pct=60.0, age_seconds=9999)
        _monitor(tmp_path, FakeSampler(hot=[busy]), system, services, policy).sweep()

        assert system.called("kill") == []
        assert "High CPU process" in (isolated_logging / "resource_monitor.log").read_text()

    def test_never_kills_init(self, tmp_path, system, services, policy):
        init = HotProcess(pid=1, name="init", cpu_pct=99.0, age_seconds=99999)
        _monitor(tmp_path, FakeSampler(hot=[init]), system, services, policy).sweep()

        assert system.called("kill") == []

    def test_zombies_over_limit_reaped(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(zombies=6), system, services, policy).sweep()
        assert report.actions["processes"] == ["reap_zombies"]

    def test_zombies_at_limit_left_alone(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(zombies=5), system, services, policy).sweep()
        assert "processes" not in report.actions


class TestNetwork:
    def test_closes_heaviest_peers_over_limit(self, tmp_path, system, services, policy):
        conns = (
            [(ESTABLISHED, "10.0.0.5")] * 600
            + [(ESTABLISHED, "10.0.0.6")] * 150
            + [(ESTABLISHED, "10.0.0.7")] * 50
            + [("LISTEN", None)] * 300
        )
        report = _monitor(tmp_path, FakeSampler(connections=conns), system, services, policy).sweep()

        assert system.called("close_connections") == [
            ("close_connections", "10.0.0.5"),
            ("close_connections", "10.0.0.6"),
        ]
        assert report.snapshot.connection_count == 1100

    def test_under_limit_leaves_connections(self, tmp_path, system, services, policy):
        conns = [(ESTABLISHED, "10.0.0.5")] * 900
        _monitor(tmp_path, FakeSampler(connections=conns), system, services, policy).sweep()
        assert system.called("close_connections") == []


class TestSweep:
    def test_overlapping_sweep_skipped(self, tmp_path, system, services, policy):
        running = SupervisorLock(tmp_path / "sweep.lock", owner="resource_sweep")
        running.acquire()

        report = _monitor(tmp_path, FakeSampler(memory=[99.0]), system, services, policy).sweep()

        assert report.skipped
        assert system.calls == []
        running.release()

    def test_maintenance_rotates_large_logs(self, tmp_path, system, services, policy):
        policy.log_rotate_bytes = 10
        log_dir = tmp_path / "log"
        log_dir.mkdir()
        (log_dir / "kiosk.log").write_text("x" * 100)

        report = _monitor(tmp_path, FakeSampler(), system, services, policy).sweep()

        assert report.actions["maintenance"] == ["rotate_logs", "scratch_files"]
        assert (log_dir / "kiosk.log.old").exists()

    def test_report_serializes(self, tmp_path, system, services, policy):
        report = _monitor(tmp_path, FakeSampler(), system, services, policy).sweep()
        data = report.to_dict()
        assert data["snapshot"]["memory_pct"] == 40.0
        assert data["skipped"] is False


class TestThresholds:
    def test_from_settings(self, settings):
        thresholds = ResourceThresholds.from_settings(settings)
        assert thresholds.memory_cleanup_pct == 85.0
        assert thresholds.disk_emergency_pct == 95.0
        assert thresholds.cpu_kill_age_seconds == 300.0

    def test_policy_from_settings(self, settings, tmp_path):
        policy = CleanupPolicy.from_settings(settings)
        assert policy.browser_profile_dir == tmp_path / "chrome-kiosk"
        assert policy.log_rotate_bytes == 10 * 1024 * 1024
