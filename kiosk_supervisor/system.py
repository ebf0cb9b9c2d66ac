"""OS primitives used by remediation and resource cleanup."""

from __future__ import annotations

import os
import signal
from pathlib import Path

import psutil

from .errors import ServiceControlError
from .logging_config import get_logger
from .services import run_command

DROP_CACHES_PATH = Path("/proc/sys/vm/drop_caches")


class SystemOps:
    """Thin wrappers over kernel interfaces and system commands.

    Each method is safe to call repeatedly. Failures that only reduce the
    effectiveness of a cleanup are logged and swallowed; failures of the
    operation the caller depends on raise ServiceControlError.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        package_cache_command: list[str] | None = None,
        drop_caches_path: Path = DROP_CACHES_PATH,
    ):
        self.timeout = timeout
        self.package_cache_command = package_cache_command or ["apk", "cache", "clean"]
        self.drop_caches_path = drop_caches_path
        self._logger = get_logger("system_ops")

    def sync(self) -> None:
        os.sync()

    def drop_caches(self, level: int = 3) -> bool:
        """Flush dirty pages then ask the kernel to drop clean caches."""
        self.sync()
        try:
            self.drop_caches_path.write_text(f"{level}\n")
            return True
        except OSError as e:
            self._logger.warning("Cannot drop page cache", cache_level=level, error=str(e))
            return False

    def zombie_pids(self) -> list[int]:
        zombies = []
        for proc in psutil.process_iter(["pid", "status"]):
            if proc.info.get("status") == psutil.STATUS_ZOMBIE:
                zombies.append(proc.info["pid"])
        return zombies

    def reap_zombies(self) -> list[int]:
        """Nudge parents of defunct processes to reap them.

        A zombie cannot be killed; its parent must wait() on it. Send SIGCHLD to
        the parent and, when the parent is not init, report the zombie so the
        caller can see which ones are stuck.
        """
        reaped = []
        for pid in self.zombie_pids():
            try:
                parent_pid = psutil.Process(pid).ppid()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if parent_pid > 1:
                try:
                    os.kill(parent_pid, signal.SIGCHLD)
                except (ProcessLookupError, PermissionError):
                    continue
            reaped.append(pid)
        if reaped:
            self._logger.info("Signalled parents of zombie processes", zombie_pids=reaped)
        return reaped

    def kill(self, pid: int, sig: int = signal.SIGKILL) -> bool:
        try:
            os.kill(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            self._logger.warning("Not permitted to signal process", pid=pid, error=str(e))
            return False

    def reboot(self) -> None:
        self._logger.critical("Issuing system reboot")
        run_command(["reboot"], self.timeout)

    def clean_package_cache(self) -> bool:
        try:
            run_command(self.package_cache_command, self.timeout)
            return True
        except ServiceControlError as e:
            self._logger.warning("Package cache cleanup failed", error=str(e))
            return False

    def close_connections(self, peer: str) -> bool:
        """Kill every socket to a remote address (ss -K)."""
        try:
            run_command(["ss", "-K", "dst", peer], self.timeout)
            return True
        except ServiceControlError as e:
            self._logger.warning("Closing connections failed", peer=peer, error=str(e))
            return False

    def gc_repository(self, repo_dir: Path) -> bool:
        if not (Path(repo_dir) / ".git").is_dir():
            return False
        try:
            run_command(["git", "-C", str(repo_dir), "gc", "--prune=now"], self.timeout * 4)
            return True
        except ServiceControlError as e:
            self._logger.warning("git gc failed", repo=str(repo_dir), error=str(e))
            return False
