"""Supervisor lock.

A single advisory lock file created with O_CREAT | O_EXCL. The file holds the
owner's identity and acquisition time. Acquisition never waits: a cycle that
cannot get the lock logs and exits. A lock whose holder PID is gone, or which
is older than ``stale_after`` seconds, is reclaimed so a crashed holder cannot
block recovery forever.
"""

from __future__ import annotations

import json
import os
import socket
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Iterator

import psutil

from .logging_config import get_logger


@dataclass
class LockInfo:
    """Information about a lock holder."""
    pid: int
    hostname: str
    owner: str
    acquired_at: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        return cls(
            pid=int(data.get("pid", 0)),
            hostname=str(data.get("hostname", "")),
            owner=str(data.get("owner", "unknown")),
            acquired_at=float(data.get("acquired_at", 0.0)),
        )

    def age_seconds(self, now: float) -> float:
        return now - self.acquired_at

    def holder_alive(self) -> bool:
        if self.hostname and self.hostname != socket.gethostname():
            # Cannot inspect a foreign host; rely on age only
            return True
        return self.pid > 0 and psutil.pid_exists(self.pid)


class SupervisorLock:
    """Non-blocking, staleness-aware lock file.

    Usage:
        lock = SupervisorLock(path, owner="health_probe")
        with lock.hold() as acquired:
            if not acquired:
                return
            # critical section
    """

    def __init__(
        self,
        path: Path,
        owner: str = "supervisor",
        stale_after: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.owner = owner
        self.stale_after = stale_after
        self._clock = clock
        self._fd: int | None = None
        self._logger = get_logger("supervisor_lock")

    @property
    def owned(self) -> bool:
        return self._fd is not None

    def read_holder(self) -> LockInfo | None:
        """Current holder, or None when unlocked or unreadable."""
        return self._read_info(self.path)

    def _read_info(self, path: Path) -> LockInfo | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            self._logger.debug("Lock file unreadable", lock_file=str(path), error=str(e))
            return None

        if not content.strip():
            return None
        try:
            return LockInfo.from_dict(json.loads(content))
        except (ValueError, TypeError):
            return None

    def is_stale(self, info: LockInfo | None) -> bool:
        return self._is_stale_at(self.path, info)

    def _is_stale_at(self, path: Path, info: LockInfo | None) -> bool:
        if info is None:
            # Empty or garbled file: only stale once it is old enough, the
            # writer may be between open() and write()
            try:
                age = self._clock() - path.stat().st_mtime
            except FileNotFoundError:
                return False
            return age > self.stale_after
        return info.age_seconds(self._clock()) > self.stale_after or not info.holder_alive()

    def _reclaim_if_stale(self) -> bool:
        """Remove a stale lock file. True when the caller may retry _create().

        The file is first renamed aside, so only one cycle can claim it. The
        claimed copy must still hold the holder judged stale; a fresh lock
        taken by another cycle in between is put back and this round is lost.
        """
        info = self.read_holder()
        if not self.is_stale(info):
            return False

        claimed = self.path.with_name(f"{self.path.name}.stale.{os.getpid()}")
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            # Released or claimed by another cycle; the path is free to race for
            return True
        except OSError as e:
            self._logger.error("Cannot claim stale lock", lock_file=str(self.path), error=str(e))
            return False

        current = self._read_info(claimed)
        if current != info or not self._is_stale_at(claimed, current):
            self._restore(claimed)
            self._logger.info("Stale lock was retaken by another cycle", lock_file=str(self.path))
            return False

        self._logger.warning(
            "Reclaiming stale supervisor lock",
            lock_file=str(self.path),
            holder=info.to_dict() if info else None,
        )
        claimed.unlink(missing_ok=True)
        return True

    def _restore(self, claimed: Path) -> None:
        # link() never overwrites, so a lock created meanwhile is kept
        try:
            os.link(claimed, self.path)
        except FileExistsError:
            self._logger.warning("Lock retaken twice during reclaim", lock_file=str(self.path))
        except OSError as e:
            self._logger.error("Cannot restore lock file", lock_file=str(self.path), error=str(e))
        claimed.unlink(missing_ok=True)

    def _create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o644)
        except FileExistsError:
            return False

        info = LockInfo(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            owner=self.owner,
            acquired_at=self._clock(),
        )
        try:
            os.write(fd, json.dumps(info.to_dict()).encode("utf-8"))
            os.fsync(fd)
        except OSError:
            os.close(fd)
            self.path.unlink(missing_ok=True)
            raise
        self._fd = fd
        return True

    def acquire(self) -> bool:
        """Try once to take the lock. Never blocks."""
        if self.owned:
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._create():
            self._logger.debug("Supervisor lock acquired", lock_file=str(self.path), owner=self.owner)
            return True

        # One retry after reclaiming a stale holder; a second loser just loses
        if self._reclaim_if_stale() and self._create():
            self._logger.info("Supervisor lock acquired after reclaim", lock_file=str(self.path), owner=self.owner)
            return True

        holder = self.read_holder()
        self._logger.info(
            "Supervisor lock busy",
            lock_file=str(self.path),
            owner=self.owner,
            holder=holder.to_dict() if holder else None,
        )
        return False

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.close(self._fd)
        finally:
            self._fd = None
            self.path.unlink(missing_ok=True)
            self._logger.debug("Supervisor lock released", lock_file=str(self.path), owner=self.owner)

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired."""
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
