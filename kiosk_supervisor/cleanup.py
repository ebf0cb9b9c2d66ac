"""
File cleanup utilities

Log rotation, tail truncation, and age-based deletion used by the resource
monitor and the cache-clearing remediation. Every function works per file and
keeps going on errors; the returned dict lists what was done and what failed.
"""

from __future__ import annotations

import shutil
import time
from collections import deque
from pathlib import Path
from typing import Any, Iterable

ROTATED_LOG_PATTERNS = ("*.old", "*.gz", "*.log.[0-9]*")


def _result() -> dict[str, Any]:
    return {"removed": [], "truncated": [], "rotated": [], "freed_bytes": 0, "errors": []}


# =============================================================================
# Directories
# =============================================================================

def clear_directory(path: Path, subdirs: Iterable[str] | None = None) -> dict[str, Any]:
    """Remove the contents of ``path`` (or only the named subdirectories).

    The directory itself is kept so services that expect it keep working.
    """
    result = _result()
    path = Path(path)
    if not path.is_dir():
        return result

    targets = [path / s for s in subdirs] if subdirs else list(path.iterdir())
    for target in targets:
        if subdirs:
            if not target.is_dir():
                continue
            entries = list(target.iterdir())
        else:
            entries = [target]
        for entry in entries:
            try:
                size = _size_of(entry)
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                result["removed"].append(str(entry))
                result["freed_bytes"] += size
            except OSError as e:
                result["errors"].append(f"{entry}: {e}")
    return result


def _size_of(path: Path) -> int:
    try:
        if path.is_dir() and not path.is_symlink():
            return sum(p.stat().st_size for p in path.rglob("*") if p.is_file() and not p.is_symlink())
        return path.lstat().st_size
    except OSError:
        return 0


# =============================================================================
# Temp Files
# =============================================================================

def delete_older_than(
    directories: Iterable[Path],
    max_age_days: float,
    pattern: str = "*",
    now: float | None = None,
    use_atime: bool = False,
) -> dict[str, Any]:
    """Delete regular files matching ``pattern`` older than ``max_age_days``."""
    result = _result()
    cutoff = (now if now is not None else time.time()) - max_age_days * 86400

    for directory in directories:
        directory = Path(directory)
        if not directory.is_dir():
            continue
        for path in directory.rglob(pattern):
            try:
                if not path.is_file() or path.is_symlink():
                    continue
                stat = path.stat()
                stamp = stat.st_atime if use_atime else stat.st_mtime
                if stamp < cutoff:
                    path.unlink()
                    result["removed"].append(str(path))
                    result["freed_bytes"] += stat.st_size
            except OSError as e:
                result["errors"].append(f"{path}: {e}")
    return result


# =============================================================================
# Log Rotation
# =============================================================================

def find_logs(log_dirs: Iterable[Path], pattern: str = "*.log") -> list[Path]:
    logs: list[Path] = []
    for log_dir in log_dirs:
        log_dir = Path(log_dir)
        if log_dir.is_dir():
            logs.extend(p for p in log_dir.rglob(pattern) if p.is_file() and not p.is_symlink())
    return sorted(logs)


def truncate_to_tail(path: Path, keep_lines: int = 1000) -> int:
    """Rewrite ``path`` keeping only its last ``keep_lines`` lines.

    The file is rewritten in place (not replaced) so processes holding it open
    in append mode keep writing to the same inode. Returns bytes freed.
    """
    path = Path(path)
    before = path.stat().st_size
    with open(path, "rb") as f:
        tail = deque(f, maxlen=keep_lines)
    data = b"".join(tail)
    with open(path, "r+b") as f:
        f.write(data)
        f.truncate()
    return max(before - len(data), 0)


def truncate_oversized(
    log_dirs: Iterable[Path],
    max_bytes: int,
    keep_lines: int = 1000,
) -> dict[str, Any]:
    """Truncate every log above ``max_bytes`` to its tail."""
    result = _result()
    for log_file in find_logs(log_dirs):
        try:
            if log_file.stat().st_size <= max_bytes:
                continue
            result["freed_bytes"] += truncate_to_tail(log_file, keep_lines)
            result["truncated"].append(str(log_file))
        except OSError as e:
            result["errors"].append(f"{log_file}: {e}")
    return result


def truncate_stale(
    log_dirs: Iterable[Path],
    max_age_days: float,
    now: float | None = None,
) -> dict[str, Any]:
    """Empty logs not written for ``max_age_days``."""
    result = _result()
    cutoff = (now if now is not None else time.time()) - max_age_days * 86400
    for log_file in find_logs(log_dirs):
        try:
            stat = log_file.stat()
            if stat.st_mtime >= cutoff or stat.st_size == 0:
                continue
            with open(log_file, "r+b") as f:
                f.truncate(0)
            result["truncated"].append(str(log_file))
            result["freed_bytes"] += stat.st_size
        except OSError as e:
            result["errors"].append(f"{log_file}: {e}")
    return result


def rotate_oversized(log_dirs: Iterable[Path], max_bytes: int) -> dict[str, Any]:
    """Move logs above ``max_bytes`` to ``<name>.old`` and start an empty file."""
    result = _result()
    for log_file in find_logs(log_dirs):
        try:
            stat = log_file.stat()
            if stat.st_size <= max_bytes:
                continue
            rotated = log_file.with_name(log_file.name + ".old")
            log_file.replace(rotated)
            log_file.touch(mode=0o644)
            result["rotated"].append(str(log_file))
        except OSError as e:
            result["errors"].append(f"{log_file}: {e}")
    return result


def remove_rotated(log_dirs: Iterable[Path]) -> dict[str, Any]:
    """Delete retained rotated artifacts (*.old, *.gz, *.log.N)."""
    result = _result()
    seen: set[Path] = set()
    for pattern in ROTATED_LOG_PATTERNS:
        for path in find_logs(log_dirs, pattern):
            if path in seen:
                continue
            seen.add(path)
            try:
                size = path.stat().st_size
                path.unlink()
                result["removed"].append(str(path))
                result["freed_bytes"] += size
            except OSError as e:
                result["errors"].append(f"{path}: {e}")
    return result
