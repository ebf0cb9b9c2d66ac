"""Persisted escalation state.

RecoveryState is the only record that outlives a single cycle. It is read,
mutated in memory and written back while the supervisor lock is held; writes go
through a temp file and os.replace so a crash mid-write leaves the previous
record intact.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path

from .errors import StateError
from .logging_config import get_logger

NOMINAL_LEVEL = 0
TERMINAL_LEVEL = 4


@dataclass
class RecoveryState:
    """Escalation level, failures since last reset, and time of last failure."""
    level: int = NOMINAL_LEVEL
    failure_count: int = 0
    last_failure_at: float = 0.0

    def __post_init__(self):
        self.level = min(max(int(self.level), NOMINAL_LEVEL), TERMINAL_LEVEL)
        self.failure_count = max(int(self.failure_count), 0)
        self.last_failure_at = max(float(self.last_failure_at), 0.0)
        if self.level > NOMINAL_LEVEL and self.failure_count < 1:
            self.failure_count = 1

    @property
    def is_nominal(self) -> bool:
        return self.level == NOMINAL_LEVEL

    def reset(self) -> None:
        """Return to the zero record."""
        self.level = NOMINAL_LEVEL
        self.failure_count = 0
        self.last_failure_at = 0.0

    def clear_failures(self) -> None:
        """Healthy again: drop level and count, keep the failure timestamp."""
        self.level = NOMINAL_LEVEL
        self.failure_count = 0

    def record_failure(self, now: float) -> None:
        self.failure_count += 1
        self.last_failure_at = now

    def escalate(self) -> None:
        self.level = min(self.level + 1, TERMINAL_LEVEL)

    def quiescent_for(self, now: float, window: float) -> bool:
        """True when no failure was recorded within the last ``window`` seconds."""
        return now - self.last_failure_at > window

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RecoveryState":
        return cls(
            level=data.get("level", NOMINAL_LEVEL),
            failure_count=data.get("failure_count", 0),
            last_failure_at=data.get("last_failure_at", 0.0),
        )


class StateStore:
    """Loads and atomically saves RecoveryState at a fixed path."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._logger = get_logger("recovery")

    def load(self) -> RecoveryState:
        """Load the record, falling back to the zero record if missing or corrupt."""
        if not self.path.exists():
            return RecoveryState()

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("state record is not an object")
            return RecoveryState.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            self._logger.warning(
                "Recovery state unreadable, starting from nominal",
                state_file=str(self.path),
                error=str(e),
            )
            return RecoveryState()

    def save(self, state: RecoveryState) -> None:
        """Write via temp file + rename."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
            tmp.replace(self.path)
        except OSError as e:
            raise StateError(f"cannot write {self.path}: {e}") from e
