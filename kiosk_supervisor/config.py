"""Supervisor configuration.

Provides environment-based configuration using pydantic-settings. Every field
can be overridden with a ``KIOSK_`` prefixed environment variable, e.g.
``KIOSK_QUIESCENCE_WINDOW=1800``.
"""

from __future__ import annotations

import functools
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Provisioning drops appliance overrides here
SYSTEM_ENV_FILE = Path("/etc/kiosk-supervisor.env")
if SYSTEM_ENV_FILE.exists():
    load_dotenv(SYSTEM_ENV_FILE)


class Settings(BaseSettings):
    """Supervisor settings.

    Attributes:
        STATE_FILE: Persisted RecoveryState record
        LOCK_FILE: Supervisor lock shared by probe and resource cycles
        LOG_DIR: Directory for the JSON decision logs
        SERVICE_MANAGER: "openrc" or "systemd"
        APP_URL / SCREENSAVER_URL: Endpoints selected by wall-clock hour
    """

    # Persistence
    STATE_FILE: Path = Path("/var/lib/kiosk-supervisor/recovery-state.json")
    LOCK_FILE: Path = Path("/run/kiosk-supervisor/recovery.lock")
    SWEEP_LOCK_FILE: Path = Path("/run/kiosk-supervisor/resource-monitor.lock")
    HEALTH_STATUS_FILE: Path = Path("/var/run/kiosk-health.status")
    LOG_DIR: Path = Path("/var/log/kioskbook")

    # Escalation
    QUIESCENCE_WINDOW: float = 3600.0
    LOCK_STALE_SECONDS: float = 600.0
    SETTLE_TIMES: dict[int, float] = {1: 13.0, 2: 15.0, 3: 20.0, 4: 0.0}
    REBOOT_GRACE_SECONDS: float = 30.0

    # Managed services
    SERVICE_MANAGER: str = "openrc"
    APP_SERVICE: str = "kiosk-app"
    BROWSER_SERVICE: str = "kiosk-browser"
    DISPLAY_SERVICE: str = "kiosk-display"
    COMMAND_TIMEOUT: float = 30.0

    # Health probe
    BROWSER_PROCESS_PATTERN: str = r"chromium.*kiosk"
    WINDOW_TITLE: str = "Chromium"
    APP_URL: str = "http://localhost:3000"
    SCREENSAVER_URL: str = "http://localhost:3001"
    QUIET_START_HOUR: int = 23
    QUIET_END_HOUR: int = 7
    HTTP_TIMEOUT: float = 5.0
    DISPLAY_TIMEOUT: float = 5.0
    DISPLAY: str = ":0"

    # Resource monitor thresholds
    MEMORY_CLEANUP_PCT: float = 85.0
    MEMORY_RESTART_PCT: float = 90.0
    DISK_CLEANUP_PCT: float = 80.0
    DISK_EMERGENCY_PCT: float = 95.0
    CPU_REPORT_PCT: float = 50.0
    CPU_KILL_PCT: float = 90.0
    CPU_KILL_AGE_SECONDS: float = 300.0
    CPU_SAMPLE_SECONDS: float = 1.0
    ZOMBIE_LIMIT: int = 5
    CONNECTION_LIMIT: int = 1000
    PEER_CONNECTION_LIMIT: int = 100
    MAX_PEERS_CLOSED: int = 5

    # Cleanup targets
    DISK_PATH: Path = Path("/")
    BROWSER_PROFILE_DIR: Path = Path("/tmp/chrome-kiosk")
    TEMP_DIRS: list[Path] = [Path("/tmp"), Path("/var/tmp")]
    CLEANUP_LOG_DIRS: list[Path] = [Path("/var/log")]
    APP_REPO_DIR: Path = Path("/opt/kiosk-app")
    PACKAGE_CACHE_COMMAND: list[str] = ["apk", "cache", "clean"]
    TEMP_MAX_AGE_DAYS: float = 7.0
    SCRATCH_MAX_AGE_DAYS: float = 1.0
    STALE_LOG_AGE_DAYS: float = 3.0
    LOG_TAIL_LINES: int = 1000
    LOG_TRUNCATE_MB: float = 1.0
    LOG_ROTATE_MB: float = 10.0

    class Config:
        """Pydantic config."""
        env_prefix = "KIOSK_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def settle_time(self, severity: int) -> float:
        """Settle time for a remediation severity, 0 when unset."""
        return float(self.SETTLE_TIMES.get(severity, 0.0))


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings instance."""
    return Settings()
