"""
Structured Logging for the kiosk supervisor

Provides JSON-structured decision logs with correlation IDs so a failure
history can be reconstructed after the fact. Each component writes its own
append-only file (recovery.log, health_probe.log, resource_monitor.log).

Usage:
    from kiosk_supervisor.logging_config import get_logger, setup_logging

    logger = get_logger("recovery")
    logger.info("Recovery triggered", trace_id="...", severity=1)

Environment Variables:
    LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL (default: INFO)
    LOG_DIR: Log file directory (default: /var/log/kioskbook)
    LOG_TO_CONSOLE: true/false (default: true)
    LOG_TO_FILE: true/false (default: true)
    LOG_MAX_SIZE_MB: Max size per log file (default: 10)
    LOG_BACKUP_COUNT: Rotated files to keep (default: 3)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import psutil


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CONFIG = {
    "log_level": "INFO",
    "log_dir": "/var/log/kioskbook",
    "log_to_console": True,
    "log_to_file": True,
    "log_max_size_mb": 10,
    "log_backup_count": 3,
    "pretty_json": False,
}

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Attributes every LogRecord carries; anything else came in as a context field
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "correlation_id",
))

# Global state
_config: dict[str, Any] = {}
_loggers: dict[str, "StructuredLogger"] = {}
_correlation_id_context: threading.local = threading.local()


# =============================================================================
# Correlation ID Management
# =============================================================================

def get_correlation_id() -> str | None:
    """Get current correlation ID from the thread-local context."""
    return getattr(_correlation_id_context, "correlation_id", None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID in thread-local context."""
    _correlation_id_context.correlation_id = correlation_id


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())[:8]


class CorrelationIdFilter(logging.Filter):
    """Filter that adds correlation_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or ""
        return True


# =============================================================================
# JSON Formatter
# =============================================================================

class StructuredJSONFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per line."""

    def __init__(self, component: str = "", pretty: bool = False):
        super().__init__()
        self.component = component
        self.pretty = pretty

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "component": self.component or record.name,
            "function": record.funcName,
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            log_data["trace_id"] = correlation_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = self._serialize_value(value)

        if record.exc_info:
            log_data["exception"] = self.format_exception(record.exc_info)

        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        if self.pretty:
            return json.dumps(log_data, indent=2, default=str)
        return json.dumps(log_data, default=str)

    def _serialize_value(self, value: Any) -> Any:
        """Serialize complex values to JSON-compatible types."""
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, (Exception, Path)):
            return str(value)
        if isinstance(value, (list, tuple)):
            return [self._serialize_value(v) for v in value]
        if isinstance(value, dict):
            return {str(k): self._serialize_value(v) for k, v in value.items()}
        if hasattr(value, "to_dict"):
            return self._serialize_value(value.to_dict())
        return str(value)

    def format_exception(self, exc_info) -> dict[str, Any] | None:
        """Format exception info."""
        if not exc_info:
            return None
        exc_type, exc_value, exc_tb = exc_info
        return {
            "type": exc_type.__name__ if exc_type else "Unknown",
            "message": str(exc_value) if exc_value else "Unknown",
            "traceback": self.format_traceback(exc_tb),
        }

    def format_traceback(self, tb) -> list[dict[str, Any]]:
        """Format traceback as structured data."""
        frames = []
        while tb:
            frame = tb.tb_frame
            frames.append({
                "filename": frame.f_code.co_filename,
                "function": frame.f_code.co_name,
                "lineno": tb.tb_lineno,
            })
            tb = tb.tb_next
        return frames


# =============================================================================
# Structured Logger Class
# =============================================================================

class StructuredLogger:
    """Structured logger with correlation ID support."""

    def __init__(
        self,
        name: str,
        component: str = "",
        log_level: int = logging.INFO,
        log_dir: str = "",
    ):
        self.name = name
        self.component = component or name
        self._logger = logging.getLogger(f"kiosk_supervisor.{name}")
        self._logger.setLevel(log_level)
        self._logger.propagate = False
        self._logger.handlers = []

        config = _config.copy()
        log_dir = log_dir or config.get("log_dir", DEFAULT_CONFIG["log_dir"])
        self.log_file: Path | None = None

        self._logger.addFilter(CorrelationIdFilter())

        if config.get("log_to_console", DEFAULT_CONFIG["log_to_console"]):
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(
                StructuredJSONFormatter(
                    component=self.component,
                    pretty=config.get("pretty_json", DEFAULT_CONFIG["pretty_json"]),
                )
            )
            self._logger.addHandler(console_handler)

        if config.get("log_to_file", DEFAULT_CONFIG["log_to_file"]):
            log_path = Path(log_dir)
            try:
                log_path.mkdir(parents=True, exist_ok=True)
                self.log_file = log_path / f"{name}.log"
                file_handler = RotatingFileHandler(
                    self.log_file,
                    maxBytes=config.get("log_max_size_mb", DEFAULT_CONFIG["log_max_size_mb"]) * 1024 * 1024,
                    backupCount=config.get("log_backup_count", DEFAULT_CONFIG["log_backup_count"]),
                    encoding="utf-8",
                )
                file_handler.setFormatter(StructuredJSONFormatter(component=self.component))
                self._logger.addHandler(file_handler)
            except OSError as e:
                # Read-only or full disk must not stop the supervisor
                self.log_file = None
                print(f"[logging_config] file logging disabled for {name}: {e}", file=sys.stderr)

    @property
    def handlers(self) -> list[logging.Handler]:
        return list(self._logger.handlers)

    def _log(
        self,
        level: int,
        message: str,
        trace_id: str | None = None,
        **kwargs,
    ):
        """Internal log method with correlation ID support."""
        if trace_id:
            old_cid = get_correlation_id()
            set_correlation_id(trace_id)

        try:
            extra = {
                key: value for key, value in kwargs.items()
                if key not in ("exc_info", "stack_info", "stacklevel")
            }
            self._logger.log(
                level,
                message,
                exc_info=kwargs.get("exc_info"),
                stack_info=kwargs.get("stack_info", False),
                extra=extra,
            )
        finally:
            if trace_id:
                set_correlation_id(old_cid)

    def debug(self, message: str, trace_id: str | None = None, **kwargs):
        """DEBUG: Detailed flow tracing, secondary check failures."""
        self._log(logging.DEBUG, message, trace_id, **kwargs)

    def info(self, message: str, trace_id: str | None = None, **kwargs):
        """INFO: Probe verdicts, actions taken, lock contention."""
        self._log(logging.INFO, message, trace_id, **kwargs)

    def warning(self, message: str, trace_id: str | None = None, **kwargs):
        """WARNING: Failed checks, resource pressure, escalation."""
        self._log(logging.WARNING, message, trace_id, **kwargs)

    def error(
        self,
        message: str,
        trace_id: str | None = None,
        exc_info: bool | None = None,
        **kwargs,
    ):
        """ERROR: Failures that don't crash the system."""
        self._log(logging.ERROR, message, trace_id, exc_info=exc_info, **kwargs)

    def critical(
        self,
        message: str,
        trace_id: str | None = None,
        exc_info: bool | None = None,
        **kwargs,
    ):
        """CRITICAL: Escalation exhausted, reboot imminent."""
        self._log(logging.CRITICAL, message, trace_id, exc_info=exc_info, **kwargs)

    def exception(self, message: str, trace_id: str | None = None, **kwargs):
        """Log exception with full traceback."""
        self._log(logging.ERROR, message, trace_id, exc_info=True, **kwargs)


# =============================================================================
# Public API
# =============================================================================

def _env_flag(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() == "true"


def setup_logging(
    log_level: str | None = None,
    log_dir: str | Path | None = None,
    log_to_console: bool | None = None,
    log_to_file: bool | None = None,
    pretty_json: bool = False,
) -> dict[str, Any]:
    """Initialize the logging system.

    Explicit arguments win over environment variables. Loggers created before
    this call keep their handlers; call it before the first get_logger().

    Returns:
        Configuration dict
    """
    global _config

    _config = {
        "log_level": (log_level or os.environ.get("LOG_LEVEL", DEFAULT_CONFIG["log_level"])).upper(),
        "log_dir": str(log_dir or os.environ.get("LOG_DIR", DEFAULT_CONFIG["log_dir"])),
        "log_to_console": log_to_console if log_to_console is not None else
            _env_flag("LOG_TO_CONSOLE", DEFAULT_CONFIG["log_to_console"]),
        "log_to_file": log_to_file if log_to_file is not None else
            _env_flag("LOG_TO_FILE", DEFAULT_CONFIG["log_to_file"]),
        "log_max_size_mb": int(os.environ.get("LOG_MAX_SIZE_MB", DEFAULT_CONFIG["log_max_size_mb"])),
        "log_backup_count": int(os.environ.get("LOG_BACKUP_COUNT", DEFAULT_CONFIG["log_backup_count"])),
        "pretty_json": pretty_json,
    }
    return _config


def reset_logging() -> None:
    """Drop cached loggers and close their handlers."""
    global _config
    for logger in _loggers.values():
        for handler in logger.handlers:
            handler.close()
            logger._logger.removeHandler(handler)
    _loggers.clear()
    _config = {}


def get_logger(name: str, component: str = "", log_level: str | None = None) -> StructuredLogger:
    """Get or create a structured logger.

    Args:
        name: Logger name, also the log file stem
        component: Component name for log context
        log_level: Override log level

    Returns:
        StructuredLogger instance
    """
    if name in _loggers:
        return _loggers[name]

    if not _config:
        setup_logging()

    level_name = (log_level or _config.get("log_level", "INFO")).upper()
    logger = StructuredLogger(
        name=name,
        component=component,
        log_level=LOG_LEVELS.get(level_name, logging.INFO),
        log_dir=_config.get("log_dir"),
    )
    _loggers[name] = logger
    return logger


def flush_logs() -> None:
    """Flush every handler and fsync file handlers so records survive a reboot."""
    for logger in _loggers.values():
        for handler in logger.handlers:
            handler.flush()
            stream = getattr(handler, "stream", None)
            if isinstance(handler, logging.FileHandler) and stream is not None:
                try:
                    os.fsync(stream.fileno())
                except (OSError, ValueError):
                    pass


def tail_logs(log_dir: str | Path, name: str, n_lines: int = 50) -> list[str]:
    """Get last n lines from a component's log file."""
    log_file = Path(log_dir) / f"{name}.log"
    if not log_file.exists():
        return []

    lines: list[str] = []
    with open(log_file, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            lines.append(line.strip())
            if len(lines) > n_lines:
                lines = lines[-n_lines:]
    return lines


# =============================================================================
# Error Context Capture
# =============================================================================

def capture_error_context(
    logger: StructuredLogger,
    trace_id: str | None = None,
    additional_context: dict[str, Any] | None = None,
    disk_path: str | Path = "/",
) -> dict[str, Any]:
    """Capture diagnostic context for a terminal failure.

    Returns a dict containing system info, memory and disk usage, and the most
    recent lines of the component's decision log. The context is also logged at
    CRITICAL so it lands in the decision log itself.
    """
    context: dict[str, Any] = {
        "captured_at": datetime.now(timezone.utc).isoformat(),
        "system": {
            "python_version": sys.version.split()[0],
            "platform": sys.platform,
            "boot_time": psutil.boot_time(),
        },
    }

    try:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(str(disk_path))
        context["resources"] = {
            "memory_pct": memory.percent,
            "memory_available_mb": round(memory.available / (1024 * 1024), 1),
            "disk_pct": disk.percent,
            "load_avg": list(psutil.getloadavg()),
        }
    except (OSError, AttributeError) as e:
        context["resources"] = {"error": str(e)}

    if additional_context:
        context["additional"] = additional_context

    if _config.get("log_dir"):
        context["recent_logs"] = tail_logs(_config["log_dir"], logger.name, 20)

    logger.critical(
        "Error context captured",
        trace_id=trace_id,
        **context,
    )
    return context
