from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional


LOGGER_NAME = "branchsync_mcp"

# Environment variables for configuration
ENV_LOG_DIR = "BRANCHSYNC_LOG_DIR"
ENV_LOG_LEVEL = "BRANCHSYNC_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "BRANCHSYNC_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "BRANCHSYNC_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "BRANCHSYNC_LOG_DISABLE_FILE"

# Defaults
DEFAULT_LOG_DIR = Path.home() / ".branchsync" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_BACKUP_COUNT = 5

# Receives one dict per git event; delivery is best effort
AnalyticsSink = Callable[[Dict[str, Any]], None]

_logger_initialized = False
_session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")
_analytics_sink: Optional[AnalyticsSink] = None


def _get_log_level() -> int:
    """Get log level from environment, defaulting to INFO."""
    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def _get_log_file_path() -> Optional[Path]:
    """Get the log file path, creating directories if needed.

    Returns None if file logging is disabled via BRANCHSYNC_LOG_DISABLE_FILE=1.
    """
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes"):
        return None

    log_dir = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR)).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    # Session-based filename: branchsync_2024-01-15_143022.log
    return log_dir / f"branchsync_{_session_start}.log"


def _get_logger() -> logging.Logger:
    """Get or initialize the branchsync logger.

    By default, logs to ~/.branchsync/logs/branchsync_<session>.log and
    mirrors warnings to stderr.
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)

    if not _logger_initialized:
        _logger_initialized = True
        logger.handlers.clear()

        log_level = _get_log_level()
        logger.setLevel(log_level)

        formatter = logging.Formatter(
            "[%(levelname)s %(asctime)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S"
        )

        log_file = _get_log_file_path()
        if log_file:
            max_bytes = int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES))
            backup_count = int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT))

            file_handler = RotatingFileHandler(
                str(log_file),
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.setLevel(max(log_level, logging.WARNING))
        logger.addHandler(stream_handler)

    return logger


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    tool_name: Optional[str] = None,
    **fields: Any,
) -> None:
    """Emit a structured JSON log line for an action.

    Args:
        action: Name of the action being logged
        outcome: Result status ("ok", "error", etc.)
        duration_ms: How long the action took in milliseconds
        tool_name: MCP tool name (for per-tool metrics)
        **fields: Additional fields to include
    """
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if tool_name is not None:
        payload["tool"] = tool_name
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} {json.dumps(fields, separators=(',', ':'), sort_keys=True, default=str)}"


def log_debug(message: str, **fields: Any) -> None:
    """Log a debug message with optional structured fields.

    Only emitted when log level is DEBUG.
    """
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    """Log a warning message with optional structured fields."""
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    """Log an error message with optional structured fields."""
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, *, tool_name: Optional[str] = None, **fields: Any):
    """Time a block and emit a structured log on exit.

    On exception, logs outcome="error" and re-raises.
    """
    start = time.perf_counter()
    try:
        yield
    except Exception:
        log_action(
            action,
            outcome="error",
            duration_ms=(time.perf_counter() - start) * 1000.0,
            tool_name=tool_name,
            **fields,
        )
        raise
    log_action(
        action,
        outcome="ok",
        duration_ms=(time.perf_counter() - start) * 1000.0,
        tool_name=tool_name,
        **fields,
    )


def set_analytics_sink(sink: Optional[AnalyticsSink]) -> None:
    """Install (or clear with None) the receiver for git events."""
    global _analytics_sink
    _analytics_sink = sink


def record_git_event(event: str, **fields: Any) -> None:
    """Record a git telemetry event. Never raises."""
    payload = {"event": event, **fields}
    try:
        log_action(f"git.{event}", **fields)
        if _analytics_sink is not None:
            _analytics_sink(payload)
    except Exception as e:
        try:
            log_warning(f"[TELEMETRY] Failed to record {event}: {e}")
        except Exception:
            pass


@contextmanager
def track_git_event(event: str, **fields: Any):
    """Record ``event`` with its outcome when the block exits.

    The yielded dict may be updated inside the block (e.g. with the branch
    application id once it is known); its contents are sent with the event.
    Errors from the block are re-raised after recording.
    """
    start = time.perf_counter()
    details: Dict[str, Any] = dict(fields)
    try:
        yield details
    except Exception as e:
        record_git_event(
            event,
            outcome="error",
            duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
            error_type=type(e).__name__,
            error_message=getattr(e, "message", None) or str(e),
            **details,
        )
        raise
    record_git_event(
        event,
        outcome="ok",
        duration_ms=round((time.perf_counter() - start) * 1000.0, 2),
        **details,
    )
