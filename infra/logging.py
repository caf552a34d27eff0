"""
ToolOS Centralized Logging
--------------------------
Structured logging with run_id propagation for full execution traceability.

Design:
- Every action/workflow invocation gets a unique run_id
- run_id propagates through: Orchestrator -> Runtime -> Memory -> Database
- Supports both console (Rich) and file (JSON) output
- Clear severity discipline: INFO=state, WARNING=recoverable, ERROR=abort

Usage:
    from infra.logging import get_logger, RunContext, log_run_end

    logger = get_logger("toolos.core")

    with RunContext() as run_id:
        logger.info("Executing workflow")
        # ... processing ...
        log_run_end(run_id, status="completed", steps_executed=2)
"""

import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.logging import RichHandler

# Context variable for run_id - thread-safe and async-safe
_run_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "run_id", default=None
)


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return str(uuid.uuid4())


def get_run_id() -> Optional[str]:
    """Get the current run ID from context."""
    return _run_id_var.get()


def set_run_id(run_id: str) -> contextvars.Token:
    """Set the current run ID in context."""
    return _run_id_var.set(run_id)


def reset_run_id(token: contextvars.Token) -> None:
    """Reset the run ID to its previous value."""
    _run_id_var.reset(token)


class RunContext:
    """
    Context manager for run scoping.

    Usage:
        with RunContext(run.id) as run_id:
            # All logs within this block carry run_id
            logger.info("Executing...")
    """

    def __init__(self, run_id: Optional[str] = None):
        self._run_id = run_id or generate_run_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = set_run_id(self._run_id)
        return self._run_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            reset_run_id(self._token)


class RunIdFilter(logging.Filter):
    """Logging filter that adds run_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id") or record.run_id is None:
            record.run_id = get_run_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    EXTRA_KEYS = (
        "tool_id", "org_id", "action_id", "workflow_id", "node_id",
        "integration_id", "capability_id", "duration_ms", "status",
        "steps_executed",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": getattr(record, "run_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_KEYS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class RunAwareRichHandler(RichHandler):
    """Rich console handler that prefixes messages with the active run id."""

    def render_message(self, record: logging.LogRecord, message: str):
        run_id = getattr(record, "run_id", "-")
        if run_id and run_id != "-":
            message = f"[{run_id[:8]}] {message}"
        return super().render_message(record, message)


class FileRotatingHandler(logging.FileHandler):
    """Simple file handler with size-based rotation."""

    MAX_BYTES = 10 * 1024 * 1024  # 10 MB
    BACKUP_COUNT = 3

    def __init__(self, filename: str, max_bytes: int = None, backup_count: int = None):
        self._base_path = Path(filename)
        self._max_bytes = max_bytes or self.MAX_BYTES
        self._backup_count = backup_count or self.BACKUP_COUNT

        self._base_path.parent.mkdir(parents=True, exist_ok=True)

        super().__init__(str(self._base_path), mode="a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self._base_path.exists() and self._base_path.stat().st_size > self._max_bytes:
                self._rotate()
        except OSError:
            self.handleError(record)

        super().emit(record)

    def _rotate(self) -> None:
        """Rotate log files."""
        self.close()

        for i in range(self._backup_count - 1, 0, -1):
            src = self._base_path.with_suffix(f".{i}.log")
            dst = self._base_path.with_suffix(f".{i + 1}.log")
            if src.exists():
                if dst.exists():
                    dst.unlink()
                src.rename(dst)

        if self._base_path.exists():
            backup = self._base_path.with_suffix(".1.log")
            if backup.exists():
                backup.unlink()
            self._base_path.rename(backup)

        self.stream = open(str(self._base_path), mode="a", encoding="utf-8")


# Global configuration state
_logging_initialized = False
_log_file_path: Optional[Path] = None


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = True,
    force: bool = False,
) -> None:
    """
    Configure the ToolOS logging system.

    Args:
        level: Logging level (default INFO)
        log_dir: Directory for log files (default: ./logs)
        console: Enable Rich console output
        file: Enable JSON file output
        force: Reconfigure even if already initialized
    """
    global _logging_initialized, _log_file_path

    if _logging_initialized and not force:
        return

    root_logger = logging.getLogger("toolos")
    root_logger.setLevel(logging.DEBUG if file else level)
    root_logger.handlers.clear()

    run_filter = RunIdFilter()

    if console:
        console_handler = RunAwareRichHandler(rich_tracebacks=True, show_path=False)
        console_handler.setLevel(level)
        console_handler.addFilter(run_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)

        _log_file_path = log_path / "toolos.log"

        file_handler = FileRotatingHandler(str(_log_file_path))
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(run_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the ToolOS namespace.

    Args:
        name: Logger name (prefixed with 'toolos.' if not already)
    """
    if not name.startswith("toolos"):
        name = f"toolos.{name}"

    return logging.getLogger(name)


def log_run_end(
    run_id: str,
    status: str,
    steps_executed: int = 0,
    error: Optional[str] = None,
) -> None:
    """
    Log the end of a run with summary information.

    This is the RUN_END boundary event for post-mortems.
    """
    logger = get_logger("core.run")

    extra = {
        "run_id": run_id,
        "status": status,
        "steps_executed": steps_executed,
    }

    if status in ("completed", "blocked"):
        logger.info(
            f"RUN_END: status={status}, steps_executed={steps_executed}",
            extra=extra,
        )
    else:
        logger.error(
            f"RUN_END: status={status}, error={error or 'Unknown'}",
            extra=extra,
        )


class ExecutionTracer:
    """
    Collects capability-level events for one action attempt.

    Handed to integration capability executors as their `tracer` argument.
    """

    def __init__(self, action_id: str, capability_id: str):
        self.action_id = action_id
        self.capability_id = capability_id
        self.events: List[Dict[str, Any]] = []
        self._started = time.monotonic()
        self._logger = get_logger("tools.tracer")

    def event(self, name: str, **data: Any) -> None:
        """Record a named event with arbitrary data."""
        elapsed_ms = round((time.monotonic() - self._started) * 1000, 2)
        self.events.append({"name": name, "elapsed_ms": elapsed_ms, "data": data})
        self._logger.debug(f"{self.capability_id}: {name}")

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self._started) * 1000, 2)
