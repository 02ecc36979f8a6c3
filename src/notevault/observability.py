"""Observability for NoteVault: log files, operation timing and metrics.

Vault operations are wrapped with :func:`traced` (or the
:func:`timed_operation` context manager), which tags each call with a
short correlation ID, logs its start and end on the ``notevault.observability``
logger and feeds a process-wide :class:`MetricsCollector`.
"""
import functools
import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".notevault" / "logs"
LOG_FILE_NAME = "notevault.log"

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Keyword arguments worth echoing into the trace context
_TRACED_KWARGS = ("note_id", "folder_id", "title", "query")

F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Send the ``notevault`` logger hierarchy to a rotating log file.

    Calling this again with the same directory does not add a second file
    handler.

    Args:
        log_dir: Directory for ``notevault.log``. Defaults to ~/.notevault/logs/
        level: Level for the package logger and its handlers
        max_bytes: Size at which the log file is rotated
        backup_count: Rotated files to keep
        console: Also log to stderr

    Returns:
        The log directory
    """
    directory = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    log_file = (directory / LOG_FILE_NAME).resolve()

    package_logger = logging.getLogger("notevault")
    package_logger.setLevel(level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)

    handlers = []
    if not _has_file_handler(package_logger, log_file):
        handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not _has_console_handler(package_logger):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.debug(f"Logging to {log_file} at {logging.getLevelName(level)}")
    return directory


def _has_file_handler(target: logging.Logger, log_file: Path) -> bool:
    return any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file
        for h in target.handlers
    )


def _has_console_handler(target: logging.Logger) -> bool:
    # RotatingFileHandler is itself a StreamHandler subclass
    return any(type(h) is logging.StreamHandler for h in target.handlers)


@dataclass
class OperationStats:
    """Running totals for one operation name."""

    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    fastest_ms: Optional[float] = None
    slowest_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def add(self, duration_ms: float, error: Optional[str] = None, failed: bool = False) -> None:
        self.count += 1
        self.total_ms += duration_ms
        if self.fastest_ms is None or duration_ms < self.fastest_ms:
            self.fastest_ms = duration_ms
        self.slowest_ms = max(self.slowest_ms, duration_ms)
        if failed:
            self.errors += 1
            self.last_error = error
            self.last_error_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "success_count": self.count - self.errors,
            "error_count": self.errors,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.fastest_ms or 0.0, 2),
            "max_duration_ms": round(self.slowest_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_at.isoformat() if self.last_error_at else None
            ),
        }


class MetricsCollector:
    """Per-operation call counts, failures and durations.

    Safe to update from several threads; readers get plain-dict snapshots.
    """

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._guard = threading.Lock()
        self._since = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._guard:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.add(duration_ms, error=error, failed=not success)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's totals, keyed by operation name."""
        with self._guard:
            return {name: stats.to_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        with self._guard:
            uptime = datetime.now(timezone.utc) - self._since
            return {
                "uptime_seconds": uptime.total_seconds(),
                "total_operations": sum(s.count for s in self._stats.values()),
                "total_errors": sum(s.errors for s in self._stats.values()),
                "operations_tracked": sorted(self._stats),
            }

    def save_metrics(self, path: Union[str, Path]) -> Path:
        """Write summary and per-operation totals to ``path`` as JSON.

        The file is written next to its final name and moved into place.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "summary": self.get_summary(),
            "operations": self.get_metrics(),
        }
        staging = path.with_suffix(".tmp")
        staging.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        staging.replace(path)
        logger.debug(f"Saved metrics for {len(payload['operations'])} operations to {path}")
        return path

    def reset(self) -> None:
        with self._guard:
            self._stats.clear()
            self._since = datetime.now(timezone.utc)


# Process-wide collector fed by timed_operation and traced
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time the enclosed block and record it under ``operation``.

    Exceptions are recorded as failures and re-raised unchanged.

    Yields:
        A dict the block may fill with result details for the completion log line.

    Example:
        with timed_operation("search", query="plan") as op:
            hits = run_search()
            op["result_count"] = len(hits)
    """
    trace_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    described = " ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{trace_id}] {operation} started {described}".rstrip())

    started = time.perf_counter()
    failure: Optional[BaseException] = None
    try:
        yield details
    except Exception as e:
        failure = e
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        error = str(failure) if failure is not None else None
        metrics.record_operation(operation, elapsed_ms, failure is None, error)
        outcome = "ok" if failure is None else f"failed: {error}"
        extra = " ".join(f"{k}={v}" for k, v in details.items())
        logger.debug(
            f"[{trace_id}] {operation} {outcome} in {elapsed_ms:.2f}ms {extra}".rstrip()
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorate a function so every call runs inside :func:`timed_operation`.

    Args:
        operation_name: Name to record under. Defaults to the function name.
    """

    def decorate(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def traced_call(*args, **kwargs):
            context = {
                key: str(kwargs[key])[:50]
                for key in _TRACED_KWARGS
                if kwargs.get(key) is not None
            }
            # Service methods usually take the identity as first positional
            if not context and len(args) > 1 and not isinstance(args[1], (bytes, dict)):
                context["arg"] = str(args[1])[:50]

            with timed_operation(name, **context) as details:
                result = func(*args, **kwargs)
                if isinstance(result, (list, tuple, set, dict)):
                    details["result_count"] = len(result)
                return result

        return traced_call  # type: ignore[return-value]

    return decorate
