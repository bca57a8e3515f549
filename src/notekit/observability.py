"""Logging setup and lightweight operation metrics for notekit.

`configure_logging` attaches a rotating file handler (and optionally a
console handler) to the `notekit` logger hierarchy. `traced` and
`timed_operation` time service calls and feed the process-wide
`metrics` collector.
"""
import functools
import inspect
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

ROOT_LOGGER_NAME = "notekit"
DEFAULT_LOG_DIR = Path.home() / ".notekit" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar("F", bound=Callable[..., Any])

_file_handler: Optional[RotatingFileHandler] = None


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Configure rotating file logging for the notekit logger hierarchy.

    Calling it again replaces the previous file handler, so the CLI can
    reconfigure the level without stacking handlers.

    Args:
        log_dir: Directory for log files. Defaults to ~/.notekit/logs/
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation
        backup_count: Number of rotated files to keep
        console: Also log to stderr

    Returns:
        Path to the log directory
    """
    global _file_handler

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if _file_handler is not None:
        root_logger.removeHandler(_file_handler)
        _file_handler.close()

    log_file = log_path / "notekit.log"
    _file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    _file_handler.setLevel(level)
    _file_handler.setFormatter(formatter)
    root_logger.addHandler(_file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.debug(f"Logging configured: {log_file}")
    return log_path


@dataclass
class OperationMetrics:
    """Metrics for a single operation type."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class MetricsCollector:
    """Thread-safe per-operation counters and timings, kept in memory."""

    def __init__(self):
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            m = self._metrics[operation]
            m.count += 1
            m.total_duration_ms += duration_ms
            m.min_duration_ms = min(m.min_duration_ms, duration_ms)
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)
            if success:
                m.success_count += 1
            else:
                m.error_count += 1
                m.last_error = error
                m.last_error_time = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every tracked operation."""
        with self._lock:
            result = {}
            for op, m in self._metrics.items():
                min_dur = m.min_duration_ms if m.min_duration_ms != float("inf") else 0
                result[op] = {
                    "count": m.count,
                    "success_count": m.success_count,
                    "error_count": m.error_count,
                    "success_rate": m.success_count / m.count if m.count > 0 else 0,
                    "avg_duration_ms": round(m.total_duration_ms / m.count, 2)
                    if m.count > 0
                    else 0,
                    "min_duration_ms": round(min_dur, 2),
                    "max_duration_ms": round(m.max_duration_ms, 2),
                    "last_error": m.last_error,
                    "last_error_time": m.last_error_time.isoformat()
                    if m.last_error_time
                    else None,
                }
            return result

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate counts across all operations."""
        with self._lock:
            total_ops = sum(m.count for m in self._metrics.values())
            total_success = sum(m.success_count for m in self._metrics.values())
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": total_ops,
                "total_success": total_success,
                "total_errors": total_ops - total_success,
                "overall_success_rate": total_success / total_ops
                if total_ops > 0
                else 1.0,
                "operations_tracked": sorted(self._metrics.keys()),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)


# Global metrics collector instance
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Context manager for timing and logging operations.

    Yields a dictionary where the caller can store result info.

    Example:
        with timed_operation("search_notes", query="milk") as op:
            results = await repository.search("milk")
            op["result_count"] = len(results)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {"correlation_id": correlation_id}

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error_msg = None
    success = True
    try:
        yield result_info
    except Exception as e:
        success = False
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        metrics.record_operation(operation, duration_ms, success, error_msg)
        result_str = ", ".join(
            f"{k}={v}" for k, v in result_info.items() if k != "correlation_id"
        )
        status = "OK" if success else f"ERROR: {error_msg}"
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )


def _call_context(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    if "note_id" in kwargs:
        return {"note_id": kwargs["note_id"]}
    if "title" in kwargs:
        return {"title": kwargs["title"][:50] if kwargs["title"] else None}
    return {}


def _record_result(op: Dict[str, Any], result: Any) -> None:
    if isinstance(result, (list, tuple)):
        op["result_count"] = len(result)
    elif result is not None:
        op["has_result"] = True


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator for automatic operation tracing.

    Works on plain functions and coroutine functions alike; for
    coroutines the timing covers the awaited call.

    Example:
        @traced("create_note")
        async def create_note(self, title: str, content: str) -> Note:
            ...
    """

    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with timed_operation(op_name, **_call_context(kwargs)) as op:
                    result = await func(*args, **kwargs)
                    _record_result(op, result)
                    return result

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(op_name, **_call_context(kwargs)) as op:
                result = func(*args, **kwargs)
                _record_result(op, result)
                return result

        return wrapper  # type: ignore

    return decorator
