"""Logging and operation metrics for the notestore persistence core.

Every backend round trip (document write, read-back verification,
migration) runs inside ``timed_operation``, which logs a START/END pair at
DEBUG level and folds the outcome into the process-wide ``metrics``
collector. Failures are counted per exception class, so a summary shows
at a glance whether writes are failing on quota, verification or timeouts.
"""
import json
import logging
import time
import uuid
from collections import Counter, defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Default log directory (can be overridden via configure_logging)
DEFAULT_LOG_DIR = Path.home() / ".notestore" / "logs"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
LOG_FILE_NAME = "notestore.log"

_logging_configured = False


def _has_file_handler(target: logging.Logger, log_file: Path) -> bool:
    return any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file.resolve()
        for h in target.handlers
    )


def _has_console_handler(target: logging.Logger) -> bool:
    return any(
        type(h) is logging.StreamHandler for h in target.handlers
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``notestore`` logger hierarchy to a rotating file.

    Calling this again with the same directory does not add a second file
    handler, so the CLI and an embedding application can both call it.

    Args:
        log_dir: Directory for log files. Defaults to ~/.notestore/logs/
        level: Logging level (default: INFO)
        max_bytes: Size at which the log file is rotated (default: 10 MB)
        backup_count: Number of rotated files to keep
        console: Also log to stderr

    Returns:
        Path to the log directory
    """
    global _logging_configured

    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger("notestore")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = []
    if not _has_file_handler(package_logger, log_file):
        handlers.append(RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        ))
    if console and not _has_console_handler(package_logger):
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    _logging_configured = True
    package_logger.info(f"Logging to {log_file} (rotating at {max_bytes} bytes, keeping {backup_count})")
    return log_path


def is_logging_configured() -> bool:
    """Check if file logging has been configured."""
    return _logging_configured


@dataclass
class OperationStats:
    """Running totals for one operation name."""
    count: int = 0
    success_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    error_kinds: Counter = field(default_factory=Counter)
    last_error: Optional[str] = None
    last_error_time: Optional[str] = None

    @property
    def error_count(self) -> int:
        return self.count - self.success_count

    def add(self, duration_ms: float, error: Optional[str], error_kind: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if error_kind is None and error is None:
            self.success_count += 1
            return
        self.error_kinds[error_kind or "Error"] += 1
        self.last_error = error
        self.last_error_time = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Raw totals, as persisted in the metrics file."""
        return {
            "count": self.count,
            "success_count": self.success_count,
            "total_duration_ms": self.total_duration_ms,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "error_kinds": dict(self.error_kinds),
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationStats":
        count = int(data.get("count", 0))
        success_count = int(data.get("success_count", 0))
        error_kinds = Counter(data.get("error_kinds") or {})
        # Files written before error kinds were tracked only carry a count
        if not error_kinds and count > success_count:
            error_kinds["Error"] = count - success_count
        return cls(
            count=count,
            success_count=success_count,
            total_duration_ms=float(data.get("total_duration_ms", 0.0)),
            min_duration_ms=data.get("min_duration_ms"),
            max_duration_ms=float(data.get("max_duration_ms", 0.0)),
            error_kinds=error_kinds,
            last_error=data.get("last_error"),
            last_error_time=data.get("last_error_time"),
        )

    def summary(self) -> Dict[str, Any]:
        """Rounded view for display."""
        avg = self.total_duration_ms / self.count if self.count else 0.0
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(avg, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "error_kinds": dict(self.error_kinds),
            "last_error": self.last_error,
            "last_error_time": self.last_error_time,
        }


class MetricsCollector:
    """Thread-safe per-operation timing and failure counts.

    Blocking file I/O runs in worker threads, so records may arrive from
    outside the event loop thread. With a metrics file the totals survive
    restarts: they are loaded on construction and written by save_metrics().
    """

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else None
        if self._metrics_file is not None:
            self._load_metrics()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
    ) -> None:
        """Record one finished operation.

        Args:
            operation: Operation name, e.g. 'write_document'
            duration_ms: Duration in milliseconds
            success: Whether the operation succeeded
            error: Error message if it failed
            error_kind: Exception class name if it failed
        """
        if not success and error_kind is None and error is None:
            error_kind = "Error"
        with self._lock:
            self._stats[operation].add(
                duration_ms,
                None if success else error,
                None if success else error_kind,
            )

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's stats, keyed by operation name."""
        with self._lock:
            return {op: s.summary() for op, s in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Aggregate statistics across all operations."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            success = sum(s.success_count for s in self._stats.values())
            kinds: Counter = Counter()
            for s in self._stats.values():
                kinds.update(s.error_kinds)
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "total_operations": total,
                "total_success": success,
                "total_errors": total - success,
                "overall_success_rate": success / total if total else 1.0,
                "error_kinds": dict(kinds),
                "operations_tracked": list(self._stats),
            }

    def reset(self) -> None:
        """Drop all totals (useful for testing)."""
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now(timezone.utc)

    def set_metrics_file(self, metrics_file: Union[str, Path]) -> None:
        """Point the collector at a file once the log directory is known."""
        self._metrics_file = Path(metrics_file)

    def _load_metrics(self) -> bool:
        if not self._metrics_file.exists():
            return False
        try:
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
            loaded = {
                op: OperationStats.from_dict(raw)
                for op, raw in data.get("operations", {}).items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return False
        self._stats.update(loaded)
        logger.debug(f"Loaded metrics for {len(loaded)} operation(s) from {self._metrics_file}")
        return True

    def save_metrics(self) -> bool:
        """Write the totals to the metrics file.

        Returns:
            True on success; False on failure or when no file is set.
        """
        if self._metrics_file is None:
            return False
        with self._lock:
            data = {
                "start_time": self._start_time.isoformat(),
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "operations": {op: s.to_dict() for op, s in self._stats.items()},
            }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._metrics_file.with_suffix(".tmp")
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        return True


# Process-wide collector fed by timed_operation
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, log it and record the outcome in ``metrics``.

    The body may ``await``. The exception class name of a failure is
    recorded as its error kind and the exception is re-raised.

    Yields:
        A dict the body can add result details to; they are logged at END.

    Example:
        with timed_operation('write_document', doc_id=doc.id) as op:
            await backend.write_document(doc)
            op['backend'] = backend.name
    """
    correlation_id = uuid.uuid4().hex[:8]
    result_info: Dict[str, Any] = {}
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    start = time.perf_counter()
    error: Optional[BaseException] = None
    try:
        yield result_info
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        if error is None:
            metrics.record_operation(operation, duration_ms, True)
            status = "OK"
        else:
            metrics.record_operation(
                operation, duration_ms, False, str(error), type(error).__name__
            )
            status = f"{type(error).__name__}: {error}"
        result_str = ", ".join(f"{k}={v}" for k, v in result_info.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{status}] {result_str}"
        )
