"""Observability utilities for the learning-notes store.

Rotating log files under ``~/.memory-notes/logs`` and per-operation timing
metrics that survive restarts in ``~/.memory-notes/metrics.json``. The
service layer wraps each public operation in ``timed_operation`` (or the
``traced`` decorator), which feeds the module-level ``metrics`` collector.
"""
import functools
import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from memory_notes.config import DEFAULT_DATA_DIR, config

logger = logging.getLogger(__name__)

# Every module logger sits below this one
ROOT_LOGGER_NAME = "memory_notes"
LOG_FILE_NAME = "memory-notes.log"

DEFAULT_LOG_DIR = DEFAULT_DATA_DIR / "logs"
DEFAULT_METRICS_FILE = DEFAULT_DATA_DIR / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar("F", bound=Callable[..., Any])


def _is_console_handler(handler: logging.Handler) -> bool:
    # FileHandler subclasses StreamHandler
    return isinstance(handler, logging.StreamHandler) and not isinstance(
        handler, logging.FileHandler
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Attach a rotating file handler (and optionally stderr) to the package logger.

    Calling this again does not stack duplicate handlers. Console output
    goes to stderr so the CLI's JSON on stdout stays clean.

    Args:
        log_dir: Directory for ``memory-notes.log``. Defaults to
            ``config.log_dir`` and then ``~/.memory-notes/logs``.
        level: Level for the package logger and its handlers.
        max_bytes: Size at which the log file rotates.
        backup_count: Rotated files kept.
        console: Also log to stderr.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else (config.log_dir or DEFAULT_LOG_DIR)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    wanted = []
    if not any(isinstance(h, RotatingFileHandler) for h in package_logger.handlers):
        wanted.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not any(_is_console_handler(h) for h in package_logger.handlers):
        wanted.append(logging.StreamHandler())

    for handler in wanted:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.debug(
        f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})"
    )
    return log_path


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class OperationMetrics:
    """Running totals for one operation name."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def record(self, duration_ms: float, success: bool, error: Optional[str]) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if success:
            self.success_count += 1
            return
        self.error_count += 1
        self.last_error = error
        self.last_error_time = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        """Rounded, derived view used by get_metrics()."""
        count = self.count or 1
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / count if self.count else 0,
            "avg_duration_ms": round(self.total_duration_ms / count, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }

    def to_json(self) -> Dict[str, Any]:
        """Raw totals for the metrics file."""
        data = asdict(self)
        data["last_error_time"] = (
            self.last_error_time.isoformat() if self.last_error_time else None
        )
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "OperationMetrics":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["last_error_time"] = _parse_time(values.get("last_error_time"))
        return cls(**values)


class MetricsCollector:
    """Thread-safe per-operation metrics, optionally persisted as JSON.

    Args:
        metrics_file: Where totals are stored. Defaults to
            ``~/.memory-notes/metrics.json``.
        auto_save_interval: Write the file every N recorded operations
            (0 disables automatic saves).
        persist: When False the file is never read or written.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
        persist: bool = True,
    ):
        self._metrics: Dict[str, OperationMetrics] = {}
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._persist = persist
        self._auto_save_interval = auto_save_interval if persist else 0
        self._unsaved = 0

        if persist:
            self._load_metrics()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Add one finished operation to the totals for its name."""
        with self._lock:
            self._metrics.setdefault(operation, OperationMetrics()).record(
                duration_ms, success, error
            )
            self._unsaved += 1
            if self._auto_save_interval and self._unsaved >= self._auto_save_interval:
                self._save_metrics_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's metrics, keyed by operation name."""
        with self._lock:
            return {name: m.snapshot() for name, m in self._metrics.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations."""
        with self._lock:
            total = sum(m.count for m in self._metrics.values())
            succeeded = sum(m.success_count for m in self._metrics.values())
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._start_time
                ).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": total - succeeded,
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._metrics),
            }

    def reset(self) -> None:
        """Forget every recorded operation."""
        with self._lock:
            self._metrics.clear()
            self._start_time = datetime.now(timezone.utc)
            self._unsaved = 0

    def save_metrics(self) -> bool:
        """Write the totals to the metrics file now. Returns True on success."""
        with self._lock:
            return self._save_metrics_unlocked()

    def _load_metrics(self) -> bool:
        if not self._metrics_file.exists():
            return False
        try:
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
            start_time = _parse_time(data.get("start_time"))
            loaded = {
                name: OperationMetrics.from_json(values)
                for name, values in data.get("operations", {}).items()
            }
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return False

        self._metrics.update(loaded)
        if start_time:
            self._start_time = start_time
        logger.debug(f"Loaded metrics for {len(loaded)} operations from {self._metrics_file}")
        return True

    def _save_metrics_unlocked(self) -> bool:
        # caller holds self._lock
        if not self._persist:
            return False
        payload = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {name: m.to_json() for name, m in self._metrics.items()},
        }
        tmp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True


# Global metrics collector instance
metrics = MetricsCollector(persist=config.metrics_enabled)


@contextmanager
def timed_operation(operation: str, **context):
    """Time a block, record it in ``metrics`` and log start/end at DEBUG.

    Yields a dict the caller may fill with result details (for example
    ``op["result_count"] = len(notes)``); they are appended to the end
    log line. Exceptions are recorded as failures and re-raised.
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    described = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] {operation} started ({described})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)
        outcome = "ok" if error is None else f"failed: {error}"
        extra = " ".join(f"{k}={v}" for k, v in details.items())
        logger.debug(
            f"[{correlation_id}] {operation} {outcome} in {elapsed_ms:.2f}ms {extra}".rstrip()
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator form of ``timed_operation``.

    Keyword arguments named ``note_id``, ``repo_key`` or ``query`` are
    included in the log context; list and dict results are counted.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {
                key: str(kwargs[key])[:50]
                for key in ("note_id", "repo_key", "query")
                if kwargs.get(key) is not None
            }
            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if isinstance(result, (list, dict)):
                    op["result_count"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
