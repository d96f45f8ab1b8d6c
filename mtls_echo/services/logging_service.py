"""
Logging and monitoring service for the mutual-TLS echo service.
"""
import json
import logging
import logging.handlers
import sys
import threading
import time
import traceback
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List, BinaryIO


CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class LogEntry:
    """Structured log entry for JSON logging."""
    timestamp: str
    level: str
    logger_name: str
    message: str
    module: str
    function: str
    line_number: int
    thread_id: int
    process_id: int
    extra_data: Optional[Dict[str, Any]] = None
    exception_info: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceMetric:
    """Performance metric data structure."""
    operation: str
    duration_ms: float
    timestamp: str
    success: bool
    error_message: Optional[str] = None
    extra_data: Optional[Dict[str, Any]] = None


@dataclass
class ErrorMetric:
    """Error tracking metric data structure."""
    error_type: str
    error_message: str
    timestamp: str
    extra_data: Optional[Dict[str, Any]] = None


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created).isoformat(),
            level=record.levelname,
            logger_name=record.name,
            message=record.getMessage(),
            module=record.module,
            function=record.funcName,
            line_number=record.lineno,
            thread_id=record.thread,
            process_id=record.process,
            extra_data=getattr(record, 'extra_data', None)
        )

        if record.exc_info:
            log_entry.exception_info = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(asdict(log_entry), default=str)


class PerformanceMonitor:
    """Timing of handshakes and sessions, bounded to the most recent entries."""

    def __init__(self, max_metrics: int = 1000):
        self.metrics = deque(maxlen=max_metrics)
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def measure_operation(self, operation: str, extra_data: Optional[Dict[str, Any]] = None):
        """Context manager to measure operation performance."""
        start_time = time.perf_counter()
        success = True
        error_message = None

        try:
            yield
        except Exception as e:
            success = False
            error_message = str(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

            metric = PerformanceMetric(
                operation=operation,
                duration_ms=duration_ms,
                timestamp=datetime.now().isoformat(),
                success=success,
                error_message=error_message,
                extra_data=extra_data
            )

            with self.lock:
                self.metrics.append(metric)

            self.logger.debug(
                f"Performance metric: {operation} {duration_ms:.1f}ms",
                extra={
                    'extra_data': {
                        'operation': operation,
                        'duration_ms': duration_ms,
                        'success': success,
                        'error_message': error_message,
                        **(extra_data if extra_data else {})
                    }
                }
            )

    def get_metrics(self, operation: Optional[str] = None) -> List[PerformanceMetric]:
        """Get performance metrics with optional filtering."""
        with self.lock:
            filtered_metrics = list(self.metrics)

        if operation:
            filtered_metrics = [m for m in filtered_metrics if m.operation == operation]

        return filtered_metrics

    def get_operation_stats(self, operation: str) -> Dict[str, Any]:
        """Get statistics for a specific operation."""
        metrics = self.get_metrics(operation=operation)

        if not metrics:
            return {}

        durations = [m.duration_ms for m in metrics]
        success_count = sum(1 for m in metrics if m.success)

        return {
            'operation': operation,
            'total_calls': len(metrics),
            'success_count': success_count,
            'failure_count': len(metrics) - success_count,
            'success_rate': success_count / len(metrics),
            'avg_duration_ms': sum(durations) / len(durations),
            'min_duration_ms': min(durations),
            'max_duration_ms': max(durations)
        }


class ErrorTracker:
    """Counts per-connection failures by error type."""

    def __init__(self, max_errors: int = 1000):
        self.errors = deque(maxlen=max_errors)
        self.counts: Dict[str, int] = {}
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def track_error(self, error: Exception, extra_data: Optional[Dict[str, Any]] = None):
        """Track an error occurrence."""
        error_metric = ErrorMetric(
            error_type=type(error).__name__,
            error_message=str(error),
            timestamp=datetime.now().isoformat(),
            extra_data=extra_data
        )

        with self.lock:
            self.errors.append(error_metric)
            self.counts[error_metric.error_type] = self.counts.get(error_metric.error_type, 0) + 1

        self.logger.debug(
            f"Error tracked: {error_metric.error_type}",
            extra={'extra_data': asdict(error_metric)}
        )

    def get_errors(self, error_type: Optional[str] = None) -> List[ErrorMetric]:
        """Get recent error metrics with optional filtering."""
        with self.lock:
            filtered_errors = list(self.errors)

        if error_type:
            filtered_errors = [e for e in filtered_errors if e.error_type == error_type]

        return filtered_errors

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary statistics."""
        with self.lock:
            error_types = dict(self.counts)

        if not error_types:
            return {'total_errors': 0, 'error_types': {}}

        return {
            'total_errors': sum(error_types.values()),
            'error_types': error_types,
            'most_common_error': max(error_types.items(), key=lambda x: x[1])[0]
        }


class ConsoleReporter:
    """Writes status lines and echoed payloads to standard output.

    Diagnostics go through ``logging`` to standard error; this is the
    user-facing channel.
    """

    def __init__(self, stream: Optional[BinaryIO] = None):
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self) -> BinaryIO:
        return self._stream if self._stream is not None else sys.stdout.buffer

    def status(self, message: str):
        """Print one human-readable status line."""
        self.payload(f"{message}\n".encode("utf-8"))

    def payload(self, data: bytes):
        """Print raw bytes exactly as received."""
        with self._lock:
            self.stream.write(data)
            self.stream.flush()


class LoggingService:
    """Logging configuration plus the process-wide monitors."""

    def __init__(self, config):
        """Initialize logging service with configuration."""
        self.config = config
        self.performance_monitor = PerformanceMonitor()
        self.error_tracker = ErrorTracker()
        self._setup_logging()
        self.logger = logging.getLogger(__name__)
        self.logger.debug("Logging service initialized")

    def _setup_logging(self):
        """Setup console and optional file logging."""
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger.setLevel(log_level)

        json_formatter = JSONFormatter()

        # Diagnostics go to stderr; stdout carries status lines and payloads
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(json_formatter if self.config.log_json else logging.Formatter(CONSOLE_FORMAT))
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

        if self.config.log_file_path:
            Path(self.config.log_file_path).parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                filename=self.config.log_file_path,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(json_formatter)
            file_handler.setLevel(log_level)
            root_logger.addHandler(file_handler)

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get statistics for every measured operation."""
        operations = set(m.operation for m in self.performance_monitor.get_metrics())
        return {
            op: self.performance_monitor.get_operation_stats(op)
            for op in operations
        }

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary for the life of the process."""
        return self.error_tracker.get_error_summary()
