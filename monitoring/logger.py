"""
Structured logging for application, security and audit events.
Categorized, date-partitioned JSON log files with per-category retention.

Writes go through a queue drained by a background listener so the request
path never waits on disk I/O. A failed write falls back to stderr and is
otherwise dropped.
"""

import logging
import json
import queue
import sys
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import TimedRotatingFileHandler, QueueHandler, QueueListener

from config import settings

# Days of daily files kept per category.
RETENTION_DAYS: Dict[str, int] = {
    "app": 30,
    "error": 30,
    "security": 90,
    "security-alerts": 90,
    "audit": 365,
}

SERVICE_NAME = "storefront"


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    def __init__(self, environment: str = "development"):
        super().__init__()
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        event_data = getattr(record, 'event_data', {})

        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            **event_data,
            'environment': self.environment,
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'stack_trace': self.formatException(record.exc_info)
            }

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def _daily_file_handler(log_dir: Path, name: str, level: int, formatter: logging.Formatter) -> TimedRotatingFileHandler:
    """Daily-rotated file handler; rotated files carry a YYYY-MM-DD suffix."""
    handler = TimedRotatingFileHandler(
        log_dir / f"{name}.log",
        when='midnight',
        interval=1,
        backupCount=RETENTION_DAYS[name],
        encoding='utf-8',
        delay=True,
        utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


class LogSink:
    """
    Durable sink for the three log categories.

    - ``app``: general application events (plus an ``error`` file for ERROR+)
    - ``security``: security events, with warnings and above mirrored to
      ``security-alerts``
    - ``audit``: audit trail, kept for a year
    """

    CATEGORIES = ("app", "security", "audit")

    def __init__(
        self,
        log_dir: Optional[str] = None,
        environment: Optional[str] = None,
        file_logging: Optional[bool] = None,
        console: Optional[bool] = None,
        level: Optional[str] = None,
    ):
        self.environment = environment or settings.environment
        self.log_dir = Path(log_dir or settings.log_dir)
        file_logging = settings.file_logging_enabled if file_logging is None else file_logging
        if console is None:
            console = not settings.is_testing()
        log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

        self.formatter = StructuredFormatter(self.environment)
        self._loggers: Dict[str, logging.Logger] = {}
        self._listeners: List[QueueListener] = []
        self._handlers: List[logging.Handler] = []

        if file_logging:
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                print(f"[LOG-SINK] Cannot create log directory {self.log_dir}: {e}", file=sys.stderr)
                file_logging = False

        for category in self.CATEGORIES:
            handlers = self._build_handlers(category, file_logging, console)
            self._handlers.extend(handlers)

            # Loggers are created unregistered so that several sinks (one per
            # app instance) never share handlers.
            category_logger = logging.Logger(f"{SERVICE_NAME}.{category}", level=log_level if category == "app" else logging.INFO)
            category_logger.propagate = False

            log_queue: queue.SimpleQueue = queue.SimpleQueue()
            category_logger.addHandler(QueueHandler(log_queue))
            listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
            listener.start()

            self._loggers[category] = category_logger
            self._listeners.append(listener)

    def _build_handlers(self, category: str, file_logging: bool, console: bool) -> List[logging.Handler]:
        handlers: List[logging.Handler] = []

        if console and category != "audit":
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(self.formatter)
            console_handler.setLevel(logging.INFO)
            handlers.append(console_handler)

        if not file_logging:
            return handlers

        if category == "app":
            handlers.append(_daily_file_handler(self.log_dir, "app", logging.INFO, self.formatter))
            handlers.append(_daily_file_handler(self.log_dir, "error", logging.ERROR, self.formatter))
        elif category == "security":
            handlers.append(_daily_file_handler(self.log_dir, "security", logging.INFO, self.formatter))
            handlers.append(_daily_file_handler(self.log_dir, "security-alerts", logging.WARNING, self.formatter))
        else:
            handlers.append(_daily_file_handler(self.log_dir, "audit", logging.INFO, self.formatter))

        return handlers

    def write(self, category: str, level: int, message: str, payload: Dict[str, Any]) -> None:
        """Best-effort structured write; never raises."""
        try:
            event_data = {'service': f"{SERVICE_NAME}-{category}", 'category': category, **payload}
            self._loggers[category].log(level, message, extra={'event_data': event_data})
        except Exception as e:
            try:
                print(f"[LOG-SINK] Failed to write {category} log entry '{message}': {e}", file=sys.stderr)
            except Exception:
                pass

    def app(self, level: int, message: str, /, **payload: Any) -> None:
        self.write("app", level, message, payload)

    def security(self, level: int, message: str, /, **payload: Any) -> None:
        self.write("security", level, message, payload)

    def audit(self, message: str, /, **payload: Any) -> None:
        self.write("audit", logging.INFO, message, payload)

    def flush(self) -> None:
        """Drain queued records to their handlers."""
        for listener in self._listeners:
            listener.stop()
        for handler in self._handlers:
            handler.flush()
        for listener in self._listeners:
            listener.start()

    def close(self) -> None:
        """Stop background listeners and close files."""
        for listener in self._listeners:
            try:
                listener.stop()
            except AttributeError:
                # Already stopped.
                pass
        for handler in self._handlers:
            handler.close()
        self._listeners = []


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger used by module-level ``logging.getLogger`` calls."""
    root = logging.getLogger()
    log_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    root.setLevel(log_level)

    if any(getattr(h, '_storefront_console', False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s', datefmt='%H:%M:%S'))
    handler._storefront_console = True
    root.addHandler(handler)
