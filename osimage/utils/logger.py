#!/usr/bin/env python3
"""
utils/logger.py
Logging System for the OS image builder
Console, rotating file and JSON-lines output behind one Logger object that is
created at startup and handed to every disk, partition and filesystem
"""

import json
import logging
import logging.handlers
import os
import sys
import traceback
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, NamedTuple, Optional


DEFAULT_LOGGER_NAME = "osimage"

# Attributes every LogRecord carries; anything else came in through `extra`
_RECORD_ATTRIBUTES = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'asctime', 'taskName'
])

DEFAULT_OPTIONS = {
    'log_level': 'INFO',
    'console_logging': True,
    'file_logging': False,
    'error_file_logging': False,
    'structured_logging': False,
    'use_colors': True,
    'include_thread': False,
    'log_directory': 'logs',
    'max_file_size': 10 * 1024 * 1024,
    'backup_count': 5
}


class LogLevel(Enum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def from_name(cls, name: str) -> 'LogLevel':
        """Resolve a level from its (case-insensitive) name"""
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(f"Unknown log level: {name}")


class LogFormatter(logging.Formatter):
    """Text lines, optionally colored per level, or one JSON object per record"""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[91m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True, include_thread: bool = False, structured: bool = False):
        self.use_colors = use_colors and sys.stderr.isatty()
        self.structured = structured
        thread = ' [%(threadName)s]' if include_thread else ''
        super().__init__(None if structured else
                         f'%(asctime)s [%(levelname)8s]{thread} %(name)s:%(lineno)d - %(message)s')

    def format(self, record):
        if self.structured:
            return json.dumps(self._record_fields(record), default=str)

        line = super().format(record)
        color = self.LEVEL_COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{line}{self.RESET}" if color else line

    @staticmethod
    def _record_fields(record) -> Dict[str, Any]:
        fields = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }
        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            fields['exception'] = {
                'type': exc_type.__name__,
                'message': str(exc_value),
                'traceback': traceback.format_exception(*record.exc_info),
            }
        extra = {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRIBUTES}
        if extra:
            fields['extra'] = extra
        return fields


class PerformanceLogger:
    """Times a build step; usable as a context manager"""

    def __init__(self, logger: 'Logger', operation: str, level: LogLevel = LogLevel.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start_time = None
        self.duration = None

    def __enter__(self):
        self.start_time = datetime.now()
        self.logger.log(self.level.value, f"Starting {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = (datetime.now() - self.start_time).total_seconds()
        if exc_type is None:
            self.logger.log(self.level.value, f"Completed {self.operation} in {self.duration:.3f}s")
        else:
            self.logger.error(f"Failed {self.operation} after {self.duration:.3f}s: {exc_val}")
        return False


class _HandlerSpec(NamedTuple):
    option: str            # config switch enabling the handler
    filename: Optional[str]  # suffix of the log file; None for the console
    error_only: bool
    formatter: Callable[[Dict[str, Any]], LogFormatter]


_HANDLER_SPECS = (
    _HandlerSpec('console_logging', None, False,
                 lambda o: LogFormatter(o['use_colors'], o['include_thread'])),
    _HandlerSpec('file_logging', '', False,
                 lambda o: LogFormatter(False, o['include_thread'])),
    _HandlerSpec('error_file_logging', '_errors', True,
                 lambda o: LogFormatter(False, True)),
    _HandlerSpec('structured_logging', '_structured', False,
                 lambda o: LogFormatter(structured=True)),
)


class Logger:
    """
    Logging facade handed to every component that reports progress.

    A Logger built without a config attaches no handlers of its own; records
    still propagate to the root logger, so an application (or pytest) decides
    where they end up. setup_logging() builds the configured instance the CLI
    threads through the disk, partition and filesystem objects.
    """

    def __init__(self, name: str = DEFAULT_LOGGER_NAME, config: Optional[Dict[str, Any]] = None):
        self.name = name
        self.config = config or {}
        self._logger = logging.getLogger(name)
        self._handlers: List[logging.Handler] = []
        if config is not None:
            self._install_handlers({**DEFAULT_OPTIONS, **config})

    def _install_handlers(self, options: Dict[str, Any]):
        level = LogLevel.from_name(str(options['log_level'])).value
        self._logger.setLevel(level)

        # Handlers left by an earlier instance with the same name are replaced
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        for spec in _HANDLER_SPECS:
            if not options.get(spec.option):
                continue
            if spec.filename is None:
                handler = logging.StreamHandler(sys.stderr)
            else:
                log_dir = Path(options['log_directory'])
                log_dir.mkdir(parents=True, exist_ok=True)
                handler = logging.handlers.RotatingFileHandler(
                    log_dir / f"{self.name.lower()}{spec.filename}.log",
                    maxBytes=options['max_file_size'],
                    backupCount=options['backup_count'])
            handler.setLevel(logging.ERROR if spec.error_only else level)
            handler.setFormatter(spec.formatter(options))
            self._logger.addHandler(handler)
            self._handlers.append(handler)

    def debug(self, message: str, **kwargs):
        self._logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs):
        self._logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs):
        self._logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs):
        self._logger.error(message, exc_info=exc_info, extra=kwargs)

    def log(self, level: int, message: str, **kwargs):
        self._logger.log(level, message, extra=kwargs)

    def performance(self, operation: str, level: LogLevel = LogLevel.INFO) -> PerformanceLogger:
        return PerformanceLogger(self, operation, level)

    def child(self, suffix: str) -> 'Logger':
        """Logger for a sub-component; shares this logger's handlers through propagation"""
        return Logger(f"{self.name}.{suffix}")

    def close(self):
        """Detach and close the handlers this instance installed"""
        for handler in self._handlers:
            self._logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def log_system_info(self):
        """Log host information ahead of an image build"""
        import platform
        import psutil

        self.info("System Information:")
        self.info(f"  Platform: {platform.platform()}")
        self.info(f"  Python: {platform.python_version()}")
        self.info(f"  CPU Count: {psutil.cpu_count()}")
        self.info(f"  Memory: {psutil.virtual_memory().total / (1024**3):.1f} GB")
        self.info(f"  Disk Space: {psutil.disk_usage(os.getcwd()).free / (1024**3):.1f} GB free")


def setup_logging(config: Optional[Dict[str, Any]] = None) -> Logger:
    """Build the application logger once at startup"""
    return Logger(DEFAULT_LOGGER_NAME, {**DEFAULT_OPTIONS, **(config or {})})
