"""Centralized logging configuration for the accident monitor."""

import logging
import logging.handlers
import os
import sys
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path

LOGGER_PREFIX = "safeguard"


class StructuredFormatter(logging.Formatter):
    """Custom formatter that adds structured information to log records."""

    def __init__(self, include_context: bool = True):
        self.include_context = include_context
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured information."""
        base_format = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s"

        if self.include_context and hasattr(record, 'context'):
            context_str = " | ".join([f"{k}={v}" for k, v in record.context.items()])
            base_format += f" | Context: {context_str}"

        if record.levelno >= logging.ERROR and record.exc_info:
            base_format += " | %(pathname)s:%(lineno)d"

        formatter = logging.Formatter(base_format)
        return formatter.format(record)


class ContextFilter(logging.Filter):
    """Filter that adds session context to log records."""

    def __init__(self, component_name: Optional[str] = None):
        super().__init__()
        self.component_name = component_name
        self.process_id = os.getpid()

    def filter(self, record: logging.LogRecord) -> bool:
        record.process_id = self.process_id

        if self.component_name:
            record.component = self.component_name

        record.timestamp_ms = datetime.now().timestamp() * 1000

        return True


class LoggingManager:
    """Centralized logging management for the accident monitor."""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        # Log files
        self.main_log_file = self.log_dir / "safeguard.log"
        self.error_log_file = self.log_dir / "errors.log"
        self.incident_log_file = self.log_dir / "incidents.log"

        self.log_level = logging.INFO
        self.max_log_size = 10 * 1024 * 1024  # 10MB
        self.backup_count = 5

        self._handlers = []
        self._incident_handler: Optional[logging.Handler] = None

        self._setup_root_logger()

    def _setup_root_logger(self) -> None:
        """Attach console and rotating file handlers to the package logger."""
        package_logger = logging.getLogger(LOGGER_PREFIX)
        package_logger.setLevel(self.log_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(StructuredFormatter(include_context=False))

        main_file_handler = logging.handlers.RotatingFileHandler(
            self.main_log_file,
            maxBytes=self.max_log_size,
            backupCount=self.backup_count
        )
        main_file_handler.setLevel(logging.DEBUG)
        main_file_handler.setFormatter(StructuredFormatter(include_context=True))

        error_file_handler = logging.handlers.RotatingFileHandler(
            self.error_log_file,
            maxBytes=self.max_log_size,
            backupCount=self.backup_count
        )
        error_file_handler.setLevel(logging.ERROR)
        error_file_handler.setFormatter(StructuredFormatter(include_context=True))

        for handler in (console_handler, main_file_handler, error_file_handler):
            package_logger.addHandler(handler)
            self._handlers.append(handler)

        package_logger.info("Logging system initialized")

    def get_incident_logger(self) -> logging.Logger:
        """Get logger for incident lifecycle audit lines."""
        logger = logging.getLogger(f"{LOGGER_PREFIX}.incidents")

        if self._incident_handler is None:
            handler = logging.handlers.RotatingFileHandler(
                self.incident_log_file,
                maxBytes=self.max_log_size,
                backupCount=self.backup_count
            )
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter("%(asctime)s | %(message)s"))
            logger.addHandler(handler)
            self._incident_handler = handler

        return logger

    def set_log_level(self, level: int) -> None:
        """Set the package log level."""
        self.log_level = level
        logging.getLogger(LOGGER_PREFIX).setLevel(level)

    def shutdown(self) -> None:
        """Detach and close every handler this manager installed."""
        package_logger = logging.getLogger(LOGGER_PREFIX)
        for handler in self._handlers:
            package_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

        if self._incident_handler is not None:
            logging.getLogger(f"{LOGGER_PREFIX}.incidents").removeHandler(self._incident_handler)
            self._incident_handler.close()
            self._incident_handler = None

    def get_log_stats(self) -> Dict[str, Any]:
        """Get logging statistics."""
        stats = {
            "log_directory": str(self.log_dir),
            "log_files": {},
            "log_level": logging.getLevelName(self.log_level)
        }

        for log_file in [self.main_log_file, self.error_log_file, self.incident_log_file]:
            if log_file.exists():
                stats["log_files"][log_file.name] = {
                    "size_mb": log_file.stat().st_size / (1024 * 1024),
                    "modified": datetime.fromtimestamp(log_file.stat().st_mtime).isoformat()
                }

        return stats


# Set by setup_logging(); component loggers work without it
logging_manager: Optional[LoggingManager] = None
_component_loggers: Dict[str, logging.Logger] = {}


def get_logger(component_name: str) -> logging.Logger:
    """Get or create a logger for a specific component."""
    if component_name in _component_loggers:
        return _component_loggers[component_name]

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{component_name}")
    logger.addFilter(ContextFilter(component_name))

    _component_loggers[component_name] = logger
    return logger


def log_incident(message: str, context: Optional[Dict[str, Any]] = None) -> None:
    """Write an incident lifecycle line to the incident log."""
    if logging_manager is not None:
        incident_logger = logging_manager.get_incident_logger()
    else:
        incident_logger = logging.getLogger(f"{LOGGER_PREFIX}.incidents")

    if context:
        context_str = " | ".join([f"{k}={v}" for k, v in context.items()])
        message = f"{message} | {context_str}"

    incident_logger.info(message)


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> LoggingManager:
    """Setup centralized logging system."""
    global logging_manager

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    if logging_manager is not None:
        logging_manager.shutdown()

    logging_manager = LoggingManager(log_dir)
    logging_manager.set_log_level(numeric_level)

    return logging_manager
