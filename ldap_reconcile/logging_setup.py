"""
Logging setup and configuration for the LDAP reconciler.

This module provides centralized logging configuration with file rotation,
retention and console output, and makes sure secret attribute values read
from or written to the directory never reach a log handler.
"""

import os
import re
import glob
import logging
import logging.handlers
import threading
from typing import Dict, Any, Iterable, List

logger = logging.getLogger(__name__)

# Attribute types whose values are always masked in log output
SENSITIVE_ATTRIBUTES = ('userPassword',)

MASK = '****'

_secret_values = set()
_secret_lock = threading.Lock()


def register_secret_values(values: Iterable[str]) -> None:
    """
    Register literal values that must be masked in every log message.

    Args:
        values: Secret strings, empty strings are skipped
    """
    with _secret_lock:
        for value in values:
            if value:
                _secret_values.add(value)


def mask_attributes(attributes: Dict[str, List[str]]) -> None:
    """Register the values of sensitive attribute types found in an attribute mapping."""
    for attribute_type, values in (attributes or {}).items():
        if attribute_type in SENSITIVE_ATTRIBUTES:
            register_secret_values(values)


def clear_secret_values() -> None:
    with _secret_lock:
        _secret_values.clear()


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'userPassword', 'token', 'secret',
        'credential', 'pwd'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # Pattern for key=value (simple assignment)
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern1, rf'\1{MASK}\2', msg, flags=re.IGNORECASE)

            # Pattern for "key": "value" or 'key': 'value' in dict/JSON dumps
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern2 = rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])'
                msg = re.sub(pattern2, rf'\1{MASK}\2', msg, flags=re.IGNORECASE)

            with _secret_lock:
                secrets = sorted(_secret_values, key=len, reverse=True)
            for secret in secrets:
                msg = msg.replace(secret, MASK)

            record.msg = msg

        return True


class LoggingManager:
    """
    Configures the root logger once per process.

    Records go to ``reconcile.log`` in the configured directory, rotated at
    midnight unless rotation is ``none``, and optionally to the console.
    Every handler carries the SensitiveDataFilter.
    """

    LOG_FILE = 'reconcile.log'
    FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
    CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

    def __init__(self):
        self.configured = False
        self.log_dir = None

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on the ``logging`` configuration section.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        config = config or {}
        level = _level(config.get('level'), logging.INFO)
        self.log_dir = config.get('log_dir', 'logs')
        os.makedirs(self.log_dir, exist_ok=True)

        handlers = [self._file_handler(config)]
        if config.get('console_output', True):
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(config.get('console_level'), logging.WARNING))
            console_handler.setFormatter(logging.Formatter(self.CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            handlers.append(console_handler)

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        sensitive_filter = SensitiveDataFilter()
        for handler in handlers:
            handler.addFilter(sensitive_filter)
            root_logger.addHandler(handler)

        self.configured = True
        logger.info(f"Logging to {self.log_dir} at level {logging.getLevelName(level)}")

    def _file_handler(self, config: Dict[str, Any]) -> logging.Handler:
        log_file = os.path.join(self.log_dir, self.LOG_FILE)
        if str(config.get('rotation', 'daily')).lower() in ('daily', 'midnight'):
            # backupCount prunes rotated files past the retention period
            handler = logging.handlers.TimedRotatingFileHandler(
                log_file, when='midnight', backupCount=config.get('retention_days', 7), encoding='utf-8')
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')
        handler.setFormatter(logging.Formatter(self.FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        return handler

    def get_log_stats(self) -> Dict[str, Any]:
        """Summary of the log setup for the health check."""
        log_files = glob.glob(os.path.join(self.log_dir, self.LOG_FILE + '*')) if self.log_dir else []
        return {
            'configured': self.configured,
            'log_directory': self.log_dir,
            'log_files_count': len(log_files),
            'total_size_bytes': sum(os.path.getsize(path) for path in log_files if os.path.exists(path)),
        }


def _level(name: Any, default: int) -> int:
    return getattr(logging, str(name).upper(), default) if name else default


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def get_logging_stats() -> Dict[str, Any]:
    return _logging_manager.get_log_stats()


class AuditLogger:
    """Logger for writes made against the directory."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_directory_write(self, operation: str, dn: str, success: bool, details: str = ""):
        status = "SUCCESS" if success else "FAILURE"
        message = f"Directory {operation} {status}: dn={dn}"
        if details:
            message += f" - {details}"
        self.logger.info(message)


# Global audit logger instance
audit_logger = AuditLogger()
