"""
Logging configuration for the Graph connector.

setup_logging() installs a file handler (rotated at midnight, old files
pruned after the retention period) and an optional console handler on the
root logger. Both handlers scrub client secrets, tokens and passwords. The
audit logger records every connector operation dispatched to Graph.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Any, Dict, List, Optional, Pattern, Tuple
from datetime import datetime, timedelta

LOG_FILE_NAME = 'connector.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
FILE_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
CONSOLE_DATE_FORMAT = '%H:%M:%S'

MASK = '****'


def _scrub_patterns(keywords: List[str]) -> List[Tuple[Pattern, str]]:
    patterns = []
    for keyword in keywords:
        name = re.escape(keyword)
        patterns.extend([
            (re.compile(rf'({name}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE), rf'\g<1>{MASK}'),
            (re.compile(rf'("{name}"\s*:\s*")[^"]*(")', re.IGNORECASE), rf'\g<1>{MASK}\g<2>'),
            (re.compile(rf"('{name}'\s*:\s*')[^']*(')", re.IGNORECASE), rf'\g<1>{MASK}\g<2>'),
        ])
    patterns.append((re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE), rf'\g<1>{MASK}'))
    return patterns


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in key=value, JSON and repr'd dict form, and Bearer headers."""

    SENSITIVE_KEYWORDS = [
        'client_secret', 'secret', 'password', 'passwordProfile', 'access_token',
        'refresh_token', 'token', 'authorization', 'client_assertion', 'assertion',
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = _scrub_patterns(self.SENSITIVE_KEYWORDS)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            try:
                message = record.getMessage()
            except (TypeError, ValueError):
                message = str(record.msg)
            else:
                record.args = None
        else:
            message = str(record.msg)

        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        record.msg = message
        return True


class LoggingManager:
    """Owns the root logger handlers installed by setup_logging()."""

    def __init__(self):
        self.configured = False
        self.log_dir: Optional[str] = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Configure the root logger once per process.

        Args:
            config: The 'logging' configuration section; None means all defaults
        """
        if self.configured:
            return

        settings = config or {}
        level = _level(settings.get('level'), logging.INFO)
        self.log_dir = self._prepare_directory(settings.get('log_dir', 'logs'))
        self.retention_days = int(settings.get('retention_days', 7))

        scrubber = SensitiveDataFilter()
        handlers = [self._file_handler(settings.get('rotation', 'daily'), level, scrubber)]
        if settings.get('console_output', True):
            handlers.append(self._console_handler(_level(settings.get('console_level'), logging.WARNING),
                                                  scrubber))

        root = logging.getLogger()
        root.handlers.clear()
        root.setLevel(level)
        for handler in handlers:
            root.addHandler(handler)

        self._prune_old_files()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at "
            f"{logging.getLevelName(level)}, keeping {self.retention_days} days"
        )

    @staticmethod
    def _prepare_directory(log_dir: str) -> str:
        if not log_dir:
            return '.'
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}); logging to current directory")
            return '.'
        return log_dir

    def _file_handler(self, rotation: str, level: int, scrubber: logging.Filter) -> logging.Handler:
        path = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=self.retention_days, encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(path, encoding='utf-8')

        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        handler.addFilter(scrubber)
        return handler

    @staticmethod
    def _console_handler(level: int, scrubber: logging.Filter) -> logging.Handler:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))
        handler.addFilter(scrubber)
        return handler

    def _prune_old_files(self) -> None:
        """Delete rotated files whose modification time is past the retention period."""
        if self.retention_days <= 0:
            return

        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for rotated in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                if os.path.getmtime(rotated) < cutoff:
                    os.remove(rotated)
            except OSError as e:
                print(f"Warning: cannot remove old log file {rotated}: {e}")

    def reset(self) -> None:
        """Remove and close the installed handlers so setup_logging can run again."""
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        self.configured = False


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class AuditLogger:
    """Writes one record per connector operation to the 'graph_connector.audit' logger."""

    def __init__(self):
        self.logger = logging.getLogger('graph_connector.audit')

    def log_operation(self, operation: str, object_class: Any, uid: Any = None, success: bool = True,
                      detail: str = ""):
        parts = [f"Operation {'SUCCESS' if success else 'FAILURE'}: {operation} objectClass={object_class}"]
        if uid is not None:
            parts.append(f"uid={uid}")
        message = ' '.join(parts)
        if detail:
            message += f" - {detail}"

        self.logger.log(logging.INFO if success else logging.ERROR, message)


audit_logger = AuditLogger()
