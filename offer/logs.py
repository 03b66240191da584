import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from flask import g, has_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)


def get_logger(name: str) -> RequestAwareLogger:
    return RequestAwareLogger(logging.getLogger(name))


def configure_logging(verbose: bool, log_file: Optional[Path] = None) -> int:
    """Configure root logging and return the effective level.

    Without *verbose* only warnings reach the console; with it the level comes
    from ``LOG_LEVEL`` (default INFO). A rotating file handler is attached when
    *log_file* is set.
    """

    if verbose:
        level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
        numeric_level = getattr(logging, level_name, logging.INFO)
    else:
        numeric_level = logging.WARNING

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    # werkzeug logs one line per request at INFO
    logging.getLogger("werkzeug").setLevel(numeric_level)

    if log_file is None:
        return numeric_level

    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == os.path.abspath(log_file):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return numeric_level

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return numeric_level
