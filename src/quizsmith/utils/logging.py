"""Rotating-file logging setup for quizsmith.

Provider error messages sometimes echo request details, so every handler
installed here masks registered secrets (the configured API key) before a
record is written.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterable

__all__ = [
    "LOG_FORMAT",
    "REDACTED",
    "SecretRedactingFilter",
    "get_log_path",
    "get_logger",
    "register_secret",
    "setup_logging",
]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
REDACTED = "***REDACTED***"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_DEFAULT_LOG_DIR = Path.home() / ".quizsmith" / "logs"
_LOG_FILE_NAME = "quizsmith.log"
_LOG_DIR_ENV = "QUIZSMITH_LOG_DIR"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "google_genai")
# Shorter values would mask ordinary words
_MIN_SECRET_LENGTH = 8

_CONFIGURED = False
_LOG_PATH: Path | None = None
_SECRETS: set[str] = set()


class SecretRedactingFilter(logging.Filter):
    """Replace registered secrets in the rendered message and traceback."""

    def __init__(self, secrets: Iterable[str] | None = None) -> None:
        super().__init__()
        self._secrets = _SECRETS if secrets is None else {value for value in secrets if value}

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = self._redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self._redact(record.exc_text)
        return True

    def _redact(self, text: str) -> str:
        # longest first so a secret containing another is masked whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text


def register_secret(value: str | None) -> None:
    """Mask ``value`` in everything logged through handlers from :func:`setup_logging`."""

    secret = (value or "").strip()
    if len(secret) >= _MIN_SECRET_LENGTH:
        _SECRETS.add(secret)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 5,
    force: bool = False,
) -> Path:
    """Install the rotating log file and, optionally, a stderr console handler.

    Repeated calls are no-ops unless ``force`` is set, so library entry points
    can call this without clobbering a host application's configuration.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=_DATE_FORMAT)
    redactor = SecretRedactingFilter()
    handlers = [_file_handler(log_path, level, max_bytes, backup_count)]
    if console:
        handlers.append(_console_handler(level))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(redactor)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the active log file, if logging has been configured."""

    return _LOG_PATH


def _file_handler(path: Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    return handler


def _console_handler(level: int) -> logging.Handler:
    # stderr, so streamed chat output on stdout stays clean; warnings and up only
    handler = logging.StreamHandler()
    handler.setLevel(max(level, logging.WARNING))
    return handler


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get(_LOG_DIR_ENV)
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _quiet_external_loggers(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
