"""Logging setup for the exporter: coloured console output, optional log file and batch tallies."""

import copy
import logging
import logging.handlers
import time
from typing import Any, Dict, Optional

import colorlog

LOGGER_NAME = 'confluence_exporter'
REDACTED = '***REDACTED***'

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_COLORS = {
    'DEBUG': 'cyan',
    'INFO': 'green',
    'WARNING': 'yellow',
    'ERROR': 'red',
    'CRITICAL': 'red,bg_white',
}
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

SENSITIVE_KEYS = ('password', 'api_key', 'api_token', 'secret', 'auth_header')


def resolve_level(verbosity: int = 0, level: Optional[str] = None) -> int:
    """
    Map CLI verbosity (or an explicit level name) onto a logging level.

    0 is WARNING, 1 is INFO and 2 or more is DEBUG. An explicit ``level``
    wins over the verbosity count.
    """
    if level:
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"Invalid log level '{level}'")
        return value
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def setup_logging(
    verbosity: int = 0,
    log_file: Optional[str] = None,
    level: Optional[str] = None
) -> logging.Logger:
    """
    Configure the ``confluence_exporter`` logger tree.

    Console output goes through colorlog; ``log_file`` adds a rotating
    plain-text handler. Calling this again replaces the handlers.

    Returns:
        The root exporter logger
    """
    log_level = resolve_level(verbosity, level)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = colorlog.StreamHandler()
    console.setFormatter(colorlog.ColoredFormatter(
        fmt='%(log_color)s' + LOG_FORMAT,
        datefmt=DATE_FORMAT,
        log_colors=LOG_COLORS
    ))
    logger.addHandler(console)

    if log_file:
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding='utf-8'
            )
        except OSError as e:
            logger.warning(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
            logger.addHandler(file_handler)
            logger.debug(f"Logging to file: {log_file}")

    return logger


class ProgressTracker:
    """
    Tallies the pages of a batch command and logs a one-line summary on exit.

    Usage::

        with ProgressTracker(len(pages), 'pages') as tracker:
            for page in pages:
                ...
                tracker.increment(success=True)
    """

    LOG_EVERY = 10

    def __init__(self, total_items: int, item_type: str = 'items', logger: Optional[logging.Logger] = None):
        self.total_items = total_items
        self.item_type = item_type
        self.succeeded = 0
        self.failed = 0
        self.skipped = 0
        self.started: Optional[float] = None
        self.logger = logger or logging.getLogger(f'{LOGGER_NAME}.progress')

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.skipped

    def __enter__(self) -> 'ProgressTracker':
        self.started = time.monotonic()
        self.logger.debug(f"Processing {self.total_items} {self.item_type}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - (self.started or time.monotonic())
        summary = (
            f"{self.processed}/{self.total_items} {self.item_type} processed in {format_elapsed(elapsed)}: "
            f"{self.succeeded} succeeded, {self.skipped} skipped, {self.failed} failed"
        )
        if exc_type is not None:
            self.logger.error(f"Interrupted after {summary}")
        elif self.failed and not (self.succeeded or self.skipped):
            self.logger.error(summary)
        elif self.failed:
            self.logger.warning(summary)
        else:
            self.logger.info(summary)

    def increment(self, success: bool = True, skipped: bool = False) -> None:
        if skipped:
            self.skipped += 1
        elif success:
            self.succeeded += 1
        else:
            self.failed += 1

        if self.processed % self.LOG_EVERY == 0:
            self.logger.info(f"Processed {self.processed}/{self.total_items} {self.item_type}")


def format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {seconds}s"


def log_section(title: str) -> None:
    logger = logging.getLogger(LOGGER_NAME)
    logger.info('=' * 60)
    logger.info(f"  {title}")
    logger.info('=' * 60)


def log_config(config: Dict[str, Any]) -> None:
    """Log the effective settings at INFO with secrets masked."""
    logger = logging.getLogger(LOGGER_NAME)
    masked = sanitize_config(config)

    confluence = masked.get('confluence') or {}
    logger.info(f"Confluence: {confluence.get('base_url', 'not set')} "
                f"(auth={confluence.get('auth_type', 'basic')}, verify_ssl={confluence.get('verify_ssl', True)})")

    wikijs = masked.get('wikijs') or {}
    if wikijs.get('base_url'):
        logger.info(f"Wiki.js: {wikijs['base_url']} (namespace={wikijs.get('namespace')}, "
                    f"upload_path={wikijs.get('upload_path')})")

    export_settings = masked.get('export') or {}
    logger.info(f"Output directory: {export_settings.get('output_directory')}")
    logger.debug(f"Effective configuration: {masked}")


def sanitize_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a deep copy of ``config`` with every credential-like string value replaced by ``REDACTED``."""

    def mask(value: Any, key: str = '') -> Any:
        if isinstance(value, dict):
            return {k: mask(v, str(k)) for k, v in value.items()}
        if isinstance(value, list):
            return [mask(item, key) for item in value]
        if isinstance(value, str) and value and any(s in key.lower() for s in SENSITIVE_KEYS):
            return REDACTED
        return value

    return mask(copy.deepcopy(config))


__all__ = [
    'setup_logging',
    'resolve_level',
    'ProgressTracker',
    'log_section',
    'log_config',
    'sanitize_config'
]
