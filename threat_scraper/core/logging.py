"""
Logging System for the Threat Intelligence Scraper

Every component writes to the ``threat_scraper`` logger. ``setup_logging``
attaches a size-rotated file handler with call-site detail and a terse
console handler; crawl log entries shown to observers are mirrored here
with their session id.
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from threat_scraper.core.base import ConfigurationError, LogLevel


LOGGER_NAME = 'threat_scraper'

FILE_FORMAT = '%(asctime)s %(levelname)-8s %(name)s %(module)s:%(funcName)s:%(lineno)d %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

# Libraries that log every HTTP request at INFO
NOISY_LOGGERS = ('httpx', 'openai', 'urllib3')

CRAWL_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_SIZE_UNITS = {'': 1, 'B': 1, 'KB': 1024, 'MB': 1024 ** 2, 'GB': 1024 ** 3}
_SIZE_PATTERN = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([KMG]?B?)\s*$', re.IGNORECASE)

# (label, stats key) rows of the summary report, grouped by section
SUMMARY_SECTIONS = (
    ("PAGES", (
        ("Total", 'totalPages'),
        ("Successful", 'successfulPages'),
        ("Failed", 'failedPages'),
        ("Screenshots", 'screenshotsTaken'),
        ("Scroll Attempts", 'scrollAttempts'),
    )),
    ("CONTENT", (
        ("Raw Items", 'rawItemsExtracted'),
        ("Filtered Items", 'filteredItems'),
        ("Cybersecurity Articles", 'cybersecurityArticles'),
    )),
)

MAX_REPORTED_ERRORS = 10


def parse_size(size: str) -> int:
    """Parse sizes like '100MB', '1.5GB' or '4096' to bytes"""
    match = _SIZE_PATTERN.match(str(size))
    if not match:
        raise ConfigurationError(f"Invalid log file size: {size!r}")
    number, unit = match.groups()
    unit = unit.upper()
    if unit and not unit.endswith('B'):
        unit += 'B'
    return int(float(number) * _SIZE_UNITS[unit])


class LoggingManager:
    """
    Owns the handlers of the package logger

    Calling ``setup_logging`` again replaces the previous handlers, so tests
    and the CLI can reconfigure freely.
    """

    def __init__(self):
        self.logger = logging.getLogger(LOGGER_NAME)
        self.file_handler: Optional[logging.handlers.RotatingFileHandler] = None
        self.console_handler: Optional[logging.StreamHandler] = None

    def setup_logging(self, level: str = "INFO", log_file: str = "./logs/threat_scraper.log",
                      max_size: str = "100MB", backup_count: int = 5) -> None:
        """
        Attach the file and console handlers

        Args:
            level: Console and logger level name
            log_file: Rotating log file; its directory is created
            max_size: Rotation size such as "100MB"
            backup_count: Rotated files to keep

        Raises:
            ConfigurationError: unknown level or unparseable size
        """
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            raise ConfigurationError(f"Invalid log level: {level}")
        max_bytes = parse_size(max_size)

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        self.close()
        self.logger.setLevel(min(log_level, logging.DEBUG))

        self.file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        self.file_handler.setLevel(logging.DEBUG)
        self.file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        self.logger.addHandler(self.file_handler)

        self.console_handler = logging.StreamHandler(sys.stdout)
        self.console_handler.setLevel(log_level)
        self.console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
        self.logger.addHandler(self.console_handler)

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        self.logger.debug(f"Logging to {log_file} (level {level.upper()}, rotate at {max_bytes} bytes)")

    def get_logger(self) -> logging.Logger:
        return self.logger

    def log_crawl_entry(self, session_id: str, level: LogLevel, message: str,
                        url: Optional[str] = None) -> None:
        """Mirror a crawl log entry into the package log"""
        suffix = f" ({url})" if url and url not in message else ""
        self.logger.log(CRAWL_LOG_LEVELS[level], f"[{session_id}] {message}{suffix}")

    def generate_summary_report(self, stats: Dict[str, Any]) -> str:
        """Render the end-of-crawl report from camelCase stats and log it"""
        total = stats.get('totalPages', 0)
        success_rate = stats.get('successfulPages', 0) / total * 100 if total else 0.0

        lines = [
            "=" * 60,
            "CRAWL SESSION SUMMARY",
            "=" * 60,
            f"Final Status: {stats.get('finalStatus') or 'unknown'}",
            f"Total Duration: {stats.get('totalTime') or 0:.2f}s",
            f"Page Success Rate: {success_rate:.1f}%",
        ]
        for title, rows in SUMMARY_SECTIONS:
            lines.extend(["", f"{title}:"])
            lines.extend(f"  {label}: {stats.get(key, 0)}" for label, key in rows)

        errors = stats.get('errors') or []
        if errors:
            lines.extend(["", "ERRORS ENCOUNTERED:"])
            lines.extend(f"  - {error}" for error in errors[:MAX_REPORTED_ERRORS])
            if len(errors) > MAX_REPORTED_ERRORS:
                lines.append(f"  ... and {len(errors) - MAX_REPORTED_ERRORS} more errors")
        lines.append("=" * 60)

        report = "\n".join(lines)
        self.logger.info(f"Session Summary:\n{report}")
        return report

    def close(self) -> None:
        for handler in (self.file_handler, self.console_handler):
            if handler is not None:
                self.logger.removeHandler(handler)
                handler.close()
        self.file_handler = None
        self.console_handler = None


# Global logging manager instance
logging_manager = LoggingManager()


def get_logger() -> logging.Logger:
    """Get the package logger"""
    return logging_manager.get_logger()


def setup_logging(level: str = "INFO", log_file: str = "./logs/threat_scraper.log",
                  max_size: str = "100MB", backup_count: int = 5) -> None:
    """Set up global logging system"""
    logging_manager.setup_logging(level, log_file, max_size, backup_count)
