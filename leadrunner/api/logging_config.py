"""
Logging configuration for Leadrunner.

One project logger ("leadrunner") with a coloured console handler and two
rotating files: everything, and errors only. Library modules log through
logging.getLogger(__name__) and propagate up to it.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_DIR = Path(os.getenv("LOG_DIR", Path.cwd() / "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Chatty third-party loggers capped at WARNING
NOISY_LOGGERS = ("aiosqlite", "asyncio", "urllib3", "uvicorn.access")


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelname)
        if not color:
            return super().format(record)
        tinted = logging.makeLogRecord(record.__dict__)
        tinted.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(tinted)


def _rotating_handler(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(name: str = "leadrunner", log_dir: Optional[Path] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Configure and return the project logger. Calling it again is a no-op.

    Args:
        name: Logger name (default: leadrunner)
        log_dir: Directory for the rotating files (default: LOG_DIR)
        level: Level name overriding LOG_LEVEL
    """
    project_logger = logging.getLogger(name)
    if project_logger.handlers:
        return project_logger

    project_logger.setLevel(getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO))
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    project_logger.addHandler(console)

    directory = Path(log_dir or LOG_DIR)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        project_logger.warning(f"Log directory {directory} unavailable, file logging disabled: {e}")
        return project_logger

    project_logger.addHandler(_rotating_handler(directory / f"{name}.log", logging.DEBUG))
    project_logger.addHandler(_rotating_handler(directory / f"{name}_errors.log", logging.ERROR))
    return project_logger


logger = logging.getLogger("leadrunner")


def _event(level: int, kind: str, ident: str, event: str, details: Optional[str]):
    line = f"{kind} [{ident}] {event}"
    logger.log(level, f"{line}: {details}" if details else line)


def log_api_request(method: str, path: str, status_code: Optional[int] = None, duration_ms: Optional[float] = None):
    """Log an upstream HTTP request."""
    timing = f" ({duration_ms:.2f}ms)" if duration_ms is not None else ""
    logger.debug(f"API {method} {path} -> {status_code}{timing}")


def log_job_event(job_id: str, event: str, details: Optional[str] = None):
    _event(logging.INFO, "Job", job_id, event, details)


def log_navigator_event(navigator: str, event: str, details: Optional[str] = None):
    _event(logging.INFO, "Navigator", navigator, event, details)


def log_surface_event(surface_id: str, event: str, details: Optional[str] = None):
    _event(logging.DEBUG, "Surface", surface_id, event, details)
