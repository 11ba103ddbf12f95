"""
Centralized logging configuration for Gavel.

All engine loggers hang off the "gavel" logger: gavel.session,
gavel.clock, gavel.settlement, gavel.storage.*, gavel.publisher and
gavel.cli. Library use gets a colored console handler on first use;
the CLI reconfigures it once it has read the engine configuration.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

import colorlog

ROOT = "gavel"
LOG_FILE = "gavel.log"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def _console_handler(level: int, stream: TextIO) -> logging.Handler:
    handler = colorlog.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt=DATE_FORMAT,
            log_colors=LEVEL_COLORS,
        )
    )
    return handler


def _file_handler(level: int, log_dir: Path) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(name)s] %(levelname)-8s %(message)s", datefmt=DATE_FORMAT)
    )
    return handler


class GavelLogger:
    """Owns the handlers attached to the gavel root logger"""

    _initialized = False
    log_file: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = False,
        stream: Optional[TextIO] = None,
    ):
        """
        Attach handlers to the gavel root logger; a no-op once done.

        Args:
            level: Logging level for every handler
            log_dir: Directory for gavel.log (default ./logs)
            log_to_file: Also write plain-text records to log_dir/gavel.log
            stream: Console stream (default sys.stdout at call time)
        """
        if cls._initialized:
            return

        root = logging.getLogger(ROOT)
        root.setLevel(level)
        root.addHandler(_console_handler(level, stream or sys.stdout))

        if log_to_file:
            directory = Path(log_dir) if log_dir else Path("logs")
            root.addHandler(_file_handler(level, directory))
            cls.log_file = directory / LOG_FILE

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.setup()
        return logging.getLogger(f"{ROOT}.{name}")

    @classmethod
    def reset(cls) -> None:
        """Close and detach every handler so setup() can run again."""
        root = logging.getLogger(ROOT)
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        cls._initialized = False
        cls.log_file = None


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return GavelLogger.get_logger(name)


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = False,
):
    """Replace any earlier (lazy) setup with the given configuration"""
    GavelLogger.reset()
    GavelLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file)
