"""Logging setup for the etude command line."""

from __future__ import annotations

import logging
import sys


class LoggingConfig:
    """Configures the root logger once per process."""

    DEFAULT_LEVEL = logging.WARNING

    LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

    # Third-party libraries stay quiet unless something is wrong.
    MODULE_LEVELS: dict[str, int] = {
        "music21": logging.ERROR,
        "numpy": logging.ERROR,
        "serial": logging.WARNING,
    }

    @staticmethod
    def level_for_verbosity(verbosity: int) -> int:
        """Map a ``-v`` count to a level: 0 WARNING, 1 INFO, 2+ DEBUG."""
        if verbosity <= 0:
            return logging.WARNING
        if verbosity == 1:
            return logging.INFO
        return logging.DEBUG

    @classmethod
    def setup_logging(cls, log_level: int | None = None, log_file: str | None = None) -> None:
        """
        Send log records to stderr, and to ``log_file`` when given.

        Args:
            log_level: Root level; defaults to WARNING.
            log_file:  Optional path that also receives every record.
        """
        handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
        if log_file:
            handlers.append(logging.FileHandler(log_file, mode="w"))
        for handler in handlers:
            handler.setFormatter(logging.Formatter(cls.LOG_FORMAT))

        logging.basicConfig(
            level=log_level or cls.DEFAULT_LEVEL,
            format=cls.LOG_FORMAT,
            handlers=handlers,
            force=True,
        )
        for module_name, level in cls.MODULE_LEVELS.items():
            logging.getLogger(module_name).setLevel(level)
