"""
LogManager - fan-out logging across several sinks.

A LogManager wraps zero or more ``logging.Logger`` instances and routes each
call to every sink whose level admits it. Messages may be given as strings or
as zero-argument callables; a callable is evaluated at most once, and only if
some attached sink will actually record the message.

Sinks:
    console_logger()   stderr, WARNING, "LEVEL: message"
    file_logger(path)  JSONL file, DEBUG, one {"time", "level", "msg"} per line
"""

from __future__ import annotations

import itertools
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Union

Message = Union[str, Callable[[], str]]

_SINK_IDS = itertools.count()


def _new_sink(kind: str, level: int) -> logging.Logger:
    """A fresh, non-propagating logger registered with the logging manager."""
    logger = logging.getLogger(f"{__name__}.{kind}.{next(_SINK_IDS)}")
    logger.setLevel(level)
    logger.propagate = False
    return logger


class JsonLineFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        return json.dumps(entry, default=str)


class LogManager:
    """Route log messages to a list of leveled sinks."""

    @staticmethod
    def console_logger(level: int = logging.WARNING) -> logging.Logger:
        """Create a sink writing human-readable messages to stderr."""
        logger = _new_sink("console", level)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(handler)
        return logger

    @staticmethod
    def file_logger(path: Union[str, Path], level: int = logging.DEBUG) -> logging.Logger:
        """Create a sink writing JSON lines to ``path``."""
        logger = _new_sink("file", level)
        handler = logging.FileHandler(str(path), mode="w", encoding="utf-8")
        handler.setFormatter(JsonLineFormatter())
        logger.addHandler(handler)
        return logger

    @staticmethod
    def close_logger(logger: logging.Logger) -> None:
        """Flush, close and detach every handler of a sink."""
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

    def __init__(self):
        self._loggers: List[logging.Logger] = []

    @property
    def loggers(self) -> List[logging.Logger]:
        return list(self._loggers)

    def add_logger(self, logger: logging.Logger) -> None:
        """Attach a sink. Raises TypeError for anything but a logging.Logger."""
        if not isinstance(logger, logging.Logger):
            raise TypeError(
                f"An instance of logging.Logger must be passed. "
                f"Got a value of type {type(logger).__name__}."
            )
        self._loggers.append(logger)

    def remove_logger(self, logger: logging.Logger) -> None:
        """Detach a sink. Unknown sinks are ignored."""
        if logger in self._loggers:
            self._loggers.remove(logger)

    def _log(self, level: int, message: Message) -> None:
        targets = [lg for lg in self._loggers if lg.isEnabledFor(level)]
        if not targets:
            return

        if callable(message):
            message = message()

        for logger in targets:
            logger.log(level, message)

    def debug(self, message: Message) -> None:
        self._log(logging.DEBUG, message)

    def info(self, message: Message) -> None:
        self._log(logging.INFO, message)

    def warn(self, message: Message) -> None:
        self._log(logging.WARNING, message)

    warning = warn

    def error(self, message: Message) -> None:
        self._log(logging.ERROR, message)

    def fatal(self, message: Message) -> None:
        self._log(logging.CRITICAL, message)

    critical = fatal
