"""Verbosity levels understood by dyncluster output."""

import logging
from enum import Enum


class LogLevel(Enum):
    """User-selectable verbosity, valued by the matching `logging` level."""

    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARN = logging.WARNING
    ERROR = logging.ERROR

    @property
    def prefix(self) -> str:
        """Marker written in front of every line at this level."""
        return _MARKERS[self][0]

    @property
    def color(self) -> str:
        """Click colour name for the marker."""
        return _MARKERS[self][1]

    @property
    def debug(self) -> bool:
        return self is LogLevel.DEBUG

    @classmethod
    def for_levelno(cls, levelno: int) -> "LogLevel":
        """Map a record's numeric level onto the closest dyncluster level."""
        if levelno >= logging.ERROR:
            return cls.ERROR
        if levelno >= logging.WARNING:
            return cls.WARN
        if levelno >= logging.INFO:
            return cls.INFO
        return cls.DEBUG

    @classmethod
    def from_name(cls, name: str) -> "LogLevel":
        """Parse a level name such as `debug`, `warning` or `verbose`."""
        aliases = {"WARNING": "WARN", "VERBOSE": "DEBUG"}
        key = name.strip().upper()
        if aliases.get(key, key) not in cls.__members__:
            raise ValueError(f"Unknown log level: {name}")
        return cls[aliases.get(key, key)]


_MARKERS = {
    LogLevel.DEBUG: ("[v]  ", "magenta"),
    LogLevel.INFO: ("[i]  ", "cyan"),
    LogLevel.WARN: ("[w]  ", "yellow"),
    LogLevel.ERROR: ("[e]  ", "red"),
}

PY_LEVEL = {level: level.value for level in LogLevel}
