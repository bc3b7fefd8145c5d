"""Logging utilities for dyncluster."""

from . import formatter, handler, levels, logger, sink, utils

__all__ = [
    "formatter",
    "handler",
    "levels",
    "logger",
    "sink",
    "utils",
]
