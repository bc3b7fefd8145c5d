"""Installation of the dyncluster logger and its handlers."""

import inspect
import logging
import os

from dyncluster.core import logging as lg

LOGGER_NAME = "dyncluster"

# Client libraries that log every HTTP request at debug level
QUIET_LOGGERS = ("urllib3", "docker")


def configure_logging(
    log_level: lg.levels.LogLevel = lg.levels.LogLevel.INFO,
) -> lg.logger.DynClusterLogger:
    """
    Install the dyncluster logger, or re-level it if already installed.

    Two handlers go on the root logger: the console handler, filtered by
    `log_level`, and a buffer handler that keeps every record in the
    logger's sink. Child loggers (`dyncluster.*`) therefore reach both.

    Parameters
    ----------
    log_level : LogLevel
        Minimum level shown on the console.

    Returns
    -------
    DynClusterLogger
        The process-wide dyncluster logger.
    """
    logger = _get_logger()
    root = logging.getLogger()
    if any(isinstance(h, lg.handler.DynClusterLoggerHandler) for h in root.handlers):
        logger.set_level(log_level)
        return logger

    formatter = lg.formatter.DynClusterLogFormatter(always_verbose=log_level.debug)
    console = lg.handler.DynClusterLoggerHandler()
    console.setFormatter(formatter)

    root.handlers = [lg.sink.BufferHandler(logger.sink, formatter), console]
    root.setLevel(logging.NOTSET)
    logger.handlers.clear()
    logger.formatter = formatter
    logger.propagate = True
    logger.set_level(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Configured dyncluster logger.")
    return logger


def _get_logger() -> lg.logger.DynClusterLogger:
    registry = logging.Logger.manager.loggerDict
    existing = registry.get(LOGGER_NAME)
    if isinstance(existing, logging.Logger) and not isinstance(
        existing, lg.logger.DynClusterLogger
    ):
        # A plain logger got registered under our name first
        del registry[LOGGER_NAME]
    previous = logging.getLoggerClass()
    logging.setLoggerClass(lg.logger.DynClusterLogger)
    try:
        return logging.getLogger(LOGGER_NAME)
    finally:
        logging.setLoggerClass(previous)


def get_caller_fq_name(stacklevel: int = 4) -> str:
    """Return `module:file:line` of the frame `stacklevel` levels up."""
    frame = inspect.currentframe()
    for _ in range(stacklevel):
        frame = frame.f_back if frame is not None else None
    if frame is None:
        return "<unknown>"
    module = inspect.getmodule(frame)
    name = module.__name__ if module else "<unknown>"
    return f"{name}:{os.path.basename(frame.f_code.co_filename)}:{frame.f_lineno}"
