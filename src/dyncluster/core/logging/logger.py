"""Logger class installed under the `dyncluster` name."""

import logging
from collections.abc import Iterator

from dyncluster.core import logging as lg

# Levels that carry their caller's location when debug output is on
_LOCATED_LEVELS = (logging.DEBUG, logging.INFO)


class DynClusterLogger(logging.Logger):
    """Logger for cluster operations.

    Blank messages are dropped, surrounding whitespace is stripped, and at
    debug level info and debug records are tagged with the module and line
    that emitted them. The logger owns the sink its buffer handler writes
    into, so tests can inspect everything an operation logged.
    """

    def __init__(self, name: str, level: int = logging.NOTSET) -> None:
        super().__init__(name, level)
        self.sink = lg.sink.SinkCollector()
        self.formatter: lg.formatter.DynClusterLogFormatter | None = None
        self.current_level = lg.levels.LogLevel.INFO

    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra=None,
        stack_info=False,
        stacklevel=1,
    ):
        text = str(msg).strip()
        if not text:
            return
        if level in _LOCATED_LEVELS and self.isEnabledFor(logging.DEBUG):
            caller = lg.utils.get_caller_fq_name(stacklevel=stacklevel + 2)
            extra = {**(extra or {}), "fq_caller": caller}
        super()._log(
            level,
            text,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )

    def warn(self, msg: object, *args: object, **kwargs) -> None:
        """Log a warning. Kept as a non-deprecated alias of `warning`."""
        kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + 1
        self.warning(msg, *args, **kwargs)

    @property
    def log_buffer(self) -> list[tuple[str, str]]:
        """Every `(message, stream)` pair captured so far."""
        return list(self.sink.buffer)

    def clear_log_buffer(self) -> None:
        self.sink.clear()

    def set_level(self, level: lg.levels.LogLevel) -> None:
        """Apply `level` to this logger and every user-facing handler."""
        self.current_level = level
        self.setLevel(level.value)
        for handler in self._console_handlers():
            handler.setLevel(level.value)
        if self.formatter is not None:
            self.formatter.always_verbose = level.debug

    def _console_handlers(self) -> Iterator[logging.Handler]:
        yield from self.handlers
        if self.propagate:
            for handler in logging.getLogger().handlers:
                if isinstance(handler, lg.handler.DynClusterLoggerHandler):
                    yield handler
