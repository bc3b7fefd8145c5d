"""Console handler for dyncluster output."""

import logging
import sys


class DynClusterLoggerHandler(logging.StreamHandler):
    """Write formatted records to the current `sys.stderr`.

    The stream is looked up on every write, so output redirected after
    configuration (for example by pytest's `capsys`) is still captured.
    """

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value):
        pass

    def emit(self, record: logging.LogRecord) -> None:
        """Emit `record` unless it formats to nothing."""
        try:
            text = self.format(record)
        except Exception:
            self.handleError(record)
            return
        if not text:
            return
        self.stream.write(text + self.terminator)
        self.flush()
