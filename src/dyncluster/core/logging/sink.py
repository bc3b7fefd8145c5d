"""In-memory capture of everything dyncluster logs."""

import logging
import re

# OSC strings, CSI sequences and two-byte escapes
_ANSI_RE = re.compile(
    r"\x1b(?:\][^\x07\x1b]*(?:\x07|\x1b\\)|\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])"
)


def strip_ansi(value: str = "") -> str:
    """Remove terminal colour and control sequences from `value`."""
    return _ANSI_RE.sub("", value)


class SinkCollector:
    """Size-capped list of `(message, stream)` pairs.

    Once the encoded size passes `MAX_BUFFER_BYTES` the oldest half of the
    entries is dropped.
    """

    MAX_BUFFER_BYTES = 100 * 1024 * 1024

    def __init__(self) -> None:
        self.buffer: list[tuple[str, str]] = []
        self.size = 0

    def __call__(self, msg: str, stream: str) -> None:
        self.buffer.append((msg, stream))
        self.size += _weight(msg, stream)
        if self.size > self.MAX_BUFFER_BYTES:
            del self.buffer[: len(self.buffer) // 2]
            self.size = sum(_weight(*entry) for entry in self.buffer)

    def clear(self) -> None:
        self.buffer = []
        self.size = 0


def _weight(msg: str, stream: str) -> int:
    return len(msg.encode("utf-8")) + len(stream.encode("utf-8")) + 1


class BufferHandler(logging.Handler):
    """Root handler feeding every record, at any level, into a sink.

    Errors go to the `stderr` stream, everything else to `stdout`.
    """

    def __init__(self, sink: SinkCollector, formatter: logging.Formatter) -> None:
        super().__init__(level=logging.NOTSET)
        self.sink = sink
        self.setFormatter(formatter)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            text = strip_ansi(self.format(record))
        except Exception:
            self.handleError(record)
            return
        self.sink(text, "stderr" if record.levelno >= logging.ERROR else "stdout")
