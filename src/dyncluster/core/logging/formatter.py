"""Console formatting for dyncluster log records."""

import logging
import os
import shutil
import sys
import textwrap

from click import style

from dyncluster.core.logging.levels import LogLevel

DEFAULT_INDENT = " " * 5


def get_terminal_width() -> int:
    return shutil.get_terminal_size(fallback=(80, 24)).columns


class DynClusterLogFormatter(logging.Formatter):
    """Render records as `<marker><location> <message>`.

    The marker (`[i]  `, `[w]  `, ...) is coloured when stdout is a
    terminal. Lines after the first are indented under the message, which
    keeps multi-line admin API bodies and tracebacks readable. The caller
    location is only shown for debug records or when `always_verbose` is
    set.
    """

    def __init__(self, always_verbose: bool = False):
        super().__init__()
        self.always_verbose = always_verbose
        self.enable_color = sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record for output.

        Parameters
        ----------
        record : logging.LogRecord
            The log record to format.

        Returns
        -------
        str
            The rendered record, or an empty string for blank messages.
        """
        body = record.getMessage()
        if not body.strip():
            return ""
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            body = f"{body}\n{record.exc_text}"

        head = self._get_prefix(record) + self._location(record)
        lines = body.splitlines()
        if sys.stdout.isatty():
            return self._wrap_lines_tty(lines, head)
        return self._wrap_lines_plain(lines, head)

    def _get_prefix(self, record: logging.LogRecord) -> str:
        level = LogLevel.for_levelno(record.levelno)
        if not self.enable_color:
            return level.prefix
        return style(level.prefix, fg=level.color, bold=True)

    def _location(self, record: logging.LogRecord) -> str:
        if not (self.always_verbose or record.levelno == logging.DEBUG):
            return ""
        caller = getattr(record, "fq_caller", "")
        if caller:
            return f"{caller} "
        if record.pathname:
            return f"{os.path.basename(record.pathname)}:{record.lineno} "
        return ""

    def _wrap_lines_tty(self, lines: list[str], head: str) -> str:
        width = get_terminal_width()
        wrapped = [
            textwrap.fill(
                line,
                width=width,
                initial_indent=head if i == 0 else DEFAULT_INDENT,
                subsequent_indent=DEFAULT_INDENT,
            )
            for i, line in enumerate(lines)
        ]
        return "\n".join(wrapped)

    def _wrap_lines_plain(self, lines: list[str], head: str) -> str:
        rest = [DEFAULT_INDENT + line for line in lines[1:]]
        return "\n".join([head + lines[0], *rest])
