"""Pluggable output sinks for supervised process output.

The core never formats output itself: every byte a supervised process produces
goes to an ``OutputSink``. The application supplies colored console writers;
tests and embedders can use ``CollectingSink`` or ``LoggingSink``.
"""

import logging
from typing import Protocol


class OutputSink(Protocol):
    """Protocol for anything that accepts process output - append only, no backpressure."""

    def write(self, data: bytes) -> None:
        """Append a chunk of output."""
        ...


class LineBuffer:
    """Reassemble arbitrary chunks into complete lines.

    Bytes after the last newline are held back until the next chunk completes
    the line (or ``flush`` is called).
    """

    def __init__(self):
        self._pending = b""

    def feed(self, data: bytes) -> list[bytes]:
        """Add a chunk and return the lines it completed (newline included)."""
        data = self._pending + data
        lines = data.splitlines(keepends=True)
        # a trailing "\r" may be the first half of a "\r\n" split across chunks
        if lines and not lines[-1].endswith(b"\n"):
            self._pending = lines.pop()
        else:
            self._pending = b""
        return lines

    def flush(self) -> bytes:
        """Return and clear any unterminated trailing text."""
        pending, self._pending = self._pending, b""
        return pending


class NullSink:
    """Silent sink - default when a supervisor is embedded without a console."""

    def write(self, data: bytes) -> None:
        """Do nothing."""
        pass


class CollectingSink:
    """Keep everything written, for embedding and tests."""

    def __init__(self):
        self.chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")


class LoggingSink:
    """Forward complete output lines to stdlib logging - for headless runs."""

    def __init__(self, name: str, logger: logging.Logger | None = None, level: int = logging.INFO):
        self.name = name
        self.logger = logger or logging.getLogger("devloop.output")
        self.level = level
        self._lines = LineBuffer()

    def write(self, data: bytes) -> None:
        for line in self._lines.feed(data):
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            self.logger.log(self.level, f"{self.name}: {text}")
