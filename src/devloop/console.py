"""Colored, name-prefixed console output.

Every supervised command gets writers that print one terminal line per output
line, prefixed with the command name right-aligned to the widest name seen::

     build: main.go:12: undefined: foo
       run: listening on :3000
"""

import sys
import threading
from enum import Enum
from typing import TextIO

from devloop_core.sinks import LineBuffer
from devloop_core.supervisor import CommandSinks


class Color(str, Enum):
    """ANSI SGR color codes."""

    RESET = "0"
    BLACK = "30"
    RED = "31"
    GREEN = "32"
    YELLOW = "33"
    BLUE = "34"
    MAGENTA = "35"
    CYAN = "36"
    WHITE = "37"
    GRAY = "90"


class Console:
    """Shared terminal that serializes lines from every writer."""

    def __init__(self, stream: TextIO | None = None, color: bool | None = None):
        """Initialize console.

        Args:
            stream: Text stream to print to (default: stdout)
            color: Emit ANSI colors; None means "only if the stream is a TTY"
        """
        self.stream = stream or sys.stdout
        if color is None:
            color = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.color = color
        self.width = 0
        self._lock = threading.Lock()

    def writer(self, name: str, color: Color = Color.WHITE) -> "ConsoleWriter":
        """Create a writer whose lines are prefixed with ``name``."""
        with self._lock:
            self.width = max(self.width, len(name))
        return ConsoleWriter(self, name, color)

    def sinks_for(self, name: str) -> CommandSinks:
        """Output in white, lifecycle notes in gray, errors in red."""
        return CommandSinks(
            output=self.writer(name, Color.WHITE),
            info=self.writer(name, Color.GRAY),
            error=self.writer(name, Color.RED),
        )

    def format_line(self, name: str, color: Color, line: str) -> str:
        if not self.color:
            return f"{name:>{self.width}}: {line}\n" if name else f"{line}\n"
        if not name:
            return f"\033[{Color.RESET.value}m\033[{color.value}m{line}\033[{Color.RESET.value}m\n"
        return (
            f"\033[{Color.GRAY.value}m{name:>{self.width}}:"
            f"\033[{color.value}m {line}\033[{Color.RESET.value}m\n"
        )

    def emit(self, name: str, color: Color, line: str) -> None:
        with self._lock:
            self.stream.write(self.format_line(name, color, line))
            self.stream.flush()


class ConsoleWriter:
    """Line-reassembling writer for one name and color; satisfies ``OutputSink``."""

    def __init__(self, console: Console, name: str, color: Color):
        self.console = console
        self.name = name
        self.color = color
        self._lines = LineBuffer()

    def write(self, data: bytes) -> None:
        for line in self._lines.feed(data):
            self.console.emit(self.name, self.color, line.decode("utf-8", errors="replace").rstrip("\r\n"))

    def println(self, *values: object) -> None:
        self.write((" ".join(str(value) for value in values) + "\n").encode())
