"""Run one external command at a time, attached to a pseudo-terminal.

The child sees a terminal on stdin/stdout/stderr, so tools that line-buffer only
when interactive (compilers, test runners, dev servers) stream their output as
they would in a shell. Everything read from the terminal goes to the
supervisor's output sink, optionally rewritten by a substitution table.
"""

import asyncio
import logging
import os
import pty
import shlex
import signal
import threading
from collections.abc import Mapping
from dataclasses import dataclass

from devloop_core.errors import CommandFailedError, SupervisorStartError, TemplateError
from devloop_core.sinks import NullSink, OutputSink

logger = logging.getLogger(__name__)

_READ_SIZE = 4096

# How long to keep reading after the process exits; grandchildren may still hold the terminal.
_DRAIN_TIMEOUT = 0.5

_NEVER_COMPLETED = object()


def render_command(template: str, path: str, working_dir: str) -> str:
    """Substitute path tokens in a command template.

    Tokens:
        ``$filerelative``: changed path relative to the working directory
        ``$file``: changed path, absolute
        ``$wd``: working directory

    Raises:
        TemplateError: If ``$filerelative`` is used and the path lies outside the working directory
    """
    command = template
    if "$filerelative" in command:
        rel_path = os.path.relpath(path, working_dir)
        if rel_path == os.pardir or rel_path.startswith(os.pardir + os.sep):
            raise TemplateError(f"{path} is outside working directory {working_dir}; cannot expand $filerelative")
        command = command.replace("$filerelative", rel_path)
    command = command.replace("$file", path)
    return command.replace("$wd", working_dir)


@dataclass
class CommandSinks:
    """Where a supervisor writes: process output, lifecycle notes, and error notes."""

    output: OutputSink
    info: OutputSink
    error: OutputSink

    @classmethod
    def single(cls, sink: OutputSink) -> "CommandSinks":
        return cls(output=sink, info=sink, error=sink)


class _PtyReader:
    """Pump a non-blocking PTY master into a callback from the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, fd: int, on_data):
        self._loop = loop
        self._fd = fd
        self._on_data = on_data
        self.done = loop.create_future()
        os.set_blocking(fd, False)
        loop.add_reader(fd, self._read_ready)

    def _read_ready(self) -> None:
        try:
            data = os.read(self._fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every writer of the terminal is gone
            data = b""
        if data:
            self._on_data(data)
        else:
            self.close()

    def close(self) -> None:
        if self.done.done():
            return
        self._loop.remove_reader(self._fd)
        os.close(self._fd)
        self.done.set_result(None)


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()


class ProcessSupervisor:
    """Supervise a single command; at most one live process per supervisor.

    ``start()`` and ``stop()`` never block. ``start()`` returns a future that
    resolves with the completion error: ``None`` on success,
    ``CommandFailedError`` on a non-zero exit (including being killed), or
    ``SupervisorStartError`` when the process could not be created.
    """

    def __init__(
        self,
        name: str,
        command: str,
        working_dir: str = ".",
        replacements: Mapping[str, str] | None = None,
        sinks: CommandSinks | None = None,
    ):
        """Initialize supervisor.

        Args:
            name: Display name (rule or runner name)
            command: Command line, tokenized shell-style; empty means "no action"
            working_dir: Directory the process runs in
            replacements: Literal substring substitutions applied to every output chunk
            sinks: Output destinations (defaults to discarding everything)
        """
        self.name = name
        self.command = command
        self.working_dir = working_dir
        self.replacements = dict(replacements or {})
        self.sinks = sinks or CommandSinks.single(NullSink())
        self._byte_replacements = [(old.encode(), new.encode()) for old, new in self.replacements.items() if old]
        self._lock = threading.Lock()
        self._process: asyncio.subprocess.Process | None = None
        self._generation = 0
        self._last_error: object = _NEVER_COMPLETED
        self._tasks: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"ProcessSupervisor(name={self.name!r}, command={self.command!r})"

    @property
    def running(self) -> bool:
        """Whether a process is currently live under this supervisor."""
        with self._lock:
            return self._process is not None

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process else None

    def start(self) -> asyncio.Future:
        """Start the command (non-blocking). Must be called from a running event loop.

        Returns:
            Future resolving with the completion error (None on success)
        """
        loop = asyncio.get_running_loop()
        stopped = loop.create_future()

        if not self.command.strip():
            self._finish(stopped, None)
            return stopped

        with self._lock:
            self._stop_locked()
            generation = self._generation

        task = loop.create_task(self._run(generation, stopped))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return stopped

    def stop(self) -> None:
        """Kill the live process, if any (non-blocking, idempotent)."""
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        # bumping the generation also cancels a run that is still spawning
        self._generation += 1
        if self._process is not None:
            logger.debug(f"{self.name}: killing pid {self._process.pid}")
            _kill(self._process)
            self._process = None

    def last_error(self) -> BaseException | None:
        """Return the most recent completion error (None means success).

        Raises:
            LookupError: If no run has completed yet
        """
        with self._lock:
            if self._last_error is _NEVER_COMPLETED:
                raise LookupError(f"{self.name}: command has not completed yet")
            return self._last_error

    def announce(self, message: str, failed: bool = False) -> None:
        """Write a lifecycle line (e.g. ``<end: 1.2s>``) to the info or error sink."""
        sink = self.sinks.error if failed else self.sinks.info
        sink.write(f"{message}\n".encode())

    def _rewrite(self, data: bytes) -> bytes:
        for old, new in self._byte_replacements:
            data = data.replace(old, new)
        return data

    def _on_output(self, data: bytes) -> None:
        self.sinks.output.write(self._rewrite(data))

    async def _run(self, generation: int, stopped: asyncio.Future) -> None:
        try:
            argv = shlex.split(self.command)
        except ValueError as e:
            self._finish(stopped, SupervisorStartError(f"cannot tokenize {self.command!r}: {e}"))
            return

        try:
            master, slave = pty.openpty()
        except OSError as e:
            logger.error(f"{self.name}: pseudo-terminal allocation failed: {e}")
            self._finish(stopped, _start_error("cannot allocate a pseudo-terminal", e))
            return

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.working_dir,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master)
            logger.error(f"{self.name}: failed to start {argv[0]!r}: {e}")
            self._finish(stopped, _start_error(f"cannot start {argv[0]!r}", e))
            return
        finally:
            os.close(slave)

        reader = _PtyReader(asyncio.get_running_loop(), master, self._on_output)

        with self._lock:
            superseded = generation != self._generation
            if not superseded:
                self._process = process
        if superseded:
            logger.debug(f"{self.name}: superseded while starting, killing pid {process.pid}")
            _kill(process)
        else:
            logger.debug(f"{self.name}: started pid {process.pid}: {argv}")

        returncode = await process.wait()
        try:
            await asyncio.wait_for(asyncio.shield(reader.done), _DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            reader.close()

        error = None if returncode == 0 else CommandFailedError(self.command, returncode)
        self._finish(stopped, error, process)

    def _finish(
        self,
        stopped: asyncio.Future,
        error: BaseException | None,
        process: asyncio.subprocess.Process | None = None,
    ) -> None:
        with self._lock:
            self._last_error = error
            if process is not None and self._process is process:
                self._process = None
        if not stopped.done():
            stopped.set_result(error)


def _start_error(message: str, cause: OSError) -> SupervisorStartError:
    error = SupervisorStartError(f"{message}: {cause}")
    error.__cause__ = cause
    return error
