"""File watching using watchdog.

One ``FileEventMultiplexer`` owns the watchdog observer for the whole process
and keeps a single subscription per directory no matter how many
``ChangeWatcher`` instances need it. Watches are scheduled recursively on the
top-most subscribed directories only, since every watchdog watch costs the
process its own inotify instance on Linux. Each ``ChangeWatcher`` filters events
against its own patterns, debounces them per path and hands changed paths to a
single consumer.
"""

import asyncio
import logging
import os
import threading
import time
from collections.abc import AsyncIterator, Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from devloop_core import patterns
from devloop_core.errors import WatchError
from devloop_core.imports import ImportGraphExpander, syntax_for_patterns

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.25

# Events on files last modified longer ago than this are treated as metadata noise.
STALE_AFTER_SECONDS = 1.0

_DISPATCHED_EVENTS = {"created", "modified", "moved", "deleted"}


def _content_signature(path: str) -> tuple[int, int] | None:
    """Return ``(st_mtime_ns, st_size)`` for ``path``, or None if it is gone."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


class _DispatchHandler(FileSystemEventHandler):
    """Route raw watchdog events to the multiplexer."""

    def __init__(self, multiplexer: "FileEventMultiplexer"):
        self.multiplexer = multiplexer

    def on_any_event(self, event: FileSystemEvent) -> None:
        # opened/closed notifications and directory events carry no content change
        if event.is_directory or event.event_type not in _DISPATCHED_EVENTS:
            return
        self.multiplexer.dispatch(os.fsdecode(event.src_path))
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            self.multiplexer.dispatch(os.fsdecode(dest_path))


class FileEventMultiplexer:
    """Process-wide registry of directory subscriptions.

    Construct once at startup and pass to every ``ChangeWatcher``. The
    observer is started on the first subscription.

    Subscriptions are per directory, but the observer only carries one
    recursive watch per top-most subscribed directory. Directories below an
    already watched one share its watch, and ``dispatch`` drops events whose
    parent directory nobody subscribed to.
    """

    def __init__(self, observer=None):
        """Initialize multiplexer.

        Args:
            observer: Observer to schedule watches on (defaults to watchdog's platform observer)
        """
        self.observer = observer if observer is not None else Observer()
        self._handler = _DispatchHandler(self)
        self._lock = threading.Lock()
        self._watchers: dict[str, set["ChangeWatcher"]] = {}
        self._watches: dict[str, ObservedWatch] = {}
        self._started = False

        # held by ChangeWatcher.listen so only one watch set changes at a time
        self.update_lock = threading.Lock()

    def subscribe(self, directory: str, watcher: "ChangeWatcher") -> None:
        """Register ``watcher`` for events in ``directory`` (non-recursive).

        Raises:
            WatchError: If the directory cannot be watched
        """
        with self._lock:
            watchers = self._watchers.get(directory)
            if watchers is None:
                watchers = self._watchers[directory] = set()
                try:
                    self._sync_watches()
                except WatchError:
                    del self._watchers[directory]
                    raise
                if not self._is_covered(directory) and directory not in self._watches:
                    # vanished before it could be watched
                    del self._watchers[directory]
                    self._sync_watches()
                    return
                self._ensure_started()
            watchers.add(watcher)

    def unsubscribe(self, directory: str, watcher: "ChangeWatcher") -> None:
        """Drop ``watcher`` from ``directory``; the last one out removes the subscription."""
        with self._lock:
            watchers = self._watchers.get(directory)
            if watchers is None:
                return
            watchers.discard(watcher)
            if watchers:
                return
            del self._watchers[directory]
            self._sync_watches()

    def _is_covered(self, directory: str) -> bool:
        """True if a proper ancestor of ``directory`` is subscribed."""
        parent = os.path.dirname(directory)
        while parent != directory:
            if parent in self._watchers:
                return True
            directory, parent = parent, os.path.dirname(parent)
        return False

    def _sync_watches(self) -> None:
        """Schedule the top-most subscribed directories and drop watches nobody needs.

        New watches are scheduled before old ones go so a subtree is never
        left unobserved in between.

        Raises:
            WatchError: If a directory cannot be watched
        """
        roots = {directory for directory in self._watchers if not self._is_covered(directory)}

        for directory in sorted(roots - self._watches.keys()):
            try:
                self._watches[directory] = self.observer.schedule(self._handler, directory, recursive=True)
            except FileNotFoundError:
                logger.warning(f"Directory vanished before it could be watched: {directory}")
            except OSError as e:
                raise WatchError(f"Cannot watch {directory}: {e}") from e

        for directory in sorted(self._watches.keys() - roots):
            watch = self._watches.pop(directory)
            try:
                self.observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logger.debug(f"Unschedule of {directory} failed: {e}")

    def watched_directories(self) -> set[str]:
        with self._lock:
            return set(self._watchers)

    def watch_roots(self) -> set[str]:
        """Directories the observer currently carries a recursive watch for."""
        with self._lock:
            return set(self._watches)

    def watchers_for(self, directory: str) -> set["ChangeWatcher"]:
        with self._lock:
            return set(self._watchers.get(directory, ()))

    def dispatch(self, path: str) -> None:
        """Hand a changed path to every watcher subscribed to its parent directory."""
        for watcher in self.watchers_for(os.path.dirname(path)):
            watcher.trigger(path)

    def _ensure_started(self) -> None:
        if self._started:
            return
        try:
            self.observer.start()
        except OSError as e:
            raise WatchError(f"Cannot start filesystem observer: {e}") from e
        self._started = True
        logger.debug("Filesystem observer started")

    def stop(self) -> None:
        """Stop the observer thread."""
        if self._started and self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=2.0)
            logger.debug("Filesystem observer stopped")
        self._started = False


class ChangeWatcher:
    """Debounced, pattern-filtered change stream over a set of directories."""

    def __init__(
        self,
        multiplexer: FileEventMultiplexer,
        loop: asyncio.AbstractEventLoop | None = None,
        debounce: float = DEBOUNCE_SECONDS,
        name: str = "",
    ):
        """Initialize watcher.

        Args:
            multiplexer: Shared subscription registry
            loop: Event loop timers and the change stream live on (defaults to the running loop)
            debounce: Quiet period after the last event for a path before it is emitted
            name: Label used in log messages
        """
        self.multiplexer = multiplexer
        self.loop = loop or asyncio.get_running_loop()
        self.debounce = debounce
        self.name = name
        self.directories: set[str] = set()
        self.include: list[str] = []
        self.exclude: list[str] = []
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._emitting: set[asyncio.Task] = set()
        self._changes: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._emit_lock = asyncio.Lock()
        self._closed = False

        # (st_mtime_ns, st_size) of each path when its last change was emitted
        self._emitted: dict[str, tuple[int, int]] = {}
        self._signature_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ChangeWatcher(name={self.name!r}, directories={len(self.directories)})"

    def listen(self, directories: Iterable[str], include_pattern: str, exclude_pattern: str = "") -> None:
        """Replace the watch set.

        Directories are diffed against the previous set; patterns are replaced.
        If any new directory cannot be watched, the previous watch set is left
        as it was.

        Raises:
            PatternError: If a pattern is malformed
            WatchError: If a directory cannot be watched
        """
        include = patterns.split_patterns(include_pattern)
        exclude = patterns.split_patterns(exclude_pattern)
        patterns.validate_patterns(include + exclude)
        directories = set(directories)

        with self.multiplexer.update_lock:
            added: list[str] = []
            try:
                for directory in sorted(directories - self.directories):
                    self.multiplexer.subscribe(directory, self)
                    added.append(directory)
            except WatchError:
                for directory in added:
                    self.multiplexer.unsubscribe(directory, self)
                raise
            for directory in self.directories - directories:
                self.multiplexer.unsubscribe(directory, self)

            self.directories = directories
            self.include = include
            self.exclude = exclude

        logger.debug(f"{self.name or 'watcher'}: watching {len(directories)} directories for {include}")

    def trigger(self, path: str) -> None:
        """Handle one raw event for ``path``. Safe to call from any thread."""
        if self._closed or not patterns.matches(path, self.include, self.exclude):
            return

        signature = _content_signature(path)
        if signature is not None:
            if time.time() - signature[0] / 1e9 > STALE_AFTER_SECONDS:
                logger.debug(f"Ignoring event for {path}: not modified recently")
                return
            with self._signature_lock:
                unchanged = self._emitted.get(path) == signature
            if unchanged:
                logger.debug(f"Ignoring event for {path}: content unchanged since last change")
                return

        try:
            self.loop.call_soon_threadsafe(self._arm, path)
        except RuntimeError:
            # loop already closed during shutdown
            logger.debug(f"Dropping event for {path}: event loop closed")

    def _arm(self, path: str) -> None:
        if self._closed:
            return
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._timers[path] = self.loop.call_later(self.debounce, self._fire, path)

    def _fire(self, path: str) -> None:
        self._timers.pop(path, None)
        signature = _content_signature(path)
        with self._signature_lock:
            if signature is None:
                self._emitted.pop(path, None)
            else:
                self._emitted[path] = signature
        task = self.loop.create_task(self._emit(path))
        self._emitting.add(task)
        task.add_done_callback(self._emitting.discard)

    async def _emit(self, path: str) -> None:
        # rendezvous: one emitter at a time, and it waits until the consumer took the path
        async with self._emit_lock:
            await self._changes.put(path)
            await self._changes.join()

    async def next_change(self) -> str:
        """Wait for the next debounced change and return its path."""
        path = await self._changes.get()
        self._changes.task_done()
        return path

    async def changes(self) -> AsyncIterator[str]:
        """Iterate over debounced changes until the watcher is closed."""
        while not self._closed:
            yield await self.next_change()

    def pending_paths(self) -> set[str]:
        """Paths with an armed debounce timer."""
        return set(self._timers)

    def close(self) -> None:
        """Unsubscribe every directory and cancel pending timers and emissions."""
        self._closed = True
        with self.multiplexer.update_lock:
            for directory in self.directories:
                self.multiplexer.unsubscribe(directory, self)
            self.directories = set()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in list(self._emitting):
            task.cancel()


def discover_directories(
    root: str,
    include_pattern: str = "",
    import_root: str | None = None,
) -> set[str]:
    """Collect the directories a compiler rule must watch.

    Walks ``root`` and keeps every directory except hidden ones (name starting
    with ``.``), whose whole subtree is pruned. When the include pattern names
    a language with import declarations, the set is expanded along imports.

    Args:
        root: Absolute watch root
        include_pattern: Comma-separated include patterns of the rule
        import_root: Search path imports are also resolved against

    Returns:
        Set of absolute directory paths
    """
    root = os.path.abspath(root)
    result = {root}
    for dirpath, dirnames, _ in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if not name.startswith("."))
        for name in dirnames:
            result.add(os.path.join(dirpath, name))

    syntax = syntax_for_patterns(patterns.split_patterns(include_pattern))
    if syntax is not None:
        result = ImportGraphExpander(syntax, import_root).expand(result)
    return result
