"""Pytest configuration and fixtures."""

import asyncio
import sys
from pathlib import Path

import pytest

# Add src directory to Python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from devloop_core.errors import CommandFailedError  # noqa: E402
from devloop_core.sinks import CollectingSink  # noqa: E402


class FakeWatch:
    """Stand-in for watchdog's ObservedWatch."""

    def __init__(self, path):
        self.path = path


class FakeObserver:
    """Observer double recording schedule/unschedule calls; never delivers events."""

    def __init__(self):
        self.scheduled: dict[str, FakeWatch] = {}
        self.schedule_calls: list[str] = []
        self.recursive: dict[str, bool] = {}
        self.unschedule_calls: list[str] = []
        self.started = 0
        self._alive = False

    def schedule(self, handler, path, recursive=False):
        self.schedule_calls.append(path)
        self.recursive[path] = recursive
        watch = FakeWatch(path)
        self.scheduled[path] = watch
        return watch

    def unschedule(self, watch):
        self.unschedule_calls.append(watch.path)
        del self.scheduled[watch.path]

    def start(self):
        self.started += 1
        self._alive = True

    def is_alive(self):
        return self._alive

    def stop(self):
        self._alive = False

    def join(self, timeout=None):
        pass


class FakeSupervisor:
    """Supervisor double whose completion is driven by the test."""

    def __init__(self, name="fake", events=None):
        self.name = name
        self.events = events if events is not None else []
        self.started = False
        self.stopped = False
        self.future = None
        self.announcements: list[str] = []

    def start(self):
        self.started = True
        self.events.append(("start", self.name))
        self.future = asyncio.get_running_loop().create_future()
        return self.future

    def stop(self):
        self.stopped = True
        self.events.append(("stop", self.name))
        if self.future is not None and not self.future.done():
            self.future.set_result(CommandFailedError(self.name, -9))

    def finish(self, error=None):
        self.future.set_result(error)

    def announce(self, message, failed=False):
        self.announcements.append(message)


@pytest.fixture
def fake_observer():
    return FakeObserver()


@pytest.fixture
def sink():
    return CollectingSink()


async def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(interval)
