"""Aggregate build state shared by compilers, runners and proxies."""

import asyncio
import logging
import time
from enum import Enum

from devloop_core.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# Pause between killing a superseded build and starting its replacement.
FLUSH_DELAY = 0.025


class BuildState(Enum):
    """Aggregate state over every build key."""

    IDLE = "idle"
    IDLE_WITH_ERRORS = "idle_with_errors"
    COMPILING = "compiling"


class BuildStateCoordinator:
    """Serialize builds per key and publish the aggregate build state.

    The state is derived, never set directly:

    - COMPILING while any key has a live supervisor
    - IDLE_WITH_ERRORS when nothing is live and some key's last build failed
    - IDLE otherwise

    Every change is broadcast to tasks blocked in ``wait_for_state()``.
    Build failures are recorded per key and never raised.
    """

    def __init__(self, flush_delay: float = FLUSH_DELAY):
        self.flush_delay = flush_delay
        self._condition = asyncio.Condition()
        self._state = BuildState.IDLE
        self._live: dict[str, ProcessSupervisor] = {}
        self._errors: dict[str, BaseException] = {}

    @property
    def state(self) -> BuildState:
        return self._state

    def failed_keys(self) -> list[str]:
        """Keys whose most recent build failed."""
        return sorted(self._errors)

    def live_keys(self) -> list[str]:
        """Keys with a build in progress."""
        return sorted(self._live)

    async def start_compile(self, key: str, supervisor: ProcessSupervisor) -> asyncio.Future:
        """Start a build for ``key``, superseding any build already running for it.

        Args:
            key: Logical build key (rule name + rendered command)
            supervisor: Supervisor for the new build

        Returns:
            Future that finishes once the build has completed and the state was updated
        """
        async with self._condition:
            current = self._live.get(key)
            if current is not None:
                logger.debug(f"Superseding running build for {key!r}")
                current.stop()
            self._errors.pop(key, None)
            self._live[key] = supervisor
            self._set_state(BuildState.COMPILING)

        # let killed processes flush their last output before the new one starts writing
        await asyncio.sleep(self.flush_delay)

        async with self._condition:
            if self._live.get(key) is not supervisor:
                logger.debug(f"Build for {key!r} superseded before it started")
                skipped = asyncio.get_running_loop().create_future()
                skipped.set_result(None)
                return skipped

        started = time.monotonic()
        stopped = supervisor.start()
        return asyncio.create_task(self._await_completion(key, supervisor, stopped, started))

    async def _await_completion(
        self,
        key: str,
        supervisor: ProcessSupervisor,
        stopped: asyncio.Future,
        started: float,
    ) -> BaseException | None:
        error = await stopped
        if error is None:
            supervisor.announce(f"<end: {time.monotonic() - started:.2f}s>")
        else:
            supervisor.announce(f"<end: {error}>", failed=True)

        async with self._condition:
            if self._live.get(key) is not supervisor:
                # a newer build owns this key; its own completion decides the state
                return error
            del self._live[key]
            if error is None:
                self._errors.pop(key, None)
            else:
                self._errors[key] = error
            self._recompute()
        return error

    def _recompute(self) -> None:
        if self._live:
            self._set_state(BuildState.COMPILING)
        elif self._errors:
            self._set_state(BuildState.IDLE_WITH_ERRORS)
        else:
            self._set_state(BuildState.IDLE)

    def _set_state(self, state: BuildState) -> None:
        # caller holds the condition lock
        if state is not self._state:
            logger.debug(f"Build state {self._state.value} -> {state.value}")
        self._state = state
        self._condition.notify_all()

    def stop_all(self) -> None:
        """Kill every live build (shutdown). Their completions still update the state."""
        for supervisor in list(self._live.values()):
            supervisor.stop()

    async def wait_for_state(self, target: BuildState) -> None:
        """Block until the aggregate state equals ``target``."""
        async with self._condition:
            await self._condition.wait_for(lambda: self._state is target)
