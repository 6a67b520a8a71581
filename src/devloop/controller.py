"""Orchestrator driver: wires watchers, builds, runners and proxies together. Primary embed point."""

import asyncio
import functools
import logging

from devloop.console import Console
from devloop.proxy import ProxyCoordinator
from devloop_core.coordinator import BuildState, BuildStateCoordinator
from devloop_core.errors import TemplateError
from devloop_core.models import CompilerConfig, DevloopConfig, RunnerConfig
from devloop_core.supervisor import ProcessSupervisor, render_command
from devloop_core.watcher import ChangeWatcher, FileEventMultiplexer, discover_directories

logger = logging.getLogger(__name__)


class DevloopController:
    """Run compilers on change, restart runners when builds settle, serve proxies.

    Usage (embedded):
        controller = DevloopController(config)
        await controller.start()
        ...
        await controller.stop()

    Or ``await controller.run()`` to run until ``request_stop()`` or a fatal error.
    """

    def __init__(
        self,
        config: DevloopConfig,
        console: Console | None = None,
        multiplexer: FileEventMultiplexer | None = None,
        coordinator: BuildStateCoordinator | None = None,
    ):
        """Initialize controller.

        Args:
            config: Resolved configuration (absolute paths)
            console: Console for command output (defaults to stdout)
            multiplexer: Shared filesystem subscription registry
            coordinator: Build state coordinator shared with proxies
        """
        self.config = config
        self.console = console or Console()
        self.multiplexer = multiplexer or FileEventMultiplexer()
        self.coordinator = coordinator or BuildStateCoordinator()
        self.proxies: list[ProxyCoordinator] = []
        self.watchers: dict[str, ChangeWatcher] = {}
        self.runners: dict[str, ProcessSupervisor] = {}
        self._tasks: set[asyncio.Task] = set()
        self._stop_requested: asyncio.Event | None = None
        self._fatal: BaseException | None = None
        self._started = False

    async def start(self) -> None:
        """Start proxies, install watchers, run start-up builds, then start runners.

        Raises:
            PatternError: If a compiler pattern is malformed
            WatchError: If a directory cannot be watched
        """
        if self._started:
            return
        self._started = True
        self._stop_requested = asyncio.Event()

        for proxy_config in self.config.proxies:
            proxy = ProxyCoordinator(proxy_config, self.coordinator)
            await proxy.start()
            self.proxies.append(proxy)

        for compiler in self.config.compilers:
            watcher = ChangeWatcher(self.multiplexer, name=compiler.name)
            self.watchers[compiler.name] = watcher
            await self._listen(watcher, compiler)
            if compiler.run_on_start:
                await self.build(compiler, compiler.command)

        for compiler in self.config.compilers:
            self._spawn(self._watch_loop(compiler, self.watchers[compiler.name]), f"watch:{compiler.name}")

        # runners start only once every compiler had its chance to build
        for runner in self.config.runners:
            self._spawn(self._runner_loop(runner), f"runner:{runner.name}")

        logger.info(
            f"Started {len(self.watchers)} compiler(s), {len(self.config.runners)} runner(s), "
            f"{len(self.proxies)} proxy(ies)"
        )

    async def run(self) -> None:
        """Start and block until ``request_stop()`` or a background task fails.

        Raises:
            Exception: The first fatal error raised by a background task
        """
        await self.start()
        try:
            await self._stop_requested.wait()
        finally:
            await self.stop()
        if self._fatal is not None:
            raise self._fatal

    def request_stop(self) -> None:
        """Ask ``run()`` to return (sync-safe from the loop thread)."""
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def stop(self) -> None:
        """Cancel loops, kill every process, close watchers and proxies."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for watcher in self.watchers.values():
            watcher.close()
        for supervisor in self.runners.values():
            supervisor.stop()
        self.coordinator.stop_all()
        for proxy in self.proxies:
            await proxy.stop()
        self.multiplexer.stop()
        self._started = False
        logger.info("Stopped")

    async def build(self, compiler: CompilerConfig, command: str) -> asyncio.Future:
        """Start one build of ``command`` for ``compiler``, superseding the same key.

        Returns:
            Future that completes when the build finished and the state was updated
        """
        supervisor = ProcessSupervisor(
            compiler.name,
            command,
            compiler.working_dir,
            compiler.replace,
            self.console.sinks_for(compiler.name),
        )
        done = await self.coordinator.start_compile(compiler.build_key(command), supervisor)
        if command:
            supervisor.announce("Building")
        return done

    async def _listen(self, watcher: ChangeWatcher, compiler: CompilerConfig) -> None:
        directories = await asyncio.to_thread(
            discover_directories,
            self.config.watch_root,
            compiler.pattern,
            compiler.import_root,
        )
        watcher.listen(directories, compiler.pattern, compiler.exclude)

    async def _watch_loop(self, compiler: CompilerConfig, watcher: ChangeWatcher) -> None:
        async for path in watcher.changes():
            logger.debug(f"{compiler.name}: changed {path}")
            try:
                command = render_command(compiler.command, path, compiler.working_dir)
            except TemplateError as e:
                logger.error(f"{compiler.name}: {e}")
                continue
            await self.build(compiler, command)

            # new directories may have appeared; refresh the watch set
            await self._listen(watcher, compiler)

    async def _runner_loop(self, runner: RunnerConfig) -> None:
        supervisor = ProcessSupervisor(
            runner.name,
            runner.command,
            runner.working_dir,
            runner.replace,
            self.console.sinks_for(runner.name),
        )
        self.runners[runner.name] = supervisor

        while True:
            await self.coordinator.wait_for_state(BuildState.IDLE)
            stopped = supervisor.start()
            stopped.add_done_callback(functools.partial(_announce_end, supervisor))
            await self.coordinator.wait_for_state(BuildState.COMPILING)
            supervisor.stop()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{task.get_name()} failed: {error}", exc_info=error)
            if self._fatal is None:
                self._fatal = error
            self.request_stop()


def _announce_end(supervisor: ProcessSupervisor, stopped: asyncio.Future) -> None:
    if stopped.cancelled():
        return
    error = stopped.result()
    supervisor.announce("<end>" if error is None else f"<end: {error}>")
