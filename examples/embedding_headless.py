#!/usr/bin/env python3
"""
Example: Headless Build Watcher
Shows how to use the devloop_core building blocks without the CLI or console.

This example demonstrates:
- Sharing one FileEventMultiplexer and one BuildStateCoordinator
- Rebuilding on change through ChangeWatcher + ProcessSupervisor
- Routing command output into stdlib logging with LoggingSink
- Blocking on aggregate build state

Usage:
    python examples/embedding_headless.py [DIRECTORY] [COMMAND]
"""

import asyncio
import logging
import os
import sys

from devloop_core import (
    BuildState,
    BuildStateCoordinator,
    ChangeWatcher,
    CommandSinks,
    FileEventMultiplexer,
    LoggingSink,
    ProcessSupervisor,
    discover_directories,
)

logger = logging.getLogger("headless")


class HeadlessBuilder:
    """
    Re-run a build command whenever a Python file changes.

    Use case: CI sidecars, editor integrations, custom dashboards.
    """

    def __init__(self, root: str, command: str):
        self.root = os.path.abspath(root)
        self.command = command
        self.multiplexer = FileEventMultiplexer()
        self.coordinator = BuildStateCoordinator()
        self.sinks = CommandSinks.single(LoggingSink("build"))

    async def report_state(self):
        """Log every transition between idle and compiling."""
        while True:
            await self.coordinator.wait_for_state(BuildState.COMPILING)
            logger.info("compiling...")
            await self.coordinator.wait_for_state(BuildState.IDLE)
            logger.info("build is green")

    async def run(self):
        watcher = ChangeWatcher(self.multiplexer, name="build")
        directories = await asyncio.to_thread(discover_directories, self.root)
        watcher.listen(directories, "*.py", "*_test.py")
        logger.info(f"Watching {len(directories)} directories under {self.root}")

        reporter = asyncio.create_task(self.report_state())
        try:
            async for path in watcher.changes():
                logger.info(f"changed: {os.path.relpath(path, self.root)}")
                supervisor = ProcessSupervisor("build", self.command, self.root, sinks=self.sinks)
                await self.coordinator.start_compile(self.command, supervisor)
        finally:
            reporter.cancel()
            watcher.close()
            self.coordinator.stop_all()
            self.multiplexer.stop()


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s: %(message)s")
    root = sys.argv[1] if len(sys.argv) > 1 else "."
    command = sys.argv[2] if len(sys.argv) > 2 else "python -m compileall -q ."

    try:
        asyncio.run(HeadlessBuilder(root, command).run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
