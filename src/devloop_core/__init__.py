"""devloop-core: watch, build and supervise machinery shared by devloop frontends."""

__version__ = "0.1.0"

# Config
from devloop_core.config import load_config, parse_config

# Coordination
from devloop_core.coordinator import BuildState, BuildStateCoordinator

# Errors
from devloop_core.errors import (
    CommandFailedError,
    ConfigError,
    DevloopError,
    PatternError,
    SupervisorStartError,
    TemplateError,
    WatchError,
)

# Models
from devloop_core.models import CompilerConfig, DevloopConfig, ProxyConfig, RunnerConfig
from devloop_core.sinks import CollectingSink, LoggingSink, NullSink, OutputSink
from devloop_core.supervisor import CommandSinks, ProcessSupervisor, render_command
from devloop_core.watcher import ChangeWatcher, FileEventMultiplexer, discover_directories

__all__ = [
    "__version__",
    # Models
    "CompilerConfig",
    "DevloopConfig",
    "ProxyConfig",
    "RunnerConfig",
    # Coordination
    "BuildState",
    "BuildStateCoordinator",
    "CommandSinks",
    "ProcessSupervisor",
    "render_command",
    # Output
    "OutputSink",
    "NullSink",
    "CollectingSink",
    "LoggingSink",
    # Watching
    "ChangeWatcher",
    "FileEventMultiplexer",
    "discover_directories",
    # Config
    "load_config",
    "parse_config",
    # Errors
    "DevloopError",
    "ConfigError",
    "PatternError",
    "TemplateError",
    "WatchError",
    "CommandFailedError",
    "SupervisorStartError",
]
