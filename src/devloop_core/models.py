"""Configuration models shared by the core and the application."""

import os
from dataclasses import dataclass, field


@dataclass
class CompilerConfig:
    """A watch rule: run ``command`` when files matching ``pattern`` change."""

    name: str
    """Rule name; prefixes console output and scopes build keys."""

    pattern: str
    """Comma-separated include globs."""

    exclude: str = ""
    """Comma-separated exclude globs, applied after includes."""

    command: str = ""
    """Command template (``$file``, ``$filerelative``, ``$wd``). Empty means watch-only."""

    working_dir: str = "."
    """Directory the command runs in."""

    run_on_start: bool = False
    """Build once at startup, before any change."""

    replace: dict[str, str] = field(default_factory=dict)
    """Literal substitutions applied to the command's output."""

    import_root: str | None = None
    """Search path for import expansion (e.g. ``$GOPATH/src``)."""

    def build_key(self, command: str) -> str:
        """Logical key for a rendered command: one live build per rule + command."""
        return self.name + command


@dataclass
class RunnerConfig:
    """A long-running process restarted whenever builds settle."""

    name: str
    """Runner name; prefixes console output."""

    command: str
    """Command line to run."""

    working_dir: str = "."
    """Directory the command runs in."""

    replace: dict[str, str] = field(default_factory=dict)
    """Literal substitutions applied to the command's output."""


@dataclass
class ProxyConfig:
    """Reverse proxy in front of a development server."""

    listen: str
    """Listen address, ``host:port`` (empty host = all interfaces)."""

    target: str
    """Origin URL requests are forwarded to."""

    def listen_address(self) -> tuple[str | None, int]:
        """Split ``listen`` into (host, port); host None means all interfaces."""
        host, sep, port = self.listen.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Invalid listen address {self.listen!r}, expected host:port")
        return (host.strip("[]") or None), int(port)


@dataclass
class DevloopConfig:
    """Everything one devloop process orchestrates."""

    watch_root: str = "."
    compilers: list[CompilerConfig] = field(default_factory=list)
    runners: list[RunnerConfig] = field(default_factory=list)
    proxies: list[ProxyConfig] = field(default_factory=list)

    def resolve_paths(self, base: str | os.PathLike | None = None) -> "DevloopConfig":
        """Make the watch root and working directories absolute (relative to ``base``, default cwd)."""
        base = os.path.abspath(base or os.getcwd())

        def absolute(path: str) -> str:
            return os.path.normpath(os.path.join(base, os.path.expanduser(path or ".")))

        self.watch_root = absolute(self.watch_root)
        for compiler in self.compilers:
            compiler.working_dir = absolute(compiler.working_dir)
            if compiler.import_root:
                compiler.import_root = absolute(compiler.import_root)
        for runner in self.runners:
            runner.working_dir = absolute(runner.working_dir)
        return self
