"""Exception types shared by devloop components."""


class DevloopError(Exception):
    """Base class for every error raised by devloop."""


class ConfigError(DevloopError):
    """Configuration could not be read or is invalid. Fatal at startup."""


class PatternError(ConfigError):
    """A glob pattern is malformed."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class TemplateError(DevloopError):
    """A command template cannot be rendered for the given path."""


class WatchError(DevloopError):
    """A filesystem subscription could not be established."""


class CommandFailedError(DevloopError):
    """A supervised command exited with a non-zero status."""

    def __init__(self, command: str, returncode: int):
        if returncode < 0:
            detail = f"killed by signal {-returncode}"
        else:
            detail = f"exit status {returncode}"
        super().__init__(f"{command!r}: {detail}")
        self.command = command
        self.returncode = returncode


class SupervisorStartError(DevloopError):
    """The pseudo-terminal or the process itself could not be created."""
