"""CLI entry point for devloop: loads or auto-generates config and runs the loop."""

import argparse
import asyncio
import cProfile
import logging
import resource
import sys
from pathlib import Path

from devloop import __version__
from devloop.console import Console
from devloop.controller import DevloopController
from devloop_core.config import load_config
from devloop_core.errors import DevloopError
from devloop_core.models import CompilerConfig, DevloopConfig, ProxyConfig, RunnerConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "devloop.toml"
LEGACY_CONFIG_NAME = "autogo.config"

OPEN_FILE_LIMIT = 50 * 1024

# Default config template for a Go web app behind the live-reload proxy
DEFAULT_CONFIG_TEMPLATE = """\
# Auto-generated devloop.toml

watch_root = "."

[[compiler]]
name = "build"
pattern = "*.go"
command = "go build -o .devloop/build"
run_on_start = true

[[compiler]]
name = "template"
pattern = "*.tmpl"
command = ""

[[runner]]
name = "run"
command = ".devloop/build"

[[proxy]]
listen = ":1984"
target = "http://127.0.0.1:3000"
"""


def preset_config(name: str) -> DevloopConfig:
    """Built-in configurations for working without a config file.

    Args:
        name: ``app`` (build + run + proxy), ``library`` (build only) or ``test`` (go test)

    Raises:
        ValueError: If the preset is unknown
    """
    if name == "app":
        return DevloopConfig(
            compilers=[
                CompilerConfig(name="build", pattern="*.go", command="go build -o .devloop/build"),
                CompilerConfig(name="template", pattern="*.tmpl", command=""),
            ],
            runners=[RunnerConfig(name="run", command=".devloop/build")],
            proxies=[ProxyConfig(listen=":1984", target="http://127.0.0.1:3000")],
        )
    if name == "library":
        return DevloopConfig(
            compilers=[CompilerConfig(name="build", pattern="*.go", command="go build -o .devloop/build")],
        )
    if name == "test":
        return DevloopConfig(compilers=[CompilerConfig(name="test", pattern="*.go", command="go test")])
    raise ValueError(f"Unknown preset: {name}")


def create_default_config(config_path: Path) -> bool:
    """
    Create a default devloop.toml if it doesn't exist.

    Args:
        config_path: Path where config should be created

    Returns:
        True if config was created, False if it already exists

    Raises:
        PermissionError: If unable to write to the directory
        OSError: If other file system errors occur
    """
    if config_path.exists():
        return False

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
    return True


def resolve_config_path(config: str | None, cwd: Path | None = None) -> Path:
    """Pick the config file: explicit path, else devloop.toml, else a legacy autogo.config."""
    cwd = cwd or Path.cwd()
    if config:
        return (cwd / config).resolve()
    default = cwd / DEFAULT_CONFIG_NAME
    legacy = cwd / LEGACY_CONFIG_NAME
    if not default.exists() and legacy.exists():
        return legacy.resolve()
    return default.resolve()


def raise_open_file_limit(target: int = OPEN_FILE_LIMIT) -> None:
    """Raise the soft open-file limit; every watched directory may cost a descriptor."""
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
        wanted = target if hard == resource.RLIM_INFINITY else min(target, hard)
        if soft == resource.RLIM_INFINITY or soft >= wanted:
            return
        resource.setrlimit(resource.RLIMIT_NOFILE, (wanted, hard))
        logger.debug(f"Raised open file limit from {soft} to {wanted}")
    except (ValueError, OSError) as e:
        logger.warning(f"Could not raise open file limit: {e}")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s", level=logging.WARNING)
    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger("devloop").setLevel(level)
    logging.getLogger("devloop_core").setLevel(level)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="devloop",
        description="Rebuild on change, restart on success, live-reload the browser.",
        epilog="Examples:\n"
        "  devloop                        # Auto-create devloop.toml and run\n"
        "  devloop -c my-loop.toml        # Use custom config\n"
        "  devloop --preset test          # Re-run 'go test' on every change\n"
        "  devloop --version              # Show version",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help=f"Path to config file (default: {DEFAULT_CONFIG_NAME}, or {LEGACY_CONFIG_NAME} if present)",
    )
    parser.add_argument(
        "-p",
        "--preset",
        choices=["app", "library", "test"],
        default=None,
        help="Use a built-in configuration instead of a config file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors in command output")
    parser.add_argument("--cpuprofile", metavar="FILE", default=None, help="Write a cProfile CPU profile to FILE")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


def load(args: argparse.Namespace) -> DevloopConfig:
    """Build the configuration the CLI arguments ask for, creating a default file if needed."""
    if args.preset:
        return preset_config(args.preset).resolve_paths()

    config_path = resolve_config_path(args.config)
    if create_default_config(config_path):
        print(f"Created default config at: {config_path}")
    return load_config(config_path)


def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the devloop CLI.

    Handles:
    - Argument parsing
    - Config loading (preset, explicit, default or legacy file)
    - Open-file limit and optional CPU profiling
    - Error handling and exit codes
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    profiler = cProfile.Profile() if args.cpuprofile else None
    try:
        config = load(args)
        raise_open_file_limit()

        console = Console(color=False if args.no_color else None)
        controller = DevloopController(config, console=console)

        if profiler:
            profiler.enable()
        asyncio.run(controller.run())

    except KeyboardInterrupt:
        sys.exit(130)
    except (PermissionError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except DevloopError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        if profiler:
            profiler.disable()
            profiler.dump_stats(args.cpuprofile)


if __name__ == "__main__":
    main()
