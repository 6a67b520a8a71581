"""devloop: rebuild on change, restart on success, live-reload the browser."""

__version__ = "0.1.0"

# Public API
from devloop.console import Console
from devloop.controller import DevloopController
from devloop.proxy import ProxyCoordinator

__all__ = [
    "__version__",
    # Primary components
    "DevloopController",
    "ProxyCoordinator",
    "Console",
]
