"""Configuration parsing for devloop.

TOML is the primary format. JSON files using the older ``autogo.config`` key
names (``watchroot``, ``compilers``, ``httpproxies``, ``workingdir``,
``runonstart``) are accepted too.
"""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

from devloop_core.errors import ConfigError
from devloop_core.models import CompilerConfig, DevloopConfig, ProxyConfig, RunnerConfig

logger = logging.getLogger(__name__)

_SECTION_ALIASES = {
    "watch_root": ("watch_root", "watchroot"),
    "compilers": ("compiler", "compilers"),
    "runners": ("runner", "runners"),
    "proxies": ("proxy", "proxies", "httpproxies"),
}

_FIELD_ALIASES = {
    "workingdir": "working_dir",
    "runonstart": "run_on_start",
    "importroot": "import_root",
}


def _lookup(raw: dict[str, Any], key: str, default: Any = None) -> Any:
    for alias in _SECTION_ALIASES[key]:
        if alias in raw:
            return raw[alias]
    return default


def _normalize(entry: Any, kind: str, index: int) -> dict[str, Any]:
    if not isinstance(entry, dict):
        raise ConfigError(f"{kind} #{index + 1} must be a table, got {type(entry).__name__}")
    return {_FIELD_ALIASES.get(key.lower(), key.lower()): value for key, value in entry.items()}


def _require(entry: dict[str, Any], kind: str, index: int, *keys: str) -> None:
    missing = [key for key in keys if not entry.get(key)]
    if missing:
        label = entry.get("name") or f"#{index + 1}"
        raise ConfigError(f"{kind} {label} is missing required field(s): {', '.join(missing)}")


def _replacements(entry: dict[str, Any], kind: str) -> dict[str, str]:
    replace = entry.get("replace") or {}
    if not isinstance(replace, dict):
        raise ConfigError(f"{kind} {entry.get('name')}: 'replace' must be a table of strings")
    return {str(old): str(new) for old, new in replace.items()}


def parse_config(raw: dict[str, Any]) -> DevloopConfig:
    """Build a DevloopConfig from already-decoded TOML/JSON data.

    Raises:
        ConfigError: If required fields are missing or names collide
    """
    config = DevloopConfig(watch_root=str(_lookup(raw, "watch_root", ".")))

    for index, entry in enumerate(_lookup(raw, "compilers", []) or []):
        entry = _normalize(entry, "compiler", index)
        _require(entry, "compiler", index, "name", "pattern")
        config.compilers.append(
            CompilerConfig(
                name=str(entry["name"]),
                pattern=str(entry["pattern"]),
                exclude=str(entry.get("exclude") or ""),
                command=str(entry.get("command") or ""),
                working_dir=str(entry.get("working_dir") or "."),
                run_on_start=bool(entry.get("run_on_start", False)),
                replace=_replacements(entry, "compiler"),
                import_root=entry.get("import_root") or None,
            )
        )

    for index, entry in enumerate(_lookup(raw, "runners", []) or []):
        entry = _normalize(entry, "runner", index)
        _require(entry, "runner", index, "command")
        config.runners.append(
            RunnerConfig(
                name=str(entry.get("name") or f"runner{index + 1}"),
                command=str(entry["command"]),
                working_dir=str(entry.get("working_dir") or "."),
                replace=_replacements(entry, "runner"),
            )
        )

    for index, entry in enumerate(_lookup(raw, "proxies", []) or []):
        entry = _normalize(entry, "proxy", index)
        _require(entry, "proxy", index, "listen", "target")
        proxy = ProxyConfig(listen=str(entry["listen"]), target=str(entry["target"]))
        try:
            proxy.listen_address()
        except ValueError as e:
            raise ConfigError(str(e)) from e
        config.proxies.append(proxy)

    names = [compiler.name for compiler in config.compilers]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate compiler name(s): {', '.join(duplicates)}")

    return config


def load_config(path: str | Path) -> DevloopConfig:
    """Load configuration from a TOML or JSON file.

    Relative paths inside the file resolve against the file's directory.

    Args:
        path: Path to config file (``.json`` is parsed as JSON, anything else as TOML)

    Returns:
        DevloopConfig with absolute paths

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    path = Path(path)

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}\nRun 'devloop' without arguments to auto-create a default config.")

    try:
        text = path.read_text()
        if path.suffix == ".json" or path.name == "autogo.config":
            raw = json.loads(text)
        else:
            raw = tomllib.loads(text)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a table/object at the top level")

    config = parse_config(raw).resolve_paths(path.resolve().parent)
    logger.debug(
        f"Loaded {path}: {len(config.compilers)} compiler(s), "
        f"{len(config.runners)} runner(s), {len(config.proxies)} proxy(ies)"
    )
    return config
