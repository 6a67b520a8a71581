"""Static import scanning for compiled-language source trees.

A binary built from ``./cmd/server`` may import packages that live elsewhere
(sibling directories, a GOPATH checkout, a shared include directory). Watching
only the watch root would miss edits there, so the watch set is expanded with
every directory reachable through import/include declarations.

Only declarations are scanned; nothing is compiled or type-checked.
"""

import functools
import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_GO_COMMENT = re.compile(r"/\*.*?\*/|//[^\n]*", re.DOTALL)
_GO_PACKAGE = re.compile(r"^\s*package\s+\w+", re.MULTILINE)
_GO_BODY = re.compile(r"^(?:func|type|var|const)\b", re.MULTILINE)
_GO_IMPORT_BLOCK = re.compile(r"\bimport\s*\((.*?)\)", re.DOTALL)
_GO_IMPORT_SPEC = re.compile(r"(?:[\w.]+\s+)?[\"`]([^\"`]+)[\"`]")
_GO_IMPORT_SINGLE = re.compile(r"\bimport\s+((?:[\w.]+\s+)?[\"`][^\"`]+[\"`])")
_C_INCLUDE = re.compile(r"^\s*#\s*include\s*[\"<]([^\">]+)[\">]", re.MULTILINE)


def parse_go_imports(source: str) -> list[str] | None:
    """Return the import paths declared by a Go file, or None if it has no package clause."""
    source = _GO_COMMENT.sub("", source)
    if not _GO_PACKAGE.search(source):
        return None

    body = _GO_BODY.search(source)
    header = source[: body.start()] if body else source

    imports = []
    for block in _GO_IMPORT_BLOCK.findall(header):
        imports.extend(_GO_IMPORT_SPEC.findall(block))
    header = _GO_IMPORT_BLOCK.sub("", header)
    for spec in _GO_IMPORT_SINGLE.findall(header):
        imports.extend(_GO_IMPORT_SPEC.findall(spec))
    return imports


def parse_c_includes(source: str) -> list[str] | None:
    """Return the ``#include`` targets of a C/C++ file, as directory-relative paths."""
    # an include names a file; the directory holding it is what gets watched
    return [os.path.dirname(target) or "." for target in _C_INCLUDE.findall(source)]


@functools.lru_cache(maxsize=8192)
def _parse_source(
    parse: Callable[[str], list[str] | None], path: str, mtime_ns: int, size: int
) -> tuple[str, ...] | None:
    # keyed on (mtime, size) so rediscovery after every build only rereads edited files
    with open(path, encoding="utf-8", errors="replace") as f:
        parsed = parse(f.read())
    return None if parsed is None else tuple(parsed)


def _gopath_source_root() -> str | None:
    gopath = os.environ.get("GOPATH")
    if not gopath:
        return None
    return os.path.join(gopath.split(os.pathsep)[0], "src")


@dataclass(frozen=True)
class ImportSyntax:
    """How to find imports for one language."""

    name: str
    extensions: tuple[str, ...]
    parse: Callable[[str], list[str] | None]
    default_root: Callable[[], str | None] = lambda: None


GO = ImportSyntax("go", (".go",), parse_go_imports, _gopath_source_root)
C_FAMILY = ImportSyntax("c", (".c", ".h", ".cc", ".cpp", ".cxx", ".hh", ".hpp"), parse_c_includes)

SYNTAXES = (GO, C_FAMILY)


def syntax_for_patterns(patterns: Iterable[str]) -> ImportSyntax | None:
    """Pick the import syntax targeted by include patterns of the form ``*.ext``.

    Returns:
        The syntax of the first pattern naming a known source extension, else None
    """
    for pattern in patterns:
        if not pattern.startswith("*.") or any(c in pattern[1:] for c in "*?[/"):
            continue
        extension = pattern[1:]
        for syntax in SYNTAXES:
            if extension in syntax.extensions:
                return syntax
    return None


class ImportGraphExpander:
    """Expand a directory set along import declarations until it stops growing."""

    def __init__(self, syntax: ImportSyntax, source_root: str | None = None):
        """Initialize expander.

        Args:
            syntax: Language whose imports are followed
            source_root: Search path imports are also resolved against
                (defaults to the language's conventional root, e.g. ``$GOPATH/src``)
        """
        self.syntax = syntax
        self.source_root = source_root or syntax.default_root()

    def expand(self, directories: Iterable[str]) -> set[str]:
        """Return ``directories`` plus every directory reachable through imports.

        Each directory is processed at most once, so import cycles terminate.
        """
        result = set(directories)
        processed: set[str] = set()
        pending = sorted(result, reverse=True)

        while pending:
            directory = pending.pop()
            if directory in processed:
                continue
            processed.add(directory)

            imports = self._scan_directory(directory)
            if imports is None:
                continue
            result.add(directory)
            for imported in imports:
                for candidate in self._resolve(directory, imported):
                    if candidate not in processed:
                        pending.append(candidate)

        return result

    def _resolve(self, directory: str, imported: str) -> list[str]:
        # both resolutions are followed; either may be the real one
        candidates = [os.path.normpath(os.path.join(directory, imported))]
        if self.source_root:
            candidates.append(os.path.normpath(os.path.join(self.source_root, imported)))
        return candidates

    def _scan_directory(self, directory: str) -> list[str] | None:
        """Parse every source file in ``directory``.

        Returns:
            Imports found, or None if the directory holds no parseable source file
        """
        try:
            entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
        except OSError:
            return None

        found = False
        imports: list[str] = []
        for entry in entries:
            if not entry.name.endswith(self.syntax.extensions) or not entry.is_file():
                continue
            try:
                st = entry.stat()
                parsed = _parse_source(self.syntax.parse, entry.path, st.st_mtime_ns, st.st_size)
            except OSError as e:
                logger.warning(f"Cannot read {entry.path}: {e}")
                continue
            if parsed is None:
                logger.debug(f"Skipping {entry.path}: not a {self.syntax.name} source file")
                continue
            found = True
            imports.extend(parsed)

        if found:
            logger.debug(f"{directory}: {len(imports)} import(s)")
            return imports
        return None
