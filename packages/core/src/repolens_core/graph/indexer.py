"""Repository indexer with a content-hash keyed cache.

For every eligible ``.py`` file the indexer records its top-level
declarations (functions, classes and ``Class.method`` methods) and, for each
declaration, the call expressions that resolve to a declaration elsewhere in
the repository.

Indexing runs in two phases:
  1. Hash every file. A cache entry with the same hash is reused verbatim;
     every other file is parsed.
  2. Resolve the call sites of the parsed files against the declaration
     table of the whole repository (cached and freshly parsed files alike),
     upsert their cache entries and purge entries of deleted files.

Call resolution returns an explicit outcome: a CallTarget, an Unresolved
marker (the call names something that looks like repository code but no
declaration matches) or None (builtins, third-party libraries and method
calls on arbitrary objects, which are out of scope). Unresolved calls are
counted, not raised.
"""

from __future__ import annotations

import ast
import builtins
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

from repolens_core.errors import ParseFailureError
from repolens_core.session import content_hash
from repolens_store.models import CodeIndexEntry

if TYPE_CHECKING:
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)

_BUILTIN_NAMES = frozenset(dir(builtins))
_SELF_NAMES = ("self", "cls")


@dataclass(frozen=True)
class CallGraphEdge:
    source_file: str
    source_symbol: str
    target_file: str
    target_symbol: str
    line: int

    @property
    def cross_file(self) -> bool:
        return self.source_file != self.target_file


@dataclass
class FileIndex:
    file_path: str
    file_hash: str
    declarations: list[str] = field(default_factory=list)
    exported: list[str] = field(default_factory=list)
    edges: list[CallGraphEdge] = field(default_factory=list)
    unresolved: int = 0
    parse_failed: bool = False
    cached: bool = False

    @property
    def fan_out(self) -> int:
        return sum(1 for e in self.edges if e.cross_file)


@dataclass
class IndexStats:
    total: int = 0
    cached: int = 0
    reparsed: int = 0
    unresolved_calls: int = 0
    parse_failures: int = 0


@dataclass
class RepositoryIndex:
    files: dict[str, FileIndex]
    stats: IndexStats

    @property
    def edges(self) -> list[CallGraphEdge]:
        return [edge for fi in self.files.values() for edge in fi.edges]


@dataclass(frozen=True)
class CallTarget:
    file: str
    symbol: str


@dataclass(frozen=True)
class Unresolved:
    name: str


@dataclass
class _CallSite:
    symbol: str
    class_name: str | None
    parts: tuple[str, ...]
    line: int


@dataclass
class _ParsedFile:
    declarations: list[str] = field(default_factory=list)
    exported: list[str] = field(default_factory=list)
    call_sites: list[_CallSite] = field(default_factory=list)
    # local name -> ("module", dotted) for ``import x.y [as z]``
    #            -> ("from", dotted, name) for ``from x import name [as z]``
    bindings: dict[str, tuple] = field(default_factory=dict)
    local_names: set[str] = field(default_factory=set)
    parse_failed: bool = False


# ---------------------------------------------------------------------------
# Module naming
# ---------------------------------------------------------------------------


def module_parts(file_path: str) -> list[str]:
    """Dotted module name parts of a repository file (``pkg/__init__.py`` -> ``[pkg]``)."""
    parts = file_path[: -len(".py")].split("/") if file_path.endswith(".py") else file_path.split("/")
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return parts


def build_module_map(files: list[str]) -> dict[str, str]:
    """Map every dotted suffix of each file's module path to that file.

    ``src/app/models.py`` is reachable as ``src.app.models``, ``app.models``
    and ``models``, so imports resolve whether or not the repository uses a
    src/ layout. The first file in sorted order wins a contested name.
    """
    mapping: dict[str, str] = {}
    for path in sorted(files):
        parts = module_parts(path)
        for i in range(len(parts)):
            mapping.setdefault(".".join(parts[i:]), path)
    return mapping


def absolute_module(file_path: str, level: int, module: str | None) -> str:
    """Resolve a relative import (``from ..x import y``) to a dotted name."""
    package = file_path.split("/")[:-1]
    if level > 1:
        package = package[: max(0, len(package) - (level - 1))]
    tail = module.split(".") if module else []
    return ".".join(package + tail)


def collect_bindings(tree: ast.Module, file_path: str) -> dict[str, tuple]:
    bindings: dict[str, tuple] = {}
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.asname:
                    bindings.setdefault(alias.asname, ("module", alias.name))
                else:
                    head = alias.name.split(".")[0]
                    bindings.setdefault(head, ("module", head))
        elif isinstance(node, ast.ImportFrom):
            base = absolute_module(file_path, node.level, node.module) if node.level else (node.module or "")
            for alias in node.names:
                if alias.name == "*":
                    continue
                bindings.setdefault(alias.asname or alias.name, ("from", base, alias.name))
    return bindings


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _dotted_name(node: ast.AST) -> tuple[str, ...] | None:
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if isinstance(node, ast.Name):
        parts.append(node.id)
        return tuple(reversed(parts))
    return None


def declared_all(tree: ast.Module) -> set[str] | None:
    for node in tree.body:
        if isinstance(node, ast.Assign) and any(isinstance(t, ast.Name) and t.id == "__all__" for t in node.targets):
            if isinstance(node.value, (ast.List, ast.Tuple)):
                return {e.value for e in node.value.elts if isinstance(e, ast.Constant) and isinstance(e.value, str)}
    return None


def is_exported(name: str, all_names: set[str] | None) -> bool:
    if name.startswith("_"):
        return False
    return all_names is None or name in all_names


def _calls_in(node: ast.AST, symbol: str, class_name: str | None) -> list[_CallSite]:
    sites = []
    for child in ast.walk(node):
        if isinstance(child, ast.Call):
            parts = _dotted_name(child.func)
            if parts:
                sites.append(_CallSite(symbol=symbol, class_name=class_name, parts=parts, line=child.lineno))
    return sorted(sites, key=lambda s: s.line)


def parse_file(session: RepoSession, file_path: str, content: str) -> _ParsedFile:
    try:
        tree = session.parse(file_path, content)
    except ParseFailureError as e:
        logger.debug("Skipping unparsable file: %s", e)
        return _ParsedFile(parse_failed=True)

    parsed = _ParsedFile(bindings=collect_bindings(tree, file_path))
    all_names = declared_all(tree)

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            parsed.declarations.append(node.name)
            if is_exported(node.name, all_names):
                parsed.exported.append(node.name)
            parsed.call_sites.extend(_calls_in(node, node.name, None))
        elif isinstance(node, ast.ClassDef):
            parsed.declarations.append(node.name)
            class_exported = is_exported(node.name, all_names)
            if class_exported:
                parsed.exported.append(node.name)
            for item in node.body:
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    qualified = f"{node.name}.{item.name}"
                    parsed.declarations.append(qualified)
                    if class_exported and not item.name.startswith("_"):
                        parsed.exported.append(qualified)
                    parsed.call_sites.extend(_calls_in(item, qualified, node.name))

    # Closures and locally assigned callables are not declarations; calling
    # them is neither an edge nor an unresolved call.
    top_level = {n.name for n in tree.body if isinstance(n, (ast.FunctionDef, ast.AsyncFunctionDef))}
    for node in ast.walk(tree):
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name not in top_level:
            parsed.local_names.add(node.name)
        elif isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
            parsed.local_names.add(node.id)
        elif isinstance(node, ast.arg):
            parsed.local_names.add(node.arg)
    return parsed


# ---------------------------------------------------------------------------
# Call resolution
# ---------------------------------------------------------------------------


class CallResolver:
    """Resolves call sites against the repository-wide declaration table."""

    def __init__(self, module_map: dict[str, str], declarations: dict[str, set[str]]):
        self.module_map = module_map
        self.declarations = declarations

    def _declared(self, file_path: str, symbol: str) -> bool:
        return symbol in self.declarations.get(file_path, ())

    def _resolve_dotted(self, full: list[str]) -> CallTarget | Unresolved | None:
        # Longest module prefix first: a.b.C.m -> module a.b, symbol C.m
        in_repo = False
        for k in range(len(full) - 1, 0, -1):
            target = self.module_map.get(".".join(full[:k]))
            if target is None:
                continue
            in_repo = True
            symbol = ".".join(full[k:])
            if self._declared(target, symbol):
                return CallTarget(target, symbol)
        return Unresolved(".".join(full)) if in_repo else None

    def resolve(self, file_path: str, parsed: _ParsedFile, site: _CallSite) -> CallTarget | Unresolved | None:
        parts = site.parts
        head = parts[0]

        if head in _SELF_NAMES and site.class_name:
            if len(parts) == 2 and self._declared(file_path, f"{site.class_name}.{parts[1]}"):
                return CallTarget(file_path, f"{site.class_name}.{parts[1]}")
            # Inherited or dynamically attached attribute.
            return None

        if self._declared(file_path, head):
            symbol = ".".join(parts[:2])
            if len(parts) <= 2 and self._declared(file_path, symbol):
                return CallTarget(file_path, symbol)
            return None

        binding = parsed.bindings.get(head)
        if binding is not None:
            if binding[0] == "module":
                return self._resolve_dotted(binding[1].split(".") + list(parts[1:]))
            _, module, name = binding
            source = self.module_map.get(module) if module else None
            symbol = ".".join((name,) + parts[1:3])
            if source is not None and self._declared(source, symbol):
                return CallTarget(source, symbol)
            if source is not None and len(parts) == 1:
                return Unresolved(f"{module}.{name}")
            return self._resolve_dotted((module.split(".") if module else []) + [name] + list(parts[1:]))

        if len(parts) == 1 and head not in _BUILTIN_NAMES and head not in parsed.local_names:
            return Unresolved(head)
        return None

    def resolve_file(self, file_path: str, parsed: _ParsedFile) -> tuple[list[CallGraphEdge], int]:
        edges: list[CallGraphEdge] = []
        unresolved = 0
        for site in parsed.call_sites:
            outcome = self.resolve(file_path, parsed, site)
            if isinstance(outcome, Unresolved):
                unresolved += 1
                continue
            if outcome is None:
                continue
            if outcome.file == file_path and outcome.symbol == site.symbol:
                continue  # recursion is not a dependency
            edges.append(CallGraphEdge(file_path, site.symbol, outcome.file, outcome.symbol, site.line))
        return edges, unresolved


# ---------------------------------------------------------------------------
# Cache (de)serialisation
# ---------------------------------------------------------------------------


def _to_entry(repo_path: str, fi: FileIndex) -> CodeIndexEntry:
    symbols = {
        "total": len(fi.declarations),
        "exported": len(fi.exported),
        "declarations": fi.declarations,
        "exportedNames": fi.exported,
        "unresolved": fi.unresolved,
        "parseFailed": fi.parse_failed,
    }
    return CodeIndexEntry(
        repo_path=repo_path,
        file_path=fi.file_path,
        file_hash=fi.file_hash,
        symbols_json=json.dumps(symbols),
        calls_json=json.dumps([asdict(e) for e in fi.edges]),
        fan_out=fi.fan_out,
    )


def _from_entry(entry: CodeIndexEntry) -> FileIndex | None:
    try:
        symbols = json.loads(entry.symbols_json)
        calls = json.loads(entry.calls_json)
        return FileIndex(
            file_path=entry.file_path,
            file_hash=entry.file_hash,
            declarations=list(symbols["declarations"]),
            exported=list(symbols["exportedNames"]),
            edges=[CallGraphEdge(**c) for c in calls],
            unresolved=int(symbols.get("unresolved", 0)),
            parse_failed=bool(symbols.get("parseFailed", False)),
            cached=True,
        )
    except (ValueError, KeyError, TypeError) as e:
        logger.debug("Discarding unreadable cache entry for %s: %s", entry.file_path, e)
        return None


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def index_repository(session: RepoSession) -> RepositoryIndex:
    """Index every source file of the session's repository, reusing the cache."""
    repo = session.repo_key
    files = session.source_files()
    cache = {e.file_path: e for e in session.index_cache.get_code_index(repo)}

    results: dict[str, FileIndex] = {}
    pending: dict[str, tuple[str, _ParsedFile]] = {}
    for path in files:
        try:
            content = session.read_text(path)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            continue
        digest = content_hash(content)
        entry = cache.get(path)
        if entry is not None and entry.file_hash == digest:
            restored = _from_entry(entry)
            if restored is not None:
                results[path] = restored
                continue
        pending[path] = (digest, parse_file(session, path, content))

    declarations = {path: set(fi.declarations) for path, fi in results.items()}
    declarations.update({path: set(p.declarations) for path, (_, p) in pending.items()})
    resolver = CallResolver(build_module_map(files), declarations)

    for path, (digest, parsed) in pending.items():
        edges, unresolved = resolver.resolve_file(path, parsed)
        fi = FileIndex(
            file_path=path,
            file_hash=digest,
            declarations=parsed.declarations,
            exported=parsed.exported,
            edges=edges,
            unresolved=unresolved,
            parse_failed=parsed.parse_failed,
        )
        results[path] = fi
        session.index_cache.upsert_code_index(_to_entry(repo, fi))

    present = set(files)
    for stale in sorted(set(cache) - present):
        session.index_cache.delete_code_index(repo, stale)

    ordered = {path: results[path] for path in sorted(results)}
    stats = IndexStats(
        total=len(ordered),
        cached=sum(1 for fi in ordered.values() if fi.cached),
        reparsed=len(pending),
        unresolved_calls=sum(fi.unresolved for fi in ordered.values()),
        parse_failures=sum(1 for fi in ordered.values() if fi.parse_failed),
    )
    logger.info(
        "Indexed %d files (%d cached, %d reparsed, %d unresolved calls)",
        stats.total,
        stats.cached,
        stats.reparsed,
        stats.unresolved_calls,
    )
    return RepositoryIndex(files=ordered, stats=stats)
