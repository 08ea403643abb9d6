"""Symbol lookup: find where a name is declared and where it is used.

Best effort: the first declaration site found wins, with no scope or
overload analysis. Files are scanned hint file first, then in path order.
Every other occurrence, import bindings included, is a reference.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from repolens_core.errors import ParseFailureError
from repolens_core.graph.indexer import declared_all, is_exported

if TYPE_CHECKING:
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)

MAX_REFERENCES = 50


@dataclass
class SymbolLocation:
    file: str
    line: int
    column: int
    kind: str
    text: str = ""
    exported: bool = False


@dataclass
class SymbolLookup:
    name: str
    definition: SymbolLocation | None
    references: list[SymbolLocation] = field(default_factory=list)
    total_references: int = 0


@dataclass
class _Occurrence:
    line: int
    column: int
    kind: str
    declaration: bool
    top_level: bool = False


def _column(lines: list[str], lineno: int, name: str, start: int) -> int:
    """1-based column of ``name`` on ``lineno`` searching from ``start``."""
    if 0 < lineno <= len(lines):
        found = lines[lineno - 1].find(name, start)
        if found >= 0:
            return found + 1
    return start + 1


class _OccurrenceCollector(ast.NodeVisitor):
    def __init__(self, name: str, lines: list[str]):
        self.name = name
        self.lines = lines
        self.found: list[_Occurrence] = []
        self._scope: list[str] = []  # "class" / "function"

    def _add(self, node: ast.AST, kind: str, declaration: bool, start: int | None = None) -> None:
        lineno = getattr(node, "lineno", 0)
        col = node.col_offset if start is None else start
        top_level = declaration and (not self._scope or self._scope == ["class"])
        self.found.append(_Occurrence(lineno, _column(self.lines, lineno, self.name, col), kind, declaration, top_level))

    def _visit_scope(self, node: ast.AST, scope: str) -> None:
        self._scope.append(scope)
        self.generic_visit(node)
        self._scope.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        if node.name == self.name:
            kind = "method" if self._scope and self._scope[-1] == "class" else "function"
            self._add(node, kind, True)
        self._visit_scope(node, "function")

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        if node.name == self.name:
            self._add(node, "class", True)
        self._visit_scope(node, "class")

    def visit_Name(self, node: ast.Name) -> None:
        if node.id == self.name:
            if isinstance(node.ctx, ast.Store):
                self._add(node, "variable", True)
            else:
                self._add(node, "reference", False)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        self.generic_visit(node)
        if node.attr == self.name:
            lineno = getattr(node, "end_lineno", node.lineno) or node.lineno
            end_col = getattr(node, "end_col_offset", None)
            start = (end_col - len(node.attr)) if end_col is not None and lineno == node.lineno else node.col_offset
            occurrence_kind = "property" if isinstance(node.ctx, ast.Store) else "reference"
            self.found.append(
                _Occurrence(
                    lineno,
                    _column(self.lines, lineno, self.name, max(0, start)),
                    occurrence_kind,
                    isinstance(node.ctx, ast.Store),
                )
            )

    def visit_arg(self, node: ast.arg) -> None:
        if node.arg == self.name:
            self._add(node, "parameter", True)

    def visit_alias(self, node: ast.alias) -> None:
        bound = node.asname or node.name.split(".")[-1]
        if bound == self.name and hasattr(node, "lineno"):
            self._add(node, "import", False)


def _scan_file(session: RepoSession, path: str, name: str) -> list[tuple[_Occurrence, str, bool]]:
    try:
        content = session.read_text(path)
    except OSError:
        return []
    if name not in content:
        return []
    try:
        tree = session.parse(path, content)
    except ParseFailureError as e:
        logger.debug("Symbol scan skipped: %s", e)
        return []
    lines = content.splitlines()
    collector = _OccurrenceCollector(name, lines)
    collector.visit(tree)
    all_names = declared_all(tree)
    results = []
    for occ in sorted(collector.found, key=lambda o: (o.line, o.column)):
        text = lines[occ.line - 1].strip() if 0 < occ.line <= len(lines) else ""
        exported = occ.declaration and occ.top_level and occ.kind != "parameter" and is_exported(name, all_names)
        results.append((occ, text, exported))
    return results


def lookup_symbol(session: RepoSession, name: str, file_hint: str | None = None) -> SymbolLookup:
    """Locate the declaration of ``name`` and up to 50 reference sites."""
    files = session.source_files()
    if file_hint:
        hint = session.relpath(file_hint)
        if hint in files:
            files.remove(hint)
            files.insert(0, hint)

    occurrences: list[SymbolLocation] = []
    definition_index: int | None = None
    for path in files:
        for occ, text, exported in _scan_file(session, path, name):
            location = SymbolLocation(path, occ.line, occ.column, occ.kind, text, exported)
            if occ.declaration and definition_index is None:
                definition_index = len(occurrences)
            occurrences.append(location)

    definition = occurrences.pop(definition_index) if definition_index is not None else None
    return SymbolLookup(
        name=name,
        definition=definition,
        references=occurrences[:MAX_REFERENCES],
        total_references=len(occurrences),
    )
