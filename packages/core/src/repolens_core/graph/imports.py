"""File-level import graph with cycle detection.

Only imports that resolve to files inside the repository become edges.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from repolens_core.errors import ParseFailureError
from repolens_core.graph.indexer import absolute_module, build_module_map

if TYPE_CHECKING:
    from repolens_core.session import RepoSession

logger = logging.getLogger(__name__)


@dataclass
class ImportGraph:
    edges: dict[str, list[str]] = field(default_factory=dict)
    cycles: list[list[str]] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "edges": self.edges,
            "cycles": self.cycles,
            "entryPoints": self.entry_points,
            "fileCount": len(self.edges),
        }


def _imported_modules(tree: ast.Module, file_path: str) -> list[str]:
    modules = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules.extend(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            base = absolute_module(file_path, node.level, node.module) if node.level else (node.module or "")
            if base:
                modules.append(base)
            # ``from pkg import mod`` may name a submodule
            modules.extend(f"{base}.{alias.name}" if base else alias.name for alias in node.names if alias.name != "*")
    return modules


def find_cycles(edges: dict[str, list[str]]) -> list[list[str]]:
    """Every distinct cycle reachable by depth-first search, each listed once."""
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()
    done: set[str] = set()

    def visit(node: str, stack: list[str], on_stack: set[str]) -> None:
        stack.append(node)
        on_stack.add(node)
        for nxt in edges.get(node, ()):
            if nxt in on_stack:
                cycle = stack[stack.index(nxt) :]
                pivot = cycle.index(min(cycle))
                canonical = tuple(cycle[pivot:] + cycle[:pivot])
                if canonical not in seen:
                    seen.add(canonical)
                    cycles.append(list(canonical))
            elif nxt not in done:
                visit(nxt, stack, on_stack)
        stack.pop()
        on_stack.discard(node)
        done.add(node)

    for start in sorted(edges):
        if start not in done:
            visit(start, [], set())
    return cycles


def build_import_graph(session: RepoSession) -> ImportGraph:
    files = session.source_files()
    module_map = build_module_map(files)
    edges: dict[str, list[str]] = {}
    for path in files:
        try:
            tree = session.parse(path)
        except (ParseFailureError, OSError) as e:
            logger.debug("Import scan skipped %s: %s", path, e)
            edges[path] = []
            continue
        targets = []
        for module in _imported_modules(tree, path):
            target = module_map.get(module)
            if target and target != path and target not in targets:
                targets.append(target)
        edges[path] = sorted(targets)

    imported = {t for targets in edges.values() for t in targets}
    return ImportGraph(
        edges=edges,
        cycles=find_cycles(edges),
        entry_points=[f for f in files if f not in imported],
    )
