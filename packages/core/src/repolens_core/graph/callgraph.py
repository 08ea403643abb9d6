"""Repository-wide call graph and per-file metrics.

Fan-in and fan-out count edge occurrences (one per call expression), and
only edges that cross a file boundary: a module calling its own helpers is
not a dependency between modules.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from repolens_core.graph.indexer import CallGraphEdge, IndexStats, RepositoryIndex, index_repository

if TYPE_CHECKING:
    from repolens_core.session import RepoSession

MAX_REPORTED_EDGES = 500


@dataclass
class FileMetrics:
    file: str
    fan_in: int = 0
    fan_out: int = 0
    symbol_count: int = 0
    exported_symbol_count: int = 0


@dataclass
class CallGraph:
    edges: list[CallGraphEdge]
    metrics: dict[str, FileMetrics]
    stats: IndexStats

    def cross_file_edges(self) -> list[CallGraphEdge]:
        return [e for e in self.edges if e.cross_file]

    def sorted_metrics(self) -> list[FileMetrics]:
        """Metrics by descending fan-in, file path breaking ties."""
        return sorted(self.metrics.values(), key=lambda m: (-m.fan_in, m.file))

    def to_dict(self, subdir: str | None = None) -> dict:
        prefix = subdir.strip("/") + "/" if subdir and subdir.strip("/") not in ("", ".") else ""

        def inside(path: str) -> bool:
            return not prefix or path.startswith(prefix)

        edges = [e for e in self.edges if inside(e.source_file) or inside(e.target_file)]
        metrics = [m for m in self.sorted_metrics() if inside(m.file)]
        return {
            "edges": [asdict(e) for e in edges[:MAX_REPORTED_EDGES]],
            "totalEdges": len(edges),
            "truncated": len(edges) > MAX_REPORTED_EDGES,
            "metrics": [asdict(m) for m in metrics],
            "stats": asdict(self.stats),
        }


def aggregate(index: RepositoryIndex) -> CallGraph:
    metrics = {
        path: FileMetrics(
            file=path,
            symbol_count=len(fi.declarations),
            exported_symbol_count=len(fi.exported),
        )
        for path, fi in index.files.items()
    }
    edges = index.edges
    for edge in edges:
        if not edge.cross_file:
            continue
        metrics[edge.source_file].fan_out += 1
        target = metrics.get(edge.target_file)
        if target is not None:
            target.fan_in += 1
    return CallGraph(edges=edges, metrics=metrics, stats=index.stats)


def build_call_graph(session: RepoSession) -> CallGraph:
    return aggregate(index_repository(session))
