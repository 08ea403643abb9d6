"""Blast-radius analysis and criticality ranking over the call graph."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from repolens_core.graph.callgraph import CallGraph

DEFAULT_IMPACT_DEPTH = 3

FAN_IN_WEIGHT = 0.6
FAN_OUT_WEIGHT = 0.4
HIGH_THRESHOLD = 0.7
MODERATE_THRESHOLD = 0.4


@dataclass
class ImpactedFile:
    file: str
    distance: int
    fan_in: int
    affected_symbols: list[str] = field(default_factory=list)


@dataclass
class CriticalFile:
    file: str
    score: float
    fan_in: int
    fan_out: int
    reason: str


def reverse_adjacency(graph: CallGraph) -> dict[str, dict[str, set[str]]]:
    """target file -> {caller file -> symbols of target it invokes}."""
    reverse: dict[str, dict[str, set[str]]] = {}
    for edge in graph.cross_file_edges():
        reverse.setdefault(edge.target_file, {}).setdefault(edge.source_file, set()).add(edge.target_symbol)
    return reverse


def analyze_impact(graph: CallGraph, target: str, max_depth: int = DEFAULT_IMPACT_DEPTH) -> list[ImpactedFile]:
    """Files that transitively call into ``target``, nearest first.

    Each file is visited once, at its shortest hop distance. A depth below 1
    still reports the direct dependents.
    """
    max_depth = max(1, max_depth)
    reverse = reverse_adjacency(graph)
    visited = {target}
    queue = deque([(target, 0)])
    impacted: list[ImpactedFile] = []

    while queue:
        current, distance = queue.popleft()
        if distance >= max_depth:
            continue
        for caller, symbols in sorted(reverse.get(current, {}).items()):
            if caller in visited:
                continue
            visited.add(caller)
            metrics = graph.metrics.get(caller)
            impacted.append(
                ImpactedFile(
                    file=caller,
                    distance=distance + 1,
                    fan_in=metrics.fan_in if metrics else 0,
                    affected_symbols=sorted(symbols),
                )
            )
            queue.append((caller, distance + 1))

    impacted.sort(key=lambda f: (f.distance, -f.fan_in, f.file))
    return impacted


def _reason(norm_in: float, norm_out: float) -> str:
    if norm_in > HIGH_THRESHOLD and norm_out > HIGH_THRESHOLD:
        return "central hub"
    if norm_in > HIGH_THRESHOLD:
        return "high fan-in hub"
    if norm_out > HIGH_THRESHOLD:
        return "high fan-out"
    if norm_in > MODERATE_THRESHOLD:
        return "moderate dependency target"
    return "active module"


def score_criticality(graph: CallGraph, limit: int | None = None) -> list[CriticalFile]:
    """Rank files by 0.6 x normalized fan-in + 0.4 x normalized fan-out."""
    active = [m for m in graph.metrics.values() if m.fan_in or m.fan_out]
    if not active:
        return []
    max_in = max(max(m.fan_in for m in active), 1)
    max_out = max(max(m.fan_out for m in active), 1)

    ranked = []
    for m in active:
        norm_in = m.fan_in / max_in
        norm_out = m.fan_out / max_out
        ranked.append(
            CriticalFile(
                file=m.file,
                score=round(FAN_IN_WEIGHT * norm_in + FAN_OUT_WEIGHT * norm_out, 2),
                fan_in=m.fan_in,
                fan_out=m.fan_out,
                reason=_reason(norm_in, norm_out),
            )
        )
    ranked.sort(key=lambda c: (-c.score, c.file))
    return ranked[:limit] if limit else ranked
