"""Finding lifecycle and repository statistics, shared by the CLI and the server."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repolens_store.base import BaseStore
    from repolens_store.models import Finding

# status -> (user action, audit event type)
_TRANSITIONS = {
    "dismissed": ("dismiss", "finding_dismissed"),
    "resolved": ("resolve", "finding_resolved"),
    "active": ("reopen", "finding_reopened"),
}


def repo_key(path: str) -> str:
    """The key a repository's runs are stored under; matches RepoSession.repo_key."""
    return str(Path(path).expanduser().resolve())


def set_finding_status(store: BaseStore, finding_id: str, status: str) -> Finding:
    """Move a finding to ``status``, recording the user action and an audit event."""
    if status not in _TRANSITIONS:
        raise ValueError(f"Unknown finding status: {status!r}")
    finding = store.get_finding(finding_id)
    if finding is None:
        raise ValueError(f"Unknown finding: {finding_id}")

    action, event_type = _TRANSITIONS[status]
    previous = finding.status
    store.update_finding_status(finding_id, status)
    store.insert_user_action(finding.run_id, action, finding_id=finding_id)
    store.insert_event(finding.run_id, event_type, data={"findingId": finding_id, "previousStatus": previous})
    finding.status = status
    return finding


@dataclass
class RepositoryStats:
    total_runs: int = 0
    total_findings: int = 0
    by_severity: Counter = field(default_factory=Counter)
    by_status: Counter = field(default_factory=Counter)
    by_agent: Counter = field(default_factory=Counter)
    by_file: Counter = field(default_factory=Counter)

    def to_dict(self, top: int = 10) -> dict:
        return {
            "totalRuns": self.total_runs,
            "totalFindings": self.total_findings,
            "bySeverity": dict(self.by_severity),
            "byStatus": dict(self.by_status),
            "byAgent": dict(self.by_agent),
            "mostFlaggedFiles": self.by_file.most_common(top),
        }


def repository_stats(store: BaseStore, repo_path: str) -> RepositoryStats:
    stats = RepositoryStats(total_runs=len(store.list_runs(repo_path, limit=10_000)))
    for finding in store.list_findings(repo_path):
        stats.total_findings += 1
        stats.by_severity[finding.severity] += 1
        stats.by_status[finding.status] += 1
        stats.by_agent[finding.agent] += 1
        for path in {e.file_path for e in finding.evidence}:
            stats.by_file[path] += 1
    return stats
