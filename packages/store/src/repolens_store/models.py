"""Review persistence models.

Decoupled from repolens_core so the store layer can be used independently:
the orchestrator maps agent output onto these records before persisting.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field

SEVERITIES = ("critical", "high", "medium", "low", "info")
FINDING_STATUSES = ("active", "dismissed", "resolved")
RUN_STATUSES = ("running", "complete", "error")
REVIEW_MODES = ("full", "diff")

_TITLE_NOISE_RE = re.compile(r"[^a-z0-9 ]+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Evidence:
    """A code location backing a finding. Never stored on its own."""

    file_path: str
    start_line: int = 0
    end_line: int = 0
    snippet: str = ""


@dataclass
class Finding:
    id: str
    run_id: str
    agent: str
    category: str
    severity: str
    title: str
    description: str
    confidence: float
    evidence: list[Evidence] = field(default_factory=list)
    fingerprint: str = ""
    status: str = "active"
    created_at: str = ""


@dataclass
class ReviewRun:
    id: str
    repo_path: str
    mode: str  # "full" | "diff"
    status: str  # "running" | "complete" | "error"
    started_at: str  # ISO-8601 UTC timestamp
    completed_at: str | None = None
    error: str | None = None


@dataclass
class Patch:
    """A proposed unified diff for a finding.

    ``validated`` only becomes True after a dry-run apply plus syntax check
    succeeded; applying to disk requires it.
    """

    id: str
    run_id: str
    finding_id: str
    diff: str
    validated: bool = False
    validation_message: str | None = None
    created_at: str = ""


@dataclass
class AuditEvent:
    id: str
    run_id: str
    type: str
    timestamp: str
    agent: str | None = None
    data: dict = field(default_factory=dict)


@dataclass
class UserAction:
    id: str
    run_id: str
    action: str
    timestamp: str
    finding_id: str | None = None
    patch_id: str | None = None


@dataclass
class CodeIndexEntry:
    """Cached per-file index record, keyed by (repo_path, file_path)."""

    repo_path: str
    file_path: str
    file_hash: str
    symbols_json: str
    calls_json: str
    fan_out: int = 0
    indexed_at: str = ""


def normalize_title(title: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    cleaned = _TITLE_NOISE_RE.sub(" ", (title or "").lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def compute_fingerprint(
    agent: str,
    category: str,
    title: str,
    evidence: list[Evidence] | None = None,
) -> str:
    """Stable dedup key for a finding across runs of the same repository.

    Built from agent, category, normalized title and the first evidence
    location only; description, confidence and severity are excluded so that
    rewording or re-scoring a finding does not defeat deduplication.
    """
    first = evidence[0] if evidence else None
    parts = [
        agent or "",
        category or "",
        normalize_title(title),
        first.file_path if first else "",
        str(first.start_line) if first else "",
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]
