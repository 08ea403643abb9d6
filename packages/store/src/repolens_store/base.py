"""Abstract store interface.

The orchestrator, the patch engine and the indexer depend on BaseStore, not
on a concrete backend, so tests and alternative backends can swap in without
touching core code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from repolens_store.models import (
        AuditEvent,
        CodeIndexEntry,
        Evidence,
        Finding,
        Patch,
        ReviewRun,
        UserAction,
    )


class BaseStore(ABC):
    """Durable, queryable log of runs, findings, patches and audit events,
    plus the per-file code index cache.

    Implementations assume a single active run at a time; there is no
    cross-run locking.
    """

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def create_run(self, repo_path: str, mode: str) -> ReviewRun:
        """Create a run in status ``running``."""

    @abstractmethod
    def complete_run(self, run_id: str, status: str, error: str | None = None) -> bool:
        """Move a running run to ``complete`` or ``error``.

        Returns False (and changes nothing) when the run is not ``running``:
        status only ever moves forward.
        """

    @abstractmethod
    def get_run(self, run_id: str) -> ReviewRun | None:
        """Return the run or None."""

    @abstractmethod
    def list_runs(self, repo_path: str | None = None, limit: int = 50) -> list[ReviewRun]:
        """Most recent runs first."""

    # ------------------------------------------------------------------ #
    # Findings                                                             #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def insert_finding(
        self,
        run_id: str,
        agent: str,
        category: str,
        severity: str,
        title: str,
        description: str,
        confidence: float,
        evidence: list[Evidence],
        fingerprint: str = "",
    ) -> Finding:
        """Persist a finding with status ``active``."""

    @abstractmethod
    def find_active_by_fingerprint(self, repo_path: str, fingerprint: str) -> Finding | None:
        """Return an active finding with this fingerprint in any run of repo_path."""

    @abstractmethod
    def get_finding(self, finding_id: str) -> Finding | None:
        """Return the finding or None."""

    @abstractmethod
    def get_findings(self, run_id: str) -> list[Finding]:
        """Findings of one run in insertion order."""

    @abstractmethod
    def list_findings(self, repo_path: str, status: str | None = None) -> list[Finding]:
        """Findings across every run of a repository, optionally filtered by status."""

    @abstractmethod
    def update_finding_status(self, finding_id: str, status: str) -> bool:
        """Set active / dismissed / resolved. Returns False for an unknown id."""

    @abstractmethod
    def update_finding_confidence(self, finding_id: str, confidence: float) -> bool:
        """Overwrite the confidence score. Returns False for an unknown id."""

    # ------------------------------------------------------------------ #
    # Events, patches, user actions                                        #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def insert_event(
        self,
        run_id: str,
        type: str,
        agent: str | None = None,
        data: dict | None = None,
    ) -> AuditEvent:
        """Append an audit event. Events are never updated or deleted."""

    @abstractmethod
    def get_events(self, run_id: str) -> list[AuditEvent]:
        """Events of one run ordered by timestamp."""

    @abstractmethod
    def insert_patch(self, run_id: str, finding_id: str, diff: str) -> Patch:
        """Persist an unvalidated patch."""

    @abstractmethod
    def get_patch(self, patch_id: str) -> Patch | None:
        """Return the patch or None."""

    @abstractmethod
    def update_patch_validation(self, patch_id: str, validated: bool, message: str) -> None:
        """Record the outcome of a validation attempt."""

    @abstractmethod
    def insert_user_action(
        self,
        run_id: str,
        action: str,
        finding_id: str | None = None,
        patch_id: str | None = None,
    ) -> UserAction:
        """Record a human decision (dismiss, resolve, apply...)."""

    # ------------------------------------------------------------------ #
    # Code index cache                                                     #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def get_code_index(self, repo_path: str) -> list[CodeIndexEntry]:
        """All cached entries for a repository."""

    @abstractmethod
    def upsert_code_index(self, entry: CodeIndexEntry) -> None:
        """Insert or replace the entry for (repo_path, file_path)."""

    @abstractmethod
    def delete_code_index(self, repo_path: str, file_path: str) -> None:
        """Drop the cached entry of a file that no longer exists."""

    def close(self) -> None:
        """Release the backend connection. No-op by default."""
