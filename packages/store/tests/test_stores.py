"""Tests for repolens-store."""

from __future__ import annotations

import sqlite3

import pytest

from repolens_store.models import CodeIndexEntry, Evidence, compute_fingerprint, normalize_title
from repolens_store.sqlite import SQLiteStore


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(db_path=str(tmp_path / "test.db"))
    yield s
    s.close()


def _insert(store, run_id, title="SQL injection in login", file_path="app/auth.py", line=42, fingerprint=""):
    return store.insert_finding(
        run_id=run_id,
        agent="security",
        category="injection",
        severity="high",
        title=title,
        description="User input reaches cursor.execute unescaped",
        confidence=0.8,
        evidence=[Evidence(file_path=file_path, start_line=line, end_line=line + 2, snippet="cursor.execute(q)")],
        fingerprint=fingerprint,
    )


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


class TestFingerprint:
    def test_normalize_title_strips_punctuation_and_case(self):
        assert normalize_title("  SQL   Injection, in LOGIN!! ") == "sql injection in login"

    def test_fingerprint_is_16_hex_chars(self):
        fp = compute_fingerprint("security", "injection", "x", [Evidence("a.py", 1, 1)])
        assert len(fp) == 16
        int(fp, 16)

    def test_fingerprint_ignores_title_formatting(self):
        ev = [Evidence("a.py", 10, 12)]
        assert compute_fingerprint("bugs", "logic", "Off by one!", ev) == compute_fingerprint(
            "bugs", "logic", "off  by ONE", ev
        )

    def test_fingerprint_changes_with_location(self):
        a = compute_fingerprint("bugs", "logic", "Off by one", [Evidence("a.py", 10, 12)])
        b = compute_fingerprint("bugs", "logic", "Off by one", [Evidence("a.py", 11, 12)])
        assert a != b

    def test_fingerprint_uses_first_evidence_only(self):
        a = compute_fingerprint("bugs", "logic", "t", [Evidence("a.py", 1, 1)])
        b = compute_fingerprint("bugs", "logic", "t", [Evidence("a.py", 1, 1), Evidence("b.py", 9, 9)])
        assert a == b

    def test_fingerprint_without_evidence(self):
        assert compute_fingerprint("bugs", "logic", "t", []) == compute_fingerprint("bugs", "logic", "t", None)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRuns:
    def test_create_and_get(self, store):
        run = store.create_run("/repo", "full")
        fetched = store.get_run(run.id)
        assert fetched.status == "running"
        assert fetched.mode == "full"
        assert fetched.completed_at is None
        assert run.id.startswith("run-")

    def test_complete_sets_terminal_status(self, store):
        run = store.create_run("/repo", "diff")
        assert store.complete_run(run.id, "complete") is True
        fetched = store.get_run(run.id)
        assert fetched.status == "complete"
        assert fetched.completed_at is not None

    def test_status_never_moves_backwards(self, store):
        run = store.create_run("/repo", "full")
        store.complete_run(run.id, "error", error="boom")
        assert store.complete_run(run.id, "complete") is False
        fetched = store.get_run(run.id)
        assert fetched.status == "error"
        assert fetched.error == "boom"

    def test_invalid_terminal_status_rejected(self, store):
        run = store.create_run("/repo", "full")
        with pytest.raises(ValueError):
            store.complete_run(run.id, "running")

    def test_get_unknown_run_returns_none(self, store):
        assert store.get_run("run-missing") is None

    def test_list_runs_filters_by_repo(self, store):
        store.create_run("/a", "full")
        store.create_run("/b", "full")
        store.create_run("/a", "diff")
        runs = store.list_runs("/a")
        assert len(runs) == 2
        assert all(r.repo_path == "/a" for r in runs)
        assert len(store.list_runs()) == 3


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class TestFindings:
    def test_insert_and_read_back_evidence(self, store):
        run = store.create_run("/repo", "full")
        finding = _insert(store, run.id)
        assert finding.id.startswith("finding-")

        [fetched] = store.get_findings(run.id)
        assert fetched.status == "active"
        assert fetched.evidence[0].file_path == "app/auth.py"
        assert fetched.evidence[0].start_line == 42
        assert fetched.evidence[0].snippet == "cursor.execute(q)"

    def test_findings_ordered_by_insertion(self, store):
        run = store.create_run("/repo", "full")
        _insert(store, run.id, title="first")
        _insert(store, run.id, title="second")
        assert [f.title for f in store.get_findings(run.id)] == ["first", "second"]

    def test_find_active_by_fingerprint_spans_runs_of_same_repo(self, store):
        run1 = store.create_run("/repo", "full")
        original = _insert(store, run1.id, fingerprint="abc123")
        store.complete_run(run1.id, "complete")

        assert store.find_active_by_fingerprint("/repo", "abc123").id == original.id
        assert store.find_active_by_fingerprint("/other", "abc123") is None

    def test_dismissed_findings_do_not_match_fingerprint(self, store):
        run = store.create_run("/repo", "full")
        finding = _insert(store, run.id, fingerprint="abc123")
        store.update_finding_status(finding.id, "dismissed")
        assert store.find_active_by_fingerprint("/repo", "abc123") is None

    def test_empty_fingerprint_never_matches(self, store):
        run = store.create_run("/repo", "full")
        _insert(store, run.id, fingerprint="")
        assert store.find_active_by_fingerprint("/repo", "") is None

    def test_update_status_validates(self, store):
        run = store.create_run("/repo", "full")
        finding = _insert(store, run.id)
        with pytest.raises(ValueError):
            store.update_finding_status(finding.id, "closed")

    def test_update_status_unknown_id(self, store):
        assert store.update_finding_status("finding-nope", "resolved") is False

    def test_update_confidence(self, store):
        run = store.create_run("/repo", "full")
        finding = _insert(store, run.id)
        assert store.update_finding_confidence(finding.id, 0.0) is True
        assert store.get_finding(finding.id).confidence == 0.0
        assert store.get_finding(finding.id).status == "active"

    def test_list_findings_by_status(self, store):
        run = store.create_run("/repo", "full")
        a = _insert(store, run.id, title="a")
        _insert(store, run.id, title="b")
        store.update_finding_status(a.id, "resolved")
        assert [f.title for f in store.list_findings("/repo", status="active")] == ["b"]
        assert len(store.list_findings("/repo")) == 2


# ---------------------------------------------------------------------------
# Events, patches, user actions
# ---------------------------------------------------------------------------


class TestAuditTrail:
    def test_events_keep_insertion_order(self, store):
        run = store.create_run("/repo", "full")
        store.insert_event(run.id, "agent_started", agent="security")
        store.insert_event(run.id, "evidence_collected", agent="security", data={"tool": "read_file"})
        store.insert_event(run.id, "agent_completed", agent="security")
        events = store.get_events(run.id)
        assert [e.type for e in events] == ["agent_started", "evidence_collected", "agent_completed"]
        assert events[1].data == {"tool": "read_file"}
        assert events[0].id.startswith("evt-")

    def test_patch_validation_round(self, store):
        run = store.create_run("/repo", "full")
        finding = _insert(store, run.id)
        patch = store.insert_patch(run.id, finding.id, "--- a/x\n+++ b/x\n")
        assert store.get_patch(patch.id).validated is False

        store.update_patch_validation(patch.id, True, "Patch applies cleanly")
        fetched = store.get_patch(patch.id)
        assert fetched.validated is True
        assert fetched.validation_message == "Patch applies cleanly"

    def test_get_unknown_patch(self, store):
        assert store.get_patch("patch-missing") is None

    def test_user_action(self, store):
        run = store.create_run("/repo", "full")
        ua = store.insert_user_action(run.id, "dismiss", finding_id="finding-1")
        assert ua.id.startswith("ua-")
        assert ua.finding_id == "finding-1"


# ---------------------------------------------------------------------------
# Code index cache
# ---------------------------------------------------------------------------


class TestCodeIndex:
    def _entry(self, file_path="pkg/a.py", file_hash="h1", fan_out=1):
        return CodeIndexEntry(
            repo_path="/repo",
            file_path=file_path,
            file_hash=file_hash,
            symbols_json='{"total": 1}',
            calls_json="[]",
            fan_out=fan_out,
        )

    def test_upsert_replaces_existing(self, store):
        store.upsert_code_index(self._entry(file_hash="h1"))
        store.upsert_code_index(self._entry(file_hash="h2", fan_out=3))
        [entry] = store.get_code_index("/repo")
        assert entry.file_hash == "h2"
        assert entry.fan_out == 3
        assert entry.indexed_at

    def test_delete(self, store):
        store.upsert_code_index(self._entry("pkg/a.py"))
        store.upsert_code_index(self._entry("pkg/b.py"))
        store.delete_code_index("/repo", "pkg/a.py")
        assert [e.file_path for e in store.get_code_index("/repo")] == ["pkg/b.py"]


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class TestMigration:
    def test_adds_missing_columns_to_legacy_database(self, tmp_path):
        db = tmp_path / "legacy.db"
        conn = sqlite3.connect(str(db))
        conn.executescript(
            """
            CREATE TABLE review_runs (id TEXT PRIMARY KEY, repo_path TEXT NOT NULL, mode TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running', started_at TEXT NOT NULL, completed_at TEXT);
            CREATE TABLE findings (id TEXT PRIMARY KEY, run_id TEXT NOT NULL, agent TEXT NOT NULL,
                category TEXT NOT NULL, severity TEXT NOT NULL, title TEXT NOT NULL, description TEXT,
                confidence REAL DEFAULT 0, evidence_json TEXT DEFAULT '[]', created_at TEXT NOT NULL);
            INSERT INTO review_runs VALUES ('run-old', '/repo', 'full', 'complete', '2024-01-01', '2024-01-01');
            INSERT INTO findings VALUES ('finding-old', 'run-old', 'bugs', 'logic', 'low', 'Old', '', 0.5,
                '[]', '2024-01-01');
            """
        )
        conn.commit()
        conn.close()

        store = SQLiteStore(db_path=str(db))
        [finding] = store.get_findings("run-old")
        assert finding.status == "active"
        assert finding.fingerprint == ""
        assert store.get_run("run-old").error is None
        store.close()
