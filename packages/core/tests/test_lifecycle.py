"""Tests for finding status transitions and repository statistics."""

import pytest

from repolens_core.lifecycle import repo_key, repository_stats, set_finding_status
from repolens_store.models import Evidence
from repolens_store.sqlite import SQLiteStore

REPO = "/work/shop"


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(db_path=str(tmp_path / "lifecycle.db"))
    yield s
    s.close()


def _add(store, run_id, title, agent="security", severity="high", files=("app/db.py",)):
    return store.insert_finding(
        run_id,
        agent=agent,
        category=agent,
        severity=severity,
        title=title,
        description="d",
        confidence=0.8,
        evidence=[Evidence(path, 1, 2) for path in files],
    )


def _actions(store):
    return [
        (row["action"], row["finding_id"])
        for row in store._conn.execute("SELECT action, finding_id FROM user_actions ORDER BY rowid")
    ]


class TestSetFindingStatus:
    def test_dismiss(self, store):
        run = store.create_run(REPO, "full")
        finding = _add(store, run.id, "SQL injection")

        updated = set_finding_status(store, finding.id, "dismissed")

        assert updated.status == "dismissed"
        assert store.get_finding(finding.id).status == "dismissed"
        assert _actions(store) == [("dismiss", finding.id)]
        [event] = store.get_events(run.id)
        assert event.type == "finding_dismissed"
        assert event.data == {"findingId": finding.id, "previousStatus": "active"}

    def test_resolve_then_reopen(self, store):
        run = store.create_run(REPO, "full")
        finding = _add(store, run.id, "SQL injection")

        set_finding_status(store, finding.id, "resolved")
        set_finding_status(store, finding.id, "active")

        assert store.get_finding(finding.id).status == "active"
        assert [a for a, _ in _actions(store)] == ["resolve", "reopen"]
        assert [e.type for e in store.get_events(run.id)] == ["finding_resolved", "finding_reopened"]
        assert store.get_events(run.id)[1].data["previousStatus"] == "resolved"

    def test_dismissed_findings_leave_the_active_list(self, store):
        run = store.create_run(REPO, "full")
        kept = _add(store, run.id, "kept")
        gone = _add(store, run.id, "gone")
        set_finding_status(store, gone.id, "dismissed")
        assert [f.id for f in store.list_findings(REPO, status="active")] == [kept.id]

    def test_unknown_finding(self, store):
        with pytest.raises(ValueError, match="Unknown finding"):
            set_finding_status(store, "finding-missing", "dismissed")

    def test_unknown_status(self, store):
        run = store.create_run(REPO, "full")
        finding = _add(store, run.id, "SQL injection")
        with pytest.raises(ValueError, match="Unknown finding status"):
            set_finding_status(store, finding.id, "deleted")
        assert _actions(store) == []


class TestRepositoryStats:
    def test_counts(self, store):
        first = store.create_run(REPO, "full")
        second = store.create_run(REPO, "diff")
        _add(store, first.id, "a", files=("app/db.py", "app/api.py"))
        _add(store, first.id, "b", agent="bugs", severity="low")
        dismissed = _add(store, second.id, "c", severity="critical", files=("app/api.py",))
        set_finding_status(store, dismissed.id, "dismissed")
        other = store.create_run("/work/other", "full")
        _add(store, other.id, "elsewhere")

        stats = repository_stats(store, REPO)

        assert stats.total_runs == 2
        assert stats.total_findings == 3
        assert stats.by_severity == {"high": 2, "critical": 1}
        assert stats.by_status == {"active": 2, "dismissed": 1}
        assert stats.by_agent == {"security": 2, "bugs": 1}
        assert stats.by_file["app/db.py"] == 2
        assert stats.by_file["app/api.py"] == 2

    def test_duplicate_evidence_file_counted_once(self, store):
        run = store.create_run(REPO, "full")
        _add(store, run.id, "a", files=("app/db.py", "app/db.py"))
        assert repository_stats(store, REPO).by_file["app/db.py"] == 1

    def test_to_dict(self, store):
        run = store.create_run(REPO, "full")
        _add(store, run.id, "a", files=("app/db.py",))
        _add(store, run.id, "b", files=("app/db.py", "app/api.py"))
        data = repository_stats(store, REPO).to_dict(top=1)
        assert data["totalRuns"] == 1
        assert data["totalFindings"] == 2
        assert data["mostFlaggedFiles"] == [("app/db.py", 2)]

    def test_empty_repository(self, store):
        stats = repository_stats(store, REPO)
        assert stats.total_runs == 0
        assert stats.to_dict()["mostFlaggedFiles"] == []


def test_repo_key_is_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert repo_key(".") == str(tmp_path.resolve())
