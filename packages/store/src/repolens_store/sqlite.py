"""SQLite-backed store for review runs and the code index.

Schema:
  review_runs   one row per review run; status only moves forward.
  findings      evidence is stored inline as JSON (evidence never exists
                without its finding, so no sub-table or JOIN on read paths).
  events        append-only audit log.
  patches       proposed diffs plus their latest validation outcome.
  user_actions  human decisions (dismiss, resolve, apply).
  code_index    per-file cache of parsed declarations and call sites.

Databases created by older versions lack a few columns; _migrate() adds
them in place instead of asking users to delete their history.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone

from repolens_store.base import BaseStore
from repolens_store.models import (
    AuditEvent,
    CodeIndexEntry,
    Evidence,
    Finding,
    Patch,
    ReviewRun,
    UserAction,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS review_runs (
    id            TEXT PRIMARY KEY,
    repo_path     TEXT NOT NULL,
    mode          TEXT NOT NULL,
    status        TEXT NOT NULL DEFAULT 'running',
    started_at    TEXT NOT NULL,
    completed_at  TEXT
);
CREATE TABLE IF NOT EXISTS findings (
    id             TEXT PRIMARY KEY,
    run_id         TEXT NOT NULL REFERENCES review_runs(id),
    agent          TEXT NOT NULL,
    category       TEXT NOT NULL,
    severity       TEXT NOT NULL,
    title          TEXT NOT NULL,
    description    TEXT,
    confidence     REAL DEFAULT 0,
    evidence_json  TEXT DEFAULT '[]',
    created_at     TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS events (
    id         TEXT PRIMARY KEY,
    run_id     TEXT NOT NULL,
    type       TEXT NOT NULL,
    agent      TEXT,
    data_json  TEXT DEFAULT '{}',
    timestamp  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS patches (
    id                  TEXT PRIMARY KEY,
    run_id              TEXT NOT NULL,
    finding_id          TEXT NOT NULL,
    diff                TEXT NOT NULL,
    validated           INTEGER DEFAULT 0,
    validation_message  TEXT,
    created_at          TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_actions (
    id          TEXT PRIMARY KEY,
    run_id      TEXT NOT NULL,
    action      TEXT NOT NULL,
    finding_id  TEXT,
    patch_id    TEXT,
    timestamp   TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS code_index (
    repo_path     TEXT NOT NULL,
    file_path     TEXT NOT NULL,
    file_hash     TEXT NOT NULL,
    symbols_json  TEXT DEFAULT '{}',
    calls_json    TEXT DEFAULT '[]',
    fan_out       INTEGER DEFAULT 0,
    indexed_at    TEXT NOT NULL,
    PRIMARY KEY (repo_path, file_path)
);
CREATE INDEX IF NOT EXISTS idx_runs_repo       ON review_runs (repo_path);
CREATE INDEX IF NOT EXISTS idx_findings_run    ON findings (run_id);
CREATE INDEX IF NOT EXISTS idx_events_run      ON events (run_id);
"""

# Columns added after the first schema version: (table, column, DDL type).
_MIGRATIONS = [
    ("review_runs", "error", "TEXT"),
    ("findings", "fingerprint", "TEXT DEFAULT ''"),
    ("findings", "status", "TEXT DEFAULT 'active'"),
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SQLiteStore(BaseStore):
    """Stores review history in a local SQLite database file.

    The database path defaults to ``~/.repolens/repolens.db``. Configure via
    .repolens.yml: ``store_path: /path/to/repolens.db``.
    """

    def __init__(self, db_path: str = ".repolens.db"):
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self._conn.commit()

    def _migrate(self) -> None:
        for table, column, ddl in _MIGRATIONS:
            existing = {row["name"] for row in self._conn.execute(f"PRAGMA table_info({table})")}
            if column not in existing:
                logger.info("Migrating %s: adding column %s", table, column)
                self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_findings_fp ON findings (fingerprint)")

    # ------------------------------------------------------------------ #
    # Runs                                                                 #
    # ------------------------------------------------------------------ #

    def create_run(self, repo_path: str, mode: str) -> ReviewRun:
        run = ReviewRun(id=_new_id("run"), repo_path=repo_path, mode=mode, status="running", started_at=_now())
        self._conn.execute(
            "INSERT INTO review_runs (id, repo_path, mode, status, started_at) VALUES (?, ?, ?, ?, ?)",
            (run.id, run.repo_path, run.mode, run.status, run.started_at),
        )
        self._conn.commit()
        return run

    def complete_run(self, run_id: str, status: str, error: str | None = None) -> bool:
        if status not in ("complete", "error"):
            raise ValueError(f"Invalid terminal status: {status!r}")
        cursor = self._conn.execute(
            "UPDATE review_runs SET status=?, completed_at=?, error=? WHERE id=? AND status='running'",
            (status, _now(), error, run_id),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            logger.warning("Run %s is not running; status left unchanged", run_id)
            return False
        return True

    def get_run(self, run_id: str) -> ReviewRun | None:
        row = self._conn.execute("SELECT * FROM review_runs WHERE id=?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, repo_path: str | None = None, limit: int = 50) -> list[ReviewRun]:
        if repo_path is not None:
            rows = self._conn.execute(
                "SELECT * FROM review_runs WHERE repo_path=? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (repo_path, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM review_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    # ------------------------------------------------------------------ #
    # Findings                                                             #
    # ------------------------------------------------------------------ #

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
        finding = Finding(
            id=_new_id("finding"),
            run_id=run_id,
            agent=agent,
            category=category,
            severity=severity,
            title=title,
            description=description,
            confidence=float(confidence),
            evidence=list(evidence),
            fingerprint=fingerprint,
            status="active",
            created_at=_now(),
        )
        evidence_json = json.dumps(
            [
                {"filePath": e.file_path, "startLine": e.start_line, "endLine": e.end_line, "snippet": e.snippet}
                for e in finding.evidence
            ]
        )
        self._conn.execute(
            """
            INSERT INTO findings
              (id, run_id, agent, category, severity, title, description,
               confidence, evidence_json, fingerprint, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                finding.id,
                finding.run_id,
                finding.agent,
                finding.category,
                finding.severity,
                finding.title,
                finding.description,
                finding.confidence,
                evidence_json,
                finding.fingerprint,
                finding.status,
                finding.created_at,
            ),
        )
        self._conn.commit()
        return finding

    def find_active_by_fingerprint(self, repo_path: str, fingerprint: str) -> Finding | None:
        if not fingerprint:
            return None
        row = self._conn.execute(
            """
            SELECT f.* FROM findings f
            JOIN review_runs r ON r.id = f.run_id
            WHERE r.repo_path=? AND f.fingerprint=? AND f.status='active'
            ORDER BY f.created_at
            LIMIT 1
            """,
            (repo_path, fingerprint),
        ).fetchone()
        return self._row_to_finding(row) if row else None

    def get_finding(self, finding_id: str) -> Finding | None:
        row = self._conn.execute("SELECT * FROM findings WHERE id=?", (finding_id,)).fetchone()
        return self._row_to_finding(row) if row else None

    def get_findings(self, run_id: str) -> list[Finding]:
        rows = self._conn.execute(
            "SELECT * FROM findings WHERE run_id=? ORDER BY created_at, rowid",
            (run_id,),
        ).fetchall()
        return [self._row_to_finding(r) for r in rows]

    def list_findings(self, repo_path: str, status: str | None = None) -> list[Finding]:
        query = """
            SELECT f.* FROM findings f
            JOIN review_runs r ON r.id = f.run_id
            WHERE r.repo_path=?
        """
        params: list = [repo_path]
        if status is not None:
            query += " AND f.status=?"
            params.append(status)
        query += " ORDER BY f.created_at, f.rowid"
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_finding(r) for r in rows]

    def update_finding_status(self, finding_id: str, status: str) -> bool:
        if status not in ("active", "dismissed", "resolved"):
            raise ValueError(f"Invalid finding status: {status!r}")
        cursor = self._conn.execute("UPDATE findings SET status=? WHERE id=?", (status, finding_id))
        self._conn.commit()
        return cursor.rowcount > 0

    def update_finding_confidence(self, finding_id: str, confidence: float) -> bool:
        cursor = self._conn.execute("UPDATE findings SET confidence=? WHERE id=?", (float(confidence), finding_id))
        self._conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------ #
    # Events, patches, user actions                                        #
    # ------------------------------------------------------------------ #

    def insert_event(
        self,
        run_id: str,
        type: str,
        agent: str | None = None,
        data: dict | None = None,
    ) -> AuditEvent:
        event = AuditEvent(id=_new_id("evt"), run_id=run_id, type=type, timestamp=_now(), agent=agent, data=data or {})
        self._conn.execute(
            "INSERT INTO events (id, run_id, type, agent, data_json, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            (event.id, event.run_id, event.type, event.agent, json.dumps(event.data, default=str), event.timestamp),
        )
        self._conn.commit()
        return event

    def get_events(self, run_id: str) -> list[AuditEvent]:
        rows = self._conn.execute(
            "SELECT * FROM events WHERE run_id=? ORDER BY timestamp, rowid",
            (run_id,),
        ).fetchall()
        return [
            AuditEvent(
                id=r["id"],
                run_id=r["run_id"],
                type=r["type"],
                timestamp=r["timestamp"],
                agent=r["agent"],
                data=json.loads(r["data_json"] or "{}"),
            )
            for r in rows
        ]

    def insert_patch(self, run_id: str, finding_id: str, diff: str) -> Patch:
        patch = Patch(id=_new_id("patch"), run_id=run_id, finding_id=finding_id, diff=diff, created_at=_now())
        self._conn.execute(
            "INSERT INTO patches (id, run_id, finding_id, diff, validated, created_at) VALUES (?, ?, ?, ?, 0, ?)",
            (patch.id, patch.run_id, patch.finding_id, patch.diff, patch.created_at),
        )
        self._conn.commit()
        return patch

    def get_patch(self, patch_id: str) -> Patch | None:
        row = self._conn.execute("SELECT * FROM patches WHERE id=?", (patch_id,)).fetchone()
        if row is None:
            return None
        return Patch(
            id=row["id"],
            run_id=row["run_id"],
            finding_id=row["finding_id"],
            diff=row["diff"],
            validated=bool(row["validated"]),
            validation_message=row["validation_message"],
            created_at=row["created_at"],
        )

    def update_patch_validation(self, patch_id: str, validated: bool, message: str) -> None:
        self._conn.execute(
            "UPDATE patches SET validated=?, validation_message=? WHERE id=?",
            (1 if validated else 0, message, patch_id),
        )
        self._conn.commit()

    def insert_user_action(
        self,
        run_id: str,
        action: str,
        finding_id: str | None = None,
        patch_id: str | None = None,
    ) -> UserAction:
        ua = UserAction(
            id=_new_id("ua"), run_id=run_id, action=action, timestamp=_now(), finding_id=finding_id, patch_id=patch_id
        )
        self._conn.execute(
            "INSERT INTO user_actions (id, run_id, action, finding_id, patch_id, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
            (ua.id, ua.run_id, ua.action, ua.finding_id, ua.patch_id, ua.timestamp),
        )
        self._conn.commit()
        return ua

    # ------------------------------------------------------------------ #
    # Code index cache                                                     #
    # ------------------------------------------------------------------ #

    def get_code_index(self, repo_path: str) -> list[CodeIndexEntry]:
        rows = self._conn.execute(
            "SELECT * FROM code_index WHERE repo_path=? ORDER BY file_path",
            (repo_path,),
        ).fetchall()
        return [
            CodeIndexEntry(
                repo_path=r["repo_path"],
                file_path=r["file_path"],
                file_hash=r["file_hash"],
                symbols_json=r["symbols_json"] or "{}",
                calls_json=r["calls_json"] or "[]",
                fan_out=r["fan_out"] or 0,
                indexed_at=r["indexed_at"],
            )
            for r in rows
        ]

    def upsert_code_index(self, entry: CodeIndexEntry) -> None:
        self._conn.execute(
            """
            INSERT OR REPLACE INTO code_index
              (repo_path, file_path, file_hash, symbols_json, calls_json, fan_out, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.repo_path,
                entry.file_path,
                entry.file_hash,
                entry.symbols_json,
                entry.calls_json,
                entry.fan_out,
                entry.indexed_at or _now(),
            ),
        )
        self._conn.commit()

    def delete_code_index(self, repo_path: str, file_path: str) -> None:
        self._conn.execute("DELETE FROM code_index WHERE repo_path=? AND file_path=?", (repo_path, file_path))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> ReviewRun:
        return ReviewRun(
            id=row["id"],
            repo_path=row["repo_path"],
            mode=row["mode"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=row["error"],
        )

    @staticmethod
    def _row_to_finding(row: sqlite3.Row) -> Finding:
        evidence_data = json.loads(row["evidence_json"] or "[]")
        evidence = [
            Evidence(
                file_path=e.get("filePath", ""),
                start_line=e.get("startLine", 0),
                end_line=e.get("endLine", 0),
                snippet=e.get("snippet", ""),
            )
            for e in evidence_data
        ]
        return Finding(
            id=row["id"],
            run_id=row["run_id"],
            agent=row["agent"],
            category=row["category"],
            severity=row["severity"],
            title=row["title"],
            description=row["description"] or "",
            confidence=row["confidence"] or 0.0,
            evidence=evidence,
            fingerprint=row["fingerprint"] or "",
            status=row["status"] or "active",
            created_at=row["created_at"],
        )
