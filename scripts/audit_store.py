#!/usr/bin/env python3
"""
Audit Store Module

SQLite-backed persistence for audit runs and everything they produce:

    audits          -- one row per run (status, ingest stats, failure cause)
    findings        -- append-only, keyed by (audit_id, seq_number)
    audit_events    -- append-only progress feed (INGESTION / SECURITY_ANALYST / EVALUATOR)
    inferences      -- one row per model call, with throttled streaming text
    evaluations     -- written once per completed run

Every write commits before returning, so a reader polling the database sees
each finding as soon as the pipeline hands it over.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipeline.run_state import (
    AGENT_EVALUATOR,
    AGENT_INGESTION,
    AGENT_SECURITY_ANALYST,
    AuditRun,
    RunStatus,
)
from schemas.pipeline import Evaluation, IngestStats, PersistedFinding

__all__ = [
    "AGENT_INGESTION",
    "AGENT_SECURITY_ANALYST",
    "AGENT_EVALUATOR",
    "AuditStore",
]

logger = logging.getLogger(__name__)

INFERENCE_STREAMING = "streaming"
INFERENCE_COMPLETE = "complete"
INFERENCE_FAILED = "failed"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audits (
    id TEXT PRIMARY KEY,
    repo_url TEXT NOT NULL,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    status TEXT NOT NULL,
    commit_hash TEXT NOT NULL DEFAULT '',
    truncated INTEGER NOT NULL DEFAULT 0,
    total_files INTEGER,
    included_files INTEGER,
    skipped_files INTEGER,
    included_tokens INTEGER,
    error TEXT,
    error_code TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id TEXT NOT NULL,
    seq_number INTEGER NOT NULL,
    display_id TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    impact TEXT,
    file_path TEXT,
    fix TEXT,
    UNIQUE (audit_id, seq_number)
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id TEXT NOT NULL,
    agent TEXT NOT NULL,
    message TEXT NOT NULL,
    finding_id INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS inferences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id TEXT NOT NULL,
    agent TEXT NOT NULL,
    model TEXT NOT NULL,
    prompt TEXT NOT NULL,
    streaming_text TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    response TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    error TEXT
);

CREATE TABLE IF NOT EXISTS evaluations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_id TEXT NOT NULL UNIQUE,
    probability INTEGER NOT NULL,
    executive_summary TEXT NOT NULL,
    finding_count INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_findings_audit ON findings(audit_id);
CREATE INDEX IF NOT EXISTS idx_events_audit ON audit_events(audit_id);
CREATE INDEX IF NOT EXISTS idx_inferences_audit ON inferences(audit_id);
"""


class AuditStore:
    """Persistent store for audit runs.

    Args:
        db_path: SQLite database path, or ``":memory:"`` for a throwaway store.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        logger.debug("Audit store ready at %s", db_path)

    def close(self) -> None:
        self._conn.close()

    def _write(self, sql: str, params: tuple = ()) -> int:
        cursor = self._conn.execute(sql, params)
        self._conn.commit()
        return cursor.lastrowid

    # -- Runs ---------------------------------------------------------------

    def create_run(self, run: AuditRun) -> str:
        self._write(
            "INSERT INTO audits (id, repo_url, owner, repo, status) VALUES (?, ?, ?, ?, ?)",
            (run.run_id, run.repo_url, run.owner, run.repo, run.status.value),
        )
        logger.info("Created audit run %s for %s", run.run_id, run.repo_url)
        return run.run_id

    def get_run(self, run_id: str) -> Optional[AuditRun]:
        row = self._conn.execute("SELECT * FROM audits WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None

        stats = None
        if row["total_files"] is not None:
            stats = IngestStats(
                total_files=row["total_files"],
                included_files=row["included_files"],
                skipped_files=row["skipped_files"],
                included_tokens=row["included_tokens"],
            )
        return AuditRun(
            run_id=row["id"],
            owner=row["owner"],
            repo=row["repo"],
            repo_url=row["repo_url"],
            status=RunStatus(row["status"]),
            commit_hash=row["commit_hash"],
            truncated=bool(row["truncated"]),
            stats=stats,
            error=row["error"],
            error_code=row["error_code"],
        )

    def update_status(self, run_id: str, status: RunStatus) -> None:
        self._write("UPDATE audits SET status = ? WHERE id = ?", (status.value, run_id))

    def fail_run(self, run_id: str, error: str, error_code: Optional[str] = None) -> None:
        self._write(
            "UPDATE audits SET status = ?, error = ?, error_code = ? WHERE id = ?",
            (RunStatus.FAILED.value, error, error_code, run_id),
        )

    def update_ingest_stats(
        self, run_id: str, commit_hash: str, truncated: bool, stats: IngestStats
    ) -> None:
        self._write(
            """
            UPDATE audits
               SET commit_hash = ?, truncated = ?, total_files = ?,
                   included_files = ?, skipped_files = ?, included_tokens = ?
             WHERE id = ?
            """,
            (
                commit_hash,
                int(truncated),
                stats.total_files,
                stats.included_files,
                stats.skipped_files,
                stats.included_tokens,
                run_id,
            ),
        )

    # -- Findings -----------------------------------------------------------

    def add_finding(self, finding: PersistedFinding) -> int:
        return self._write(
            """
            INSERT INTO findings (audit_id, seq_number, display_id, category, severity,
                                  title, description, impact, file_path, fix)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                finding.run_id,
                finding.seq_number,
                finding.display_id,
                finding.category,
                finding.severity.value,
                finding.title,
                finding.description,
                finding.impact,
                finding.file_path,
                finding.fix,
            ),
        )

    def list_findings(self, run_id: str) -> List[PersistedFinding]:
        rows = self._conn.execute(
            "SELECT * FROM findings WHERE audit_id = ? ORDER BY seq_number", (run_id,)
        ).fetchall()
        return [
            PersistedFinding(
                run_id=row["audit_id"],
                seq_number=row["seq_number"],
                display_id=row["display_id"],
                category=row["category"],
                severity=row["severity"],
                title=row["title"],
                description=row["description"],
                impact=row["impact"],
                file_path=row["file_path"],
                fix=row["fix"],
            )
            for row in rows
        ]

    # -- Progress events ----------------------------------------------------

    def add_event(
        self, run_id: str, agent: str, message: str, finding_id: Optional[int] = None
    ) -> int:
        return self._write(
            "INSERT INTO audit_events (audit_id, agent, message, finding_id) VALUES (?, ?, ?, ?)",
            (run_id, agent, message, finding_id),
        )

    def list_events(self, run_id: str) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT agent, message, finding_id FROM audit_events WHERE audit_id = ? ORDER BY id",
            (run_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    # -- Inferences ---------------------------------------------------------

    def create_inference(self, run_id: str, agent: str, model: str, prompt: str) -> int:
        return self._write(
            "INSERT INTO inferences (audit_id, agent, model, prompt, status) VALUES (?, ?, ?, ?, ?)",
            (run_id, agent, model, prompt, INFERENCE_STREAMING),
        )

    def update_streaming_text(self, inference_id: int, streaming_text: str) -> None:
        self._write(
            "UPDATE inferences SET streaming_text = ? WHERE id = ?",
            (streaming_text, inference_id),
        )

    def complete_inference(
        self, inference_id: int, response: str, input_tokens: int, output_tokens: int
    ) -> None:
        self._write(
            """
            UPDATE inferences
               SET response = ?, streaming_text = ?, input_tokens = ?,
                   output_tokens = ?, status = ?
             WHERE id = ?
            """,
            (response, response, input_tokens, output_tokens, INFERENCE_COMPLETE, inference_id),
        )

    def fail_inference(self, inference_id: int, error: str) -> None:
        self._write(
            "UPDATE inferences SET status = ?, error = ? WHERE id = ?",
            (INFERENCE_FAILED, error, inference_id),
        )

    def list_inferences(self, run_id: str) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM inferences WHERE audit_id = ? ORDER BY id", (run_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    # -- Evaluations --------------------------------------------------------

    def create_evaluation(self, run_id: str, evaluation: Evaluation) -> int:
        return self._write(
            """
            INSERT INTO evaluations (audit_id, probability, executive_summary, finding_count)
            VALUES (?, ?, ?, ?)
            """,
            (run_id, evaluation.probability, evaluation.executive_summary, evaluation.finding_count),
        )

    def get_evaluation(self, run_id: str) -> Optional[Evaluation]:
        row = self._conn.execute(
            "SELECT * FROM evaluations WHERE audit_id = ?", (run_id,)
        ).fetchone()
        if row is None:
            return None
        return Evaluation(
            probability=row["probability"],
            executive_summary=row["executive_summary"],
            finding_count=row["finding_count"],
        )
