"""
Postgres backing store for Ralph loop history.

Tables:
  ralph_runs      — one row per loop run over a bead
  ralph_attempts  — one row per iteration, FK to ralph_runs

Every attempt is persisted as soon as it finishes so the audit trail
survives a killed controller.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

log = logging.getLogger(__name__)

# ── Connection ────────────────────────────────────────────────────────

_pool: dict[str, object] = {}


def _get_conn(database_url: str):
    """Get a Postgres connection (simple per-URL connection reuse)."""
    conn = _pool.get(database_url)
    if conn is not None and not conn.closed:
        return conn

    conn = psycopg2.connect(database_url)
    conn.autocommit = True
    _pool[database_url] = conn
    return conn


@contextmanager
def get_cursor(database_url: str):
    """Yield a dict cursor on the shared connection."""
    conn = _get_conn(database_url)
    cur = conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    try:
        yield cur
    finally:
        cur.close()


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ralph_runs (
    run_id          TEXT PRIMARY KEY,
    bead_id         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'in_progress',
    max_iterations  INTEGER NOT NULL,
    iterations      INTEGER NOT NULL DEFAULT 0,
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    duration_sec    DOUBLE PRECISION,
    failure_reason  TEXT,
    evidence_file   TEXT,
    created_at      TIMESTAMPTZ DEFAULT now()
);

CREATE TABLE IF NOT EXISTS ralph_attempts (
    run_id          TEXT NOT NULL REFERENCES ralph_runs(run_id) ON DELETE CASCADE,
    attempt         INTEGER NOT NULL,
    agent_ok        BOOLEAN NOT NULL,
    agent_reason    TEXT DEFAULT '',
    all_passed      BOOLEAN,
    backoff_sec     INTEGER,
    summary         TEXT DEFAULT '',
    results         JSONB DEFAULT '[]'::jsonb,
    recorded_at     TIMESTAMPTZ DEFAULT now(),
    PRIMARY KEY (run_id, attempt)
);

CREATE INDEX IF NOT EXISTS idx_ralph_runs_bead_id ON ralph_runs(bead_id);
CREATE INDEX IF NOT EXISTS idx_ralph_runs_status ON ralph_runs(status);
"""


def init_db(database_url: str) -> None:
    """Create tables if they don't exist."""
    try:
        with get_cursor(database_url) as cur:
            cur.execute(SCHEMA_SQL)
        log.info("Database schema initialized")
    except Exception as e:
        log.error("Failed to initialize database: %s", e)
        raise


# ── Runs ──────────────────────────────────────────────────────────────

def upsert_run(database_url: str, run: dict) -> None:
    """Insert or update a loop run record."""
    with get_cursor(database_url) as cur:
        cur.execute("""
            INSERT INTO ralph_runs (
                run_id, bead_id, status, max_iterations, iterations,
                started_at, completed_at, duration_sec, failure_reason, evidence_file
            ) VALUES (
                %(run_id)s, %(bead_id)s, %(status)s, %(max_iterations)s, %(iterations)s,
                %(started_at)s, %(completed_at)s, %(duration_sec)s, %(failure_reason)s, %(evidence_file)s
            )
            ON CONFLICT (run_id) DO UPDATE SET
                status = EXCLUDED.status,
                iterations = EXCLUDED.iterations,
                completed_at = EXCLUDED.completed_at,
                duration_sec = EXCLUDED.duration_sec,
                failure_reason = EXCLUDED.failure_reason,
                evidence_file = EXCLUDED.evidence_file
        """, {
            "run_id": run.get("run_id"),
            "bead_id": run.get("bead_id"),
            "status": run.get("status", "in_progress"),
            "max_iterations": run.get("max_iterations", 0),
            "iterations": run.get("iterations", 0),
            "started_at": run.get("started_at"),
            "completed_at": run.get("completed_at"),
            "duration_sec": run.get("duration_sec"),
            "failure_reason": run.get("failure_reason"),
            "evidence_file": run.get("evidence_file"),
        })


def insert_attempt(database_url: str, run_id: str, attempt: dict) -> None:
    """Record one loop iteration."""
    with get_cursor(database_url) as cur:
        cur.execute("""
            INSERT INTO ralph_attempts (
                run_id, attempt, agent_ok, agent_reason, all_passed, backoff_sec, summary, results
            ) VALUES (
                %(run_id)s, %(attempt)s, %(agent_ok)s, %(agent_reason)s,
                %(all_passed)s, %(backoff_sec)s, %(summary)s, %(results)s
            )
            ON CONFLICT (run_id, attempt) DO NOTHING
        """, {
            "run_id": run_id,
            "attempt": attempt.get("attempt"),
            "agent_ok": attempt.get("agent_ok", False),
            "agent_reason": attempt.get("agent_reason", ""),
            "all_passed": attempt.get("all_passed"),
            "backoff_sec": attempt.get("backoff_sec"),
            "summary": attempt.get("summary", ""),
            "results": json.dumps(attempt.get("results", []), default=str),
        })


def list_runs(database_url: str, bead_id: str | None = None, limit: int = 50) -> list[dict]:
    """List loop runs, newest first."""
    with get_cursor(database_url) as cur:
        if bead_id:
            cur.execute(
                "SELECT * FROM ralph_runs WHERE bead_id = %s ORDER BY created_at DESC LIMIT %s",
                (bead_id, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM ralph_runs ORDER BY created_at DESC LIMIT %s",
                (limit,),
            )
        return [dict(row) for row in cur.fetchall()]


def get_attempts(database_url: str, run_id: str) -> list[dict]:
    """Fetch all attempts of a run in order."""
    with get_cursor(database_url) as cur:
        cur.execute(
            "SELECT * FROM ralph_attempts WHERE run_id = %s ORDER BY attempt ASC",
            (run_id,),
        )
        return [dict(row) for row in cur.fetchall()]
