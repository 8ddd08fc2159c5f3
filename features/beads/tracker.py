"""
Loop Tracker — records every iteration of a Ralph loop run.

Each run gets a run id; every attempt is appended to an in-memory history
and, when a database URL is configured, persisted to Postgres in real time
via features.beads.db. If the database is unavailable the tracker keeps going
in-memory only (with a warning); the history still ends up in the evidence
file.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone

from features.beads import db as bead_db
from features.beads.models import SuiteResult

log = logging.getLogger(__name__)


class LoopTracker:
    """Tracks a single loop run over one bead."""

    def __init__(self, bead_id: str, max_iterations: int, database_url: str = ""):
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_id = f"ralph-{bead_id}-{stamp}-{uuid.uuid4().hex[:6]}"
        self.bead_id = bead_id
        self.database_url = database_url
        self.attempts: list[dict] = []
        self._start: float | None = None
        self.record: dict = {
            "run_id": self.run_id,
            "bead_id": bead_id,
            "status": "in_progress",
            "max_iterations": max_iterations,
            "iterations": 0,
        }

    def _persist(self, attempt: dict | None = None) -> None:
        """Persist the run (and optionally one attempt) to Postgres."""
        if not self.database_url:
            return
        try:
            bead_db.upsert_run(self.database_url, self.record)
            if attempt is not None:
                bead_db.insert_attempt(self.database_url, self.run_id, attempt)
        except Exception as e:
            log.warning("[RALPH] Failed to persist run %s to DB: %s", self.run_id, e)

    def start(self) -> None:
        self._start = time.monotonic()
        self.record["started_at"] = datetime.now(timezone.utc).isoformat()
        log.info("[RALPH] Run %s started for %s (max %d iterations)",
                 self.run_id, self.bead_id, self.record["max_iterations"])
        self._persist()

    def attempt(
        self,
        attempt: int,
        agent_ok: bool,
        agent_reason: str = "",
        suite: SuiteResult | None = None,
        backoff_sec: int | None = None,
    ) -> dict:
        """Record the outcome of one iteration."""
        entry = {
            "attempt": attempt,
            "agent_ok": agent_ok,
            "agent_reason": agent_reason,
            "all_passed": suite.all_passed if suite else None,
            "backoff_sec": backoff_sec,
            "summary": suite.summary() if suite else f"agent invocation failed: {agent_reason}",
            "results": [
                {"name": r.name, "passed": r.passed, "reason": r.reason}
                for r in (suite.results if suite else [])
            ],
        }
        self.attempts.append(entry)
        self.record["iterations"] = attempt
        self._persist(entry)
        return entry

    def finish(self, status: str, failure_reason: str | None = None, evidence_file: str | None = None) -> None:
        self.record["status"] = status
        self.record["failure_reason"] = failure_reason
        self.record["evidence_file"] = evidence_file
        self.record["completed_at"] = datetime.now(timezone.utc).isoformat()
        if self._start is not None:
            self.record["duration_sec"] = round(time.monotonic() - self._start, 2)
        self._persist()

    def summary(self) -> dict:
        """Return a summary of the run so far."""
        return {
            **self.record,
            "agent_failures": sum(1 for a in self.attempts if not a["agent_ok"]),
            "verification_rounds": sum(1 for a in self.attempts if a["all_passed"] is not None),
        }
