"""Tests for the loop tracker and its optional Postgres persistence."""

from types import SimpleNamespace

import features.beads.tracker as tracker_module
from features.beads.models import SuiteResult, VerifierResult
from features.beads.tracker import LoopTracker


def _suite(passed):
    return SuiteResult(all_passed=passed, results=[
        VerifierResult(name="tests", passed=passed, reason="" if passed else "exit code 1, expected 0"),
    ])


def test_run_id_names_the_bead():
    tracker = LoopTracker("bd-1", 3)
    assert tracker.run_id.startswith("ralph-bd-1-")
    assert LoopTracker("bd-1", 3).run_id != tracker.run_id


def test_records_attempts_without_database():
    tracker = LoopTracker("bd-1", 3)
    tracker.start()
    tracker.attempt(1, False, "exit code 1", None, 30)
    tracker.attempt(2, True, "", _suite(False), 60)
    tracker.attempt(3, True, "", _suite(True), None)
    tracker.finish("completed")

    summary = tracker.summary()
    assert summary["iterations"] == 3
    assert summary["status"] == "completed"
    assert summary["agent_failures"] == 1
    assert summary["verification_rounds"] == 2
    assert tracker.attempts[0]["summary"] == "agent invocation failed: exit code 1"
    assert tracker.attempts[1]["results"] == [
        {"name": "tests", "passed": False, "reason": "exit code 1, expected 0"},
    ]


def test_persists_each_attempt(monkeypatch):
    calls = []
    fake_db = SimpleNamespace(
        upsert_run=lambda url, run: calls.append(("run", run["status"], run["iterations"])),
        insert_attempt=lambda url, run_id, attempt: calls.append(("attempt", attempt["attempt"])),
    )
    monkeypatch.setattr(tracker_module, "bead_db", fake_db)

    tracker = LoopTracker("bd-1", 2, database_url="postgresql://example/ralph")
    tracker.start()
    tracker.attempt(1, True, "", _suite(True))
    tracker.finish("completed")

    assert calls == [
        ("run", "in_progress", 0),
        ("run", "in_progress", 1),
        ("attempt", 1),
        ("run", "completed", 1),
    ]


def test_database_errors_only_warn(monkeypatch, caplog):
    def broken(*args):
        raise RuntimeError("connection refused")

    monkeypatch.setattr(tracker_module, "bead_db", SimpleNamespace(upsert_run=broken, insert_attempt=broken))
    tracker = LoopTracker("bd-1", 2, database_url="postgresql://example/ralph")
    tracker.start()
    tracker.attempt(1, True, "", _suite(False), 30)
    tracker.finish("failed", "max iterations reached")

    assert len(tracker.attempts) == 1
    assert any("Failed to persist" in r.getMessage() for r in caplog.records)
