"""
Activity: Evidence — writes the terminal outcome of a loop run to disk.

Record shape:
    {"work_item_id", "status", "iterations", "timestamp", "failure_reason",
     "still_failing": [{"name", "reason"}], "results": [...], "attempts": [...]}
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from features.beads.models import SuiteResult

log = logging.getLogger(__name__)


def write_evidence(
    evidence_dir: Path,
    bead_id: str,
    status: str,
    iterations: int,
    suite: SuiteResult | None,
    failure_reason: str | None = None,
    attempts: list[dict] | None = None,
    run_id: str | None = None,
    max_chars: int | None = None,
) -> Path:
    """Save the evidence record for a finished run and return its path."""
    now = datetime.now(timezone.utc)
    record = {
        "work_item_id": bead_id,
        "run_id": run_id,
        "status": status,
        "iterations": iterations,
        "timestamp": now.isoformat(),
        "failure_reason": failure_reason,
        "still_failing": [
            {"name": r.name, "reason": r.reason} for r in (suite.failed() if suite else [])
        ],
        "results": suite.to_list(max_chars) if suite else [],
        "attempts": attempts or [],
    }
    evidence_dir.mkdir(parents=True, exist_ok=True)
    file_path = evidence_dir / f"{bead_id}-{now.strftime('%Y%m%d-%H%M%S')}-{status}.json"
    with open(file_path, "w") as f:
        json.dump(record, f, indent=2, default=str)
    log.info("Evidence saved: %s", file_path)
    return file_path


def list_evidence(evidence_dir: Path, bead_id: str | None = None) -> list[dict]:
    """Load evidence records, newest first."""
    if not evidence_dir.is_dir():
        return []
    pattern = f"{bead_id}-*.json" if bead_id else "*.json"
    records = []
    for path in sorted(evidence_dir.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True):
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Skipping unreadable evidence file %s: %s", path, e)
            continue
        if bead_id and data.get("work_item_id") != bead_id:
            continue
        data["evidence_file"] = str(path)
        records.append(data)
    return records
