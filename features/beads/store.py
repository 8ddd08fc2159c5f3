"""
Work-item store — loads and persists beads.

Two backends:
  JsonBeadStore  one JSON document per bead under a directory
  BdCliStore     the external `bd` tracker CLI (`bd show --json` / `bd update`)

`save(bead, fields)` takes a partial update in the persisted shape and merges
it: `ralph_meta` and `constraints` are dict-merged, unknown top-level keys
are left untouched. The JSON store writes backup → write → drop backup and
restores the backup if the write fails, so a record is never left truncated.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any, Protocol

from config import Settings
from features.beads.models import BeadStatus, MalformedBeadError, WorkItem
from utils.process import run_process

log = logging.getLogger(__name__)

MERGED_KEYS = ("ralph_meta", "constraints")


class BeadNotFoundError(LookupError):
    """No bead exists with the given id."""


class BeadStoreError(RuntimeError):
    """The backing store refused or failed an operation."""


class BeadStore(Protocol):
    def load(self, bead_id: str) -> WorkItem: ...

    def save(self, bead: WorkItem, fields: dict | None = None) -> None: ...


def merge_fields(existing: dict, fields: dict) -> dict:
    """Merge a partial update into a persisted document (returns a new dict)."""
    doc = dict(existing)
    for key, value in fields.items():
        if key in MERGED_KEYS and isinstance(value, dict) and isinstance(doc.get(key), dict):
            doc[key] = {**doc[key], **value}
        else:
            doc[key] = value
    return doc


# ── JSON file store ───────────────────────────────────────────────────

class JsonBeadStore:
    """Stores each bead as `<root>/<bead_id>.json`."""

    def __init__(self, root: Path | str, default_max_iterations: int = 10, default_verifier_timeout: int = 300):
        self.root = Path(root)
        self.default_max_iterations = default_max_iterations
        self.default_verifier_timeout = default_verifier_timeout

    def path_for(self, bead_id: str) -> Path:
        if not bead_id or bead_id in (".", "..") or "/" in bead_id or "\\" in bead_id:
            raise BeadNotFoundError(f"Invalid bead id: {bead_id!r}")
        return self.root / f"{bead_id}.json"

    @staticmethod
    def backup_path(path: Path) -> Path:
        return path.with_name(path.name + ".bak")

    def exists(self, bead_id: str) -> bool:
        return self.path_for(bead_id).exists()

    def list_ids(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))

    def load(self, bead_id: str) -> WorkItem:
        path = self.path_for(bead_id)
        raw = self.load_raw(bead_id)
        try:
            return WorkItem.from_dict(
                raw,
                default_max_iterations=self.default_max_iterations,
                default_verifier_timeout=self.default_verifier_timeout,
            )
        except MalformedBeadError as e:
            raise MalformedBeadError(f"{path}: {e}") from None

    def load_raw(self, bead_id: str) -> dict:
        """Return the persisted JSON document as-is."""
        path = self.path_for(bead_id)
        self._recover(path)
        if not path.exists():
            raise BeadNotFoundError(f"Bead not found: {bead_id}")
        return self._parse(path)

    def save(self, bead: WorkItem, fields: dict | None = None) -> None:
        """Persist a partial update (or the whole bead when `fields` is None)."""
        path = self.path_for(bead.id)
        self._recover(path)
        partial = fields is not None
        if fields is None:
            fields = bead.to_dict()
        existing = self._parse(path) if path.exists() else {}
        doc = merge_fields(existing, fields)
        self.root.mkdir(parents=True, exist_ok=True)
        self._write_with_backup(path, json.dumps(doc, indent=2, default=str) + "\n")
        if partial:
            bead.apply(fields)

    def create(self, bead: WorkItem) -> Path:
        """Write a new bead document; refuses to overwrite an existing one."""
        if self.exists(bead.id):
            raise BeadStoreError(f"Bead already exists: {bead.id}")
        path = self.path_for(bead.id)
        self.save(bead)
        log.info("[BEAD] Created: %s — %s", bead.id, bead.title or bead.intent[:60])
        return path

    # ── internals ──

    @staticmethod
    def _parse(path: Path) -> dict:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedBeadError(f"{path}: invalid JSON document: {e}") from None
        if not isinstance(data, dict):
            raise MalformedBeadError(f"{path}: bead document must be a JSON object")
        return data

    def _recover(self, path: Path) -> None:
        """Resolve a backup left behind by an interrupted save."""
        backup = self.backup_path(path)
        if not backup.exists():
            return
        try:
            if path.exists():
                self._parse(path)
                backup.unlink()
                return
        except MalformedBeadError:
            pass
        log.warning("[BEAD] Restoring %s from backup after interrupted write", path.name)
        os.replace(backup, path)

    def _write_with_backup(self, path: Path, text: str) -> None:
        backup = self.backup_path(path)
        had_original = path.exists()
        if had_original:
            shutil.copy2(path, backup)
        try:
            self._write(path, text)
        except BaseException as e:
            if had_original:
                os.replace(backup, path)
            else:
                path.unlink(missing_ok=True)
            log.error("[BEAD] Write to %s failed, previous content kept: %s", path, e)
            raise
        if had_original:
            backup.unlink(missing_ok=True)

    def _write(self, path: Path, text: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())


# ── bd tracker CLI store ──────────────────────────────────────────────

# Ralph status ↔ bd issue status
TO_BD_STATUS = {
    BeadStatus.PENDING: "open",
    BeadStatus.IN_PROGRESS: "in_progress",
    BeadStatus.COMPLETED: "closed",
    BeadStatus.FAILED: "blocked",
}
FROM_BD_STATUS = {
    "open": "pending",
    "in_progress": "in_progress",
    "closed": "completed",
    "blocked": "failed",
}

_JSON_BLOCK = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)


class BdCliStore:
    """
    Reads and updates beads through the `bd` CLI.

    The Ralph payload (intent, dod, constraints) lives in the issue
    description, either as the whole description or as a ```json block;
    `ralph_meta` is kept as JSON in the issue notes.
    """

    def __init__(
        self,
        bd_bin: str = "bd",
        cwd: Path | str = ".",
        timeout: float = 30,
        default_max_iterations: int = 10,
        default_verifier_timeout: int = 300,
    ):
        self.bd_bin = bd_bin
        self.cwd = Path(cwd)
        self.timeout = timeout
        self.default_max_iterations = default_max_iterations
        self.default_verifier_timeout = default_verifier_timeout

    def _bd(self, *args: str) -> str:
        try:
            proc = run_process([self.bd_bin, *args], cwd=self.cwd, timeout=self.timeout)
        except OSError as e:
            raise BeadStoreError(f"{self.bd_bin} could not be run: {e}") from e
        if proc.timed_out:
            raise BeadStoreError(f"{self.bd_bin} {args[0]} timed out after {self.timeout}s")
        if proc.exit_code != 0:
            raise BeadStoreError(f"{self.bd_bin} {' '.join(args[:2])} failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return proc.stdout

    def load(self, bead_id: str) -> WorkItem:
        try:
            out = self._bd("show", bead_id, "--json")
        except BeadStoreError as e:
            if "not found" in str(e).lower() or "no issue" in str(e).lower():
                raise BeadNotFoundError(f"Bead not found: {bead_id}") from None
            raise
        try:
            issue = json.loads(out)
        except json.JSONDecodeError as e:
            raise MalformedBeadError(f"{bead_id}: bd returned invalid JSON: {e}") from None
        if isinstance(issue, list):
            if not issue:
                raise BeadNotFoundError(f"Bead not found: {bead_id}")
            issue = issue[0]
        return WorkItem.from_dict(
            self.to_document(issue),
            default_max_iterations=self.default_max_iterations,
            default_verifier_timeout=self.default_verifier_timeout,
        )

    @staticmethod
    def to_document(issue: dict) -> dict:
        """Translate a `bd show --json` issue into the Ralph document shape."""
        description = issue.get("description") or ""
        payload: dict[str, Any] = {}
        match = _JSON_BLOCK.search(description)
        try:
            if match:
                payload = json.loads(match.group(1))
            elif description.strip().startswith("{"):
                payload = json.loads(description)
        except json.JSONDecodeError as e:
            raise MalformedBeadError(f"{issue.get('id')}: invalid JSON in description: {e}") from None
        if not isinstance(payload, dict):
            raise MalformedBeadError(f"{issue.get('id')}: description JSON must be an object")

        if "intent" not in payload:
            prose = _JSON_BLOCK.sub("", description).strip() if match else ""
            payload["intent"] = prose or issue.get("title") or ""

        meta: dict = {}
        notes = issue.get("notes") or ""
        if notes.strip().startswith("{"):
            try:
                meta = json.loads(notes)
            except json.JSONDecodeError:
                log.warning("[BEAD] %s: ignoring unparseable ralph_meta in notes", issue.get("id"))

        return {
            **payload,
            "id": issue.get("id"),
            "title": issue.get("title") or "",
            "status": FROM_BD_STATUS.get(issue.get("status") or "open", "pending"),
            "ralph_meta": meta,
        }

    def save(self, bead: WorkItem, fields: dict | None = None) -> None:
        if fields is not None:
            bead.apply(fields)
        args = [
            "update", bead.id,
            "--status", TO_BD_STATUS[bead.status],
            "--notes", json.dumps(bead.ralph_meta.to_dict(), default=str),
        ]
        self._bd(*args)


def open_store(settings: Settings) -> BeadStore:
    """Build the store selected by settings."""
    if settings.store_backend == "bd":
        return BdCliStore(
            bd_bin=settings.bd_bin,
            cwd=settings.workspace_root,
            default_max_iterations=settings.max_iterations,
            default_verifier_timeout=settings.verifier_timeout_sec,
        )
    if settings.store_backend != "json":
        raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
    return JsonBeadStore(
        settings.resolve(settings.beads_dir),
        default_max_iterations=settings.max_iterations,
        default_verifier_timeout=settings.verifier_timeout_sec,
    )
