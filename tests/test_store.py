"""Tests for the JSON and bd work-item stores."""

import json

import pytest

from features.beads.models import BeadStatus, MalformedBeadError
from features.beads.store import (
    BdCliStore,
    BeadNotFoundError,
    BeadStoreError,
    JsonBeadStore,
    merge_fields,
)
from tests.conftest import make_bead


def _write_doc(store, bead_id, doc):
    store.root.mkdir(parents=True, exist_ok=True)
    path = store.path_for(bead_id)
    path.write_text(json.dumps(doc))
    return path


# ── Loading ───────────────────────────────────────────────────────────

def test_load_missing_bead(store):
    with pytest.raises(BeadNotFoundError):
        store.load("nope")


def test_load_invalid_json(store):
    store.root.mkdir(parents=True)
    store.path_for("bad").write_text("{not json")
    with pytest.raises(MalformedBeadError):
        store.load("bad")


def test_load_non_utf8_file(store):
    store.root.mkdir(parents=True)
    store.path_for("bd-u").write_bytes(b'{"id": "bd-u", "intent": "\xff"}')
    with pytest.raises(MalformedBeadError):
        store.load("bd-u")


def test_load_without_verifiers(store):
    _write_doc(store, "empty", {"id": "empty", "intent": "x", "dod": {"verifiers": []}})
    with pytest.raises(MalformedBeadError):
        store.load("empty")


def test_path_traversal_is_rejected(store):
    with pytest.raises(BeadNotFoundError):
        store.load("../etc/passwd")


def test_create_then_load(store):
    bead = make_bead("bd-1", max_iterations=4)
    store.create(bead)
    loaded = store.load("bd-1")
    assert loaded.intent == bead.intent
    assert loaded.constraints.max_iterations == 4
    assert [v.name for v in loaded.verifiers] == ["ok"]
    assert store.list_ids() == ["bd-1"]


def test_create_refuses_to_overwrite(store):
    store.create(make_bead("bd-1"))
    with pytest.raises(BeadStoreError):
        store.create(make_bead("bd-1"))


# ── Partial saves ─────────────────────────────────────────────────────

def test_partial_save_twice_keeps_other_fields(store):
    bead = make_bead("bd-1")
    path = _write_doc(store, "bd-1", {**bead.to_dict(), "owner": "team-a"})

    store.save(bead, {"ralph_meta": {"attempt_count": 1, "last_failure_summary": "build"}})
    assert not store.backup_path(path).exists()
    store.save(bead, {"ralph_meta": {"attempt_count": 2}})
    assert not store.backup_path(path).exists()

    raw = store.load_raw("bd-1")
    assert raw["intent"] == bead.intent
    assert raw["dod"] == bead.to_dict()["dod"]
    assert raw["owner"] == "team-a"
    assert raw["ralph_meta"]["attempt_count"] == 2
    assert raw["ralph_meta"]["last_failure_summary"] == "build"


def test_partial_save_updates_in_memory_bead(store):
    bead = make_bead("bd-1")
    store.save(bead)
    store.save(bead, {"status": "in_progress", "ralph_meta": {"attempt_count": 1}})
    assert bead.status == BeadStatus.IN_PROGRESS
    assert bead.ralph_meta.attempt_count == 1
    assert store.load("bd-1").status == BeadStatus.IN_PROGRESS


def test_merge_fields_only_merges_nested_meta():
    existing = {"dod": {"verifiers": [1]}, "ralph_meta": {"a": 1}, "constraints": {"max_iterations": 3}}
    merged = merge_fields(existing, {"dod": {"verifiers": []}, "ralph_meta": {"b": 2}})
    assert merged["dod"] == {"verifiers": []}
    assert merged["ralph_meta"] == {"a": 1, "b": 2}
    assert merged["constraints"] == {"max_iterations": 3}
    assert existing["ralph_meta"] == {"a": 1}


# ── Crash safety ──────────────────────────────────────────────────────

def test_failed_write_restores_previous_content(store, monkeypatch):
    bead = make_bead("bd-1")
    store.save(bead)
    path = store.path_for("bd-1")
    before = path.read_text()

    def broken_write(p, text):
        p.write_text(text[:15])
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write", broken_write)
    with pytest.raises(OSError):
        store.save(bead, {"status": "completed"})

    assert path.read_text() == before
    assert not store.backup_path(path).exists()
    assert store.load("bd-1").status == BeadStatus.PENDING


def test_failed_first_write_leaves_no_partial_file(store, monkeypatch):
    def broken_write(p, text):
        p.write_text("{")
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write", broken_write)
    with pytest.raises(OSError):
        store.save(make_bead("bd-2"))
    assert not store.path_for("bd-2").exists()


def test_interrupted_save_is_recovered_from_backup(store):
    bead = make_bead("bd-1")
    store.save(bead)
    path = store.path_for("bd-1")
    store.backup_path(path).write_text(path.read_text())
    path.write_text('{"id": "bd-1", "inte')

    loaded = store.load("bd-1")
    assert loaded.intent == bead.intent
    assert not store.backup_path(path).exists()


def test_backup_restored_over_undecodable_file(store):
    bead = make_bead("bd-1")
    store.save(bead)
    path = store.path_for("bd-1")
    store.backup_path(path).write_text(path.read_text())
    path.write_bytes(b"\xff\xfe garbage")

    assert store.load("bd-1").intent == bead.intent
    assert not store.backup_path(path).exists()


def test_stale_backup_next_to_good_file_is_dropped(store):
    bead = make_bead("bd-1")
    store.save(bead)
    path = store.path_for("bd-1")
    store.backup_path(path).write_text("old")
    assert store.load("bd-1").id == "bd-1"
    assert not store.backup_path(path).exists()


# ── bd CLI store ──────────────────────────────────────────────────────

ISSUE = {
    "id": "gt-42",
    "title": "Add divide",
    "status": "in_progress",
    "description": (
        "Implement divide.\n\n```json\n"
        + json.dumps({
            "dod": {"verifiers": [{"name": "test", "command": "go test ./..."}]},
            "constraints": {"max_iterations": 5},
        })
        + "\n```"
    ),
    "notes": json.dumps({"attempt_count": 2}),
}


class FakeBd(BdCliStore):
    def __init__(self, responses=None):
        super().__init__(bd_bin="bd")
        self.responses = responses or {}
        self.calls = []

    def _bd(self, *args):
        self.calls.append(args)
        response = self.responses.get(args[0], "")
        if isinstance(response, Exception):
            raise response
        return response


def test_bd_load_reads_json_block():
    store = FakeBd({"show": json.dumps([ISSUE])})
    bead = store.load("gt-42")
    assert bead.intent == "Implement divide."
    assert bead.status == BeadStatus.IN_PROGRESS
    assert bead.constraints.max_iterations == 5
    assert bead.verifiers[0].command == "go test ./..."
    assert bead.ralph_meta.attempt_count == 2
    assert store.calls == [("show", "gt-42", "--json")]


def test_bd_load_not_found():
    store = FakeBd({"show": BeadStoreError("bd show gt-1 failed: Error: issue not found")})
    with pytest.raises(BeadNotFoundError):
        store.load("gt-1")


def test_bd_save_maps_status_and_notes():
    store = FakeBd({"show": json.dumps(ISSUE)})
    bead = store.load("gt-42")
    store.save(bead, {"status": "completed", "ralph_meta": {"attempt_count": 3}})
    args = store.calls[-1]
    assert args[:4] == ("update", "gt-42", "--status", "closed")
    assert json.loads(args[5])["attempt_count"] == 3
