"""Tests for the REST API (in-process mode, no Temporal or Postgres)."""

import dataclasses
import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import app as app_module
from features.beads.store import JsonBeadStore
from tests.conftest import make_bead, verifier


@pytest.fixture
def client(settings):
    app_module.app.dependency_overrides[app_module.get_settings] = lambda: dataclasses.replace(
        settings, agent_bin="true",
    )
    app_module.temporal_client = None
    yield TestClient(app_module.app)
    app_module.app.dependency_overrides.clear()
    app_module._active_beads.clear()


@pytest.fixture
def beads(settings):
    return JsonBeadStore(settings.beads_dir)


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["temporal_connected"] is False


def test_get_bead(client, beads):
    beads.create(make_bead("bd-1"))
    response = client.get("/beads/bd-1")
    assert response.status_code == 200
    assert response.json()["id"] == "bd-1"


def test_get_missing_bead(client):
    assert client.get("/beads/nope").status_code == 404


def test_get_malformed_bead(client, beads):
    beads.root.mkdir(parents=True)
    beads.path_for("bad").write_text("{}")
    assert client.get("/beads/bad").status_code == 422


def test_undecodable_bead_is_unprocessable(client, beads):
    beads.root.mkdir(parents=True)
    beads.path_for("bin").write_bytes(b"\xff\xfe")
    assert client.get("/beads/bin").status_code == 422


def test_run_with_malformed_constraints_is_unprocessable(client, beads):
    beads.create(make_bead("bd-2"))
    raw = beads.load_raw("bd-2")
    raw["constraints"] = [1]
    beads.path_for("bd-2").write_text(json.dumps(raw))
    assert client.post("/beads/bd-2/run").status_code == 422


def test_run_in_process_then_list_runs(client, beads):
    beads.create(make_bead("bd-1", verifiers=[verifier("ok", "exit 0")]))

    response = client.post("/beads/bd-1/run")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["outcome"]["iterations"] == 1

    runs = client.get("/runs/bd-1").json()["runs"]
    assert len(runs) == 1
    assert runs[0]["status"] == "completed"
    assert client.get("/runs").json()["runs"][0]["bead_id"] == "bd-1"


def test_run_missing_bead(client):
    assert client.post("/beads/nope/run").status_code == 404


def test_run_without_agent(client, settings, beads):
    beads.create(make_bead("bd-1"))
    app_module.app.dependency_overrides[app_module.get_settings] = lambda: dataclasses.replace(
        settings, agent_bin="definitely-not-an-agent-ralph",
    )
    assert client.post("/beads/bd-1/run").status_code == 503


def test_concurrent_run_is_rejected(client, beads):
    beads.create(make_bead("bd-1"))
    app_module._active_beads.add("bd-1")
    assert client.post("/beads/bd-1/run").status_code == 409


def test_run_attempts_from_evidence(client, beads):
    beads.create(make_bead("bd-1", verifiers=[verifier("ok", "exit 0")]))
    run_id = client.post("/beads/bd-1/run").json()["outcome"]["run_id"]

    body = client.get(f"/runs/bd-1/{run_id}").json()
    assert body["run_id"] == run_id
    assert [a["attempt"] for a in body["attempts"]] == [1]
    assert body["attempts"][0]["all_passed"] is True

    assert client.get("/runs/bd-1/ralph-bd-1-unknown").status_code == 404


def test_run_attempts_from_postgres(client, settings, monkeypatch):
    app_module.app.dependency_overrides[app_module.get_settings] = lambda: dataclasses.replace(
        settings, database_url="postgresql://example/ralph",
    )
    stamp = datetime(2026, 1, 2, tzinfo=timezone.utc)
    monkeypatch.setattr(app_module.bead_db, "get_attempts",
                        lambda url, run_id: [{"run_id": run_id, "attempt": 1, "created_at": stamp}])

    body = client.get("/runs/bd-1/ralph-bd-1-x").json()
    assert body["attempts"] == [{"run_id": "ralph-bd-1-x", "attempt": 1, "created_at": stamp.isoformat()}]
