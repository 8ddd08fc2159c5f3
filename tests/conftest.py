"""Shared pytest fixtures."""

import sys
from pathlib import Path

import pytest

# Ensure the repo root is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from activities.agent import AgentRun  # noqa: E402
from config import Settings  # noqa: E402
from features.beads.models import Constraints, Expect, OnFailure, Verifier, WorkItem  # noqa: E402
from features.beads.store import JsonBeadStore  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        workspace_root=tmp_path,
        beads_dir=tmp_path / "beads",
        evidence_dir=tmp_path / "evidence",
        runs_dir=tmp_path / "runs",
        store_backend="json",
        agent_preset="claude",
        agent_bin="",
        agent_args=None,
        agent_timeout_sec=30,
        max_iterations=10,
        initial_backoff_sec=30,
        backoff_cap_sec=300,
        verifier_timeout_sec=300,
        breaker_threshold=0,
        database_url="",
    )


@pytest.fixture
def store(settings):
    return JsonBeadStore(settings.beads_dir)


def verifier(name, command, on_failure="stop", timeout=300, **expect):
    return Verifier(
        name=name,
        command=command,
        expect=Expect(**expect),
        timeout_seconds=timeout,
        on_failure=OnFailure(on_failure),
    )


def make_bead(bead_id="bd-1", verifiers=None, max_iterations=3, **kwargs):
    return WorkItem(
        id=bead_id,
        title=kwargs.pop("title", "Demo bead"),
        intent=kwargs.pop("intent", "Make the checks pass"),
        verifiers=verifiers or [verifier("ok", "exit 0")],
        constraints=Constraints(max_iterations=max_iterations, time_budget=kwargs.pop("time_budget", None)),
        **kwargs,
    )


class FakeInvoker:
    """Stands in for AgentInvoker: no process, scripted outcomes."""

    def __init__(self, outcomes=None, on_call=None):
        self.outcomes = list(outcomes or [])
        self.on_call = on_call
        self.calls = []

    def ensure_available(self):
        return "/usr/bin/fake-agent"

    def run(self, bead, prior, iteration, log_dir=None):
        self.calls.append({"iteration": iteration, "prior": prior})
        if self.on_call:
            self.on_call(iteration)
        ok = self.outcomes.pop(0) if self.outcomes else True
        return AgentRun(success=ok, exit_code=0 if ok else 1, reason="" if ok else "exit code 1")

    def invoke(self, bead, prior, iteration, log_dir=None):
        return self.run(bead, prior, iteration, log_dir).success


class SleepRecorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)
