"""
Ralph Loop — the retry-until-verified controller for one bead.

  Idle → Running → {Completed, Failed}

Each iteration:
  1. attempt += 1, persist status=in_progress + attempt_count
  2. invoke the agent; if it fails, back off and start the next iteration
     without running verifiers
  3. run the verifier suite, persist the results
  4. all passed → Completed; otherwise back off and retry

Every pass through the loop consumes one iteration, whichever side failed,
so a run performs at most `max_iterations` agent invocations. Backoff doubles
from `initial_backoff_sec` up to `backoff_cap_sec`. Precondition errors
(missing agent CLI, unknown or malformed bead) are raised before the bead is
touched; everything else is recorded and retried.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable

from activities.agent import AgentInvoker, AgentUnavailableError
from activities.evidence import write_evidence
from activities.verify import evaluate_suite
from config import Settings
from features.beads.models import BeadStatus, MalformedBeadError, SuiteResult, WorkItem, utc_now
from features.beads.store import BeadNotFoundError, BeadStore, open_store
from features.beads.tracker import LoopTracker

log = logging.getLogger(__name__)

PRECONDITION_ERRORS = (AgentUnavailableError, BeadNotFoundError, MalformedBeadError)

MAX_ITERATIONS_REACHED = "max iterations reached"


class LoopState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Backoff:
    """Exponential backoff: doubles after every wait, capped."""

    def __init__(self, initial: int, cap: int):
        self.cap = max(cap, 0)
        self.current = min(max(initial, 0), self.cap)

    def wait(self, sleep: Callable[[float], None]) -> int:
        delay = self.current
        sleep(delay)
        self.current = min(self.current * 2, self.cap)
        return delay


_BUDGET_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$", re.IGNORECASE)
_BUDGET_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_time_budget(value: str | int | float | None) -> float | None:
    """Parse an advisory time budget ("90", "30m", "2h") into seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    match = _BUDGET_RE.match(str(value))
    if not match:
        log.warning("[RALPH] Ignoring unparseable time_budget %r", value)
        return None
    return float(match.group(1)) * _BUDGET_UNITS[match.group(2).lower()]


# Bookkeeping allowance on top of the process timeouts (store writes, evidence, tracker)
LOOP_SLACK_SEC = 300


def worst_case_runtime(bead: WorkItem, settings: Settings) -> int:
    """
    Upper bound in seconds for one loop run over `bead`.

    Every iteration may spend the full agent timeout, every verifier timeout
    and a capped backoff wait.
    """
    per_iteration = (
        settings.agent_timeout_sec
        + settings.backoff_cap_sec
        + sum(v.timeout_seconds for v in bead.verifiers)
    )
    return bead.constraints.max_iterations * per_iteration + LOOP_SLACK_SEC


@dataclass
class LoopOutcome:
    """Terminal result of a loop run."""
    bead_id: str
    status: BeadStatus
    iterations: int
    suite: SuiteResult | None = None
    failure_reason: str | None = None
    evidence_file: str | None = None
    run_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == BeadStatus.COMPLETED

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict:
        return {
            "bead_id": self.bead_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "iterations": self.iterations,
            "failure_reason": self.failure_reason,
            "evidence_file": self.evidence_file,
            "still_failing": [
                {"name": r.name, "reason": r.reason}
                for r in (self.suite.failed() if self.suite else [])
            ],
        }


class RalphLoop:
    """Drives one bead to a terminal status. Not safe to share between beads concurrently."""

    def __init__(
        self,
        store: BeadStore,
        invoker: AgentInvoker,
        settings: Settings,
        evaluate: Callable[..., SuiteResult] = evaluate_suite,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.invoker = invoker
        self.settings = settings
        self.evaluate = evaluate
        self.sleep = sleep
        self.clock = clock
        self.state = LoopState.IDLE

    @classmethod
    def from_settings(cls, settings: Settings) -> "RalphLoop":
        return cls(open_store(settings), AgentInvoker(settings), settings)

    def run_bead(self, bead_id: str) -> LoopOutcome:
        """Check preconditions, load the bead, and run the loop on it."""
        self.invoker.ensure_available()
        bead = self.store.load(bead_id)
        return self.run(bead, check_agent=False)

    def run(self, bead: WorkItem, check_agent: bool = True) -> LoopOutcome:
        if check_agent:
            self.invoker.ensure_available()
        if not bead.verifiers:
            raise MalformedBeadError(f"bead {bead.id} has no verifiers")
        if bead.status.terminal:
            log.info("[RALPH] %s was %s, running it again", bead.id, bead.status.value)

        max_iter = bead.constraints.max_iterations
        backoff = Backoff(self.settings.initial_backoff_sec, self.settings.backoff_cap_sec)
        tracker = LoopTracker(bead.id, max_iter, self.settings.database_url)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%SZ")
        run_dir = self.settings.resolve(self.settings.runs_dir) / bead.id / stamp
        budget = parse_time_budget(bead.constraints.time_budget)
        started = self.clock()
        budget_warned = False

        attempt = 0
        last_suite: SuiteResult | None = None
        self.state = LoopState.RUNNING
        tracker.start()

        while attempt < max_iter:
            attempt += 1
            self.store.save(bead, {
                "status": BeadStatus.IN_PROGRESS.value,
                "ralph_meta": {
                    "attempt_count": attempt,
                    "last_attempt": utc_now(),
                    "backoff_seconds": backoff.current,
                    "failure_reason": None,
                },
            })
            log.info("[RALPH] %s: iteration %d/%d", bead.id, attempt, max_iter)

            agent = self.invoker.run(bead, last_suite, attempt, log_dir=run_dir)
            if not agent.success:
                self.store.save(bead, {
                    "ralph_meta": {"last_failure_summary": f"agent invocation failed: {agent.reason}"},
                })
                delay = self._back_off(backoff, attempt, max_iter)
                tracker.attempt(attempt, False, agent.reason, None, delay)
            else:
                last_suite = self.evaluate(bead.verifiers, self.settings.workspace_root)
                self.store.save(bead, {
                    "ralph_meta": {
                        "verifier_results": last_suite.to_list(self.settings.max_output_chars),
                        "last_failure_summary": "" if last_suite.all_passed else last_suite.summary(),
                    },
                })
                if last_suite.all_passed:
                    tracker.attempt(attempt, True, "", last_suite, None)
                    return self._finish(bead, BeadStatus.COMPLETED, attempt, last_suite, None, tracker)
                delay = self._back_off(backoff, attempt, max_iter)
                tracker.attempt(attempt, True, "", last_suite, delay)

            if budget is not None and not budget_warned and self.clock() - started > budget:
                budget_warned = True
                log.warning("[RALPH] %s: time budget of %ss exceeded after %d iteration(s), continuing",
                            bead.id, int(budget), attempt)

        return self._finish(bead, BeadStatus.FAILED, attempt, last_suite, MAX_ITERATIONS_REACHED, tracker)

    def _back_off(self, backoff: Backoff, attempt: int, max_iter: int) -> int | None:
        """Wait before the next iteration; no wait after the last one."""
        if attempt >= max_iter:
            return None
        log.info("[RALPH] Backing off %ds before iteration %d", backoff.current, attempt + 1)
        return backoff.wait(self.sleep)

    def _finish(
        self,
        bead: WorkItem,
        status: BeadStatus,
        iterations: int,
        suite: SuiteResult | None,
        failure_reason: str | None,
        tracker: LoopTracker,
    ) -> LoopOutcome:
        self.store.save(bead, {
            "status": status.value,
            "ralph_meta": {"attempt_count": iterations, "failure_reason": failure_reason},
        })
        self.state = LoopState.COMPLETED if status == BeadStatus.COMPLETED else LoopState.FAILED

        evidence_file: str | None = None
        try:
            evidence_file = str(write_evidence(
                self.settings.resolve(self.settings.evidence_dir),
                bead.id,
                status.value,
                iterations,
                suite,
                failure_reason=failure_reason,
                attempts=tracker.attempts,
                run_id=tracker.run_id,
                max_chars=self.settings.max_output_chars,
            ))
        except OSError as e:
            log.error("[RALPH] Could not write evidence for %s: %s", bead.id, e)
        tracker.finish(status.value, failure_reason, evidence_file)

        outcome = LoopOutcome(
            bead_id=bead.id,
            status=status,
            iterations=iterations,
            suite=suite,
            failure_reason=failure_reason,
            evidence_file=evidence_file,
            run_id=tracker.run_id,
        )
        _log_outcome(outcome)
        return outcome


def _log_outcome(outcome: LoopOutcome) -> None:
    if outcome.success:
        log.info("[RALPH] %s COMPLETED after %d iteration(s)", outcome.bead_id, outcome.iterations)
        return
    log.error("[RALPH] %s FAILED after %d iteration(s): %s",
              outcome.bead_id, outcome.iterations, outcome.failure_reason)
    if outcome.suite is None:
        log.error("[RALPH]   no verification round ran (the agent never succeeded)")
        return
    for result in outcome.suite.failed():
        log.error("[RALPH]   still failing: %s: %s", result.name, result.reason)
