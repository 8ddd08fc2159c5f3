"""
Activity: Ralph Loop — runs the whole retry-until-verified loop for one bead.

The loop owns its own retries and backoff, so the activity is registered
with a single-attempt retry policy; precondition failures are raised as
non-retryable application errors.

`plan_bead` runs first and returns the worst-case runtime of the loop for
the bead as it is stored, which the workflow uses as the run activity's
start-to-close timeout.
"""

from __future__ import annotations

import logging

from temporalio import activity
from temporalio.exceptions import ApplicationError

from config import load_settings
from features.beads.store import open_store
from workflows.ralph_loop import PRECONDITION_ERRORS, RalphLoop, worst_case_runtime

log = logging.getLogger(__name__)


def _non_retryable(bead_id: str, e: Exception) -> ApplicationError:
    log.error("[RALPH] Precondition failed for %s: %s", bead_id, e)
    return ApplicationError(str(e), type=type(e).__name__, non_retryable=True)


@activity.defn
def plan_bead(bead_id: str) -> int:
    """Load `bead_id` and return the loop's worst-case runtime in seconds."""
    settings = load_settings()
    try:
        bead = open_store(settings).load(bead_id)
    except PRECONDITION_ERRORS as e:
        raise _non_retryable(bead_id, e) from e
    budget = worst_case_runtime(bead, settings)
    log.info("[RALPH] %s: %d iteration(s), runtime bound %ds",
             bead_id, bead.constraints.max_iterations, budget)
    return budget


@activity.defn
def run_bead(bead_id: str) -> dict:
    """Run the Ralph loop on `bead_id` and return the outcome as a dict."""
    loop = RalphLoop.from_settings(load_settings())
    try:
        outcome = loop.run_bead(bead_id)
    except PRECONDITION_ERRORS as e:
        raise _non_retryable(bead_id, e) from e
    return outcome.to_dict()
