"""
Temporal Workflow: Ralph bead run

Runs the Ralph loop for one bead as a single long activity. Start it with
workflow id `ralph-<bead_id>` so Temporal refuses a second concurrent run
on the same bead.

The run activity's timeout is sized from the bead itself (its
max_iterations, verifier timeouts and the agent timeout) by a short
planning activity, so a bead with a large budget is never cut off midway.
"""

from __future__ import annotations

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.loop import plan_bead, run_bead


PLAN_TIMEOUT = timedelta(minutes=2)


def workflow_id_for(bead_id: str) -> str:
    return f"ralph-{bead_id}"


@workflow.defn
class RalphBeadWorkflow:
    """Temporal workflow that drives one bead to completed/failed."""

    @workflow.run
    async def run(self, bead_id: str) -> dict:
        budget_sec = await workflow.execute_activity(
            plan_bead,
            args=[bead_id],
            start_to_close_timeout=PLAN_TIMEOUT,
            retry_policy=RetryPolicy(maximum_attempts=3),
        )
        workflow.logger.info("Ralph run starting for bead %s (bound %ds)", bead_id, budget_sec)
        outcome = await workflow.execute_activity(
            run_bead,
            args=[bead_id],
            start_to_close_timeout=timedelta(seconds=budget_sec),
            retry_policy=RetryPolicy(maximum_attempts=1),
        )
        workflow.logger.info("Ralph run for %s finished: %s after %d iteration(s)",
                             bead_id, outcome["status"], outcome["iterations"])
        return outcome
