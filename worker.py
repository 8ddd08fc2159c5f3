"""
Temporal Worker — registers the Ralph workflow and activity, then polls for tasks.

Usage:
    python worker.py
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from temporalio.client import Client
from temporalio.worker import Worker

import config
from activities.loop import plan_bead, run_bead
from workflows.bead_workflow import RalphBeadWorkflow

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

ALL_ACTIVITIES = [
    plan_bead,
    run_bead,
]

# One loop per thread; each loop blocks on its agent/verifier processes
MAX_CONCURRENT_BEADS = 4


async def main():
    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    log.info("Starting worker on queue: %s", config.TEMPORAL_TASK_QUEUE)
    with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_BEADS) as executor:
        worker = Worker(
            client,
            task_queue=config.TEMPORAL_TASK_QUEUE,
            workflows=[RalphBeadWorkflow],
            activities=ALL_ACTIVITIES,
            activity_executor=executor,
            max_concurrent_activities=MAX_CONCURRENT_BEADS,
        )

        log.info("Worker ready — listening for tasks")
        await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
