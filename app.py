"""
FastAPI application — REST API for the Ralph runner.

Endpoints:
  GET  /health              — Health check
  GET  /beads/{bead_id}     — Current bead document
  POST /beads/{bead_id}/run — Run the Ralph loop on a bead
  GET  /runs                — Recent loop runs (Postgres, else evidence files)
  GET  /runs/{bead_id}      — Loop runs of one bead
  GET  /runs/{bead_id}/{run_id} — Attempts of one run
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

import config
from activities.agent import AgentUnavailableError
from activities.evidence import list_evidence
from features.beads import db as bead_db
from features.beads.models import MalformedBeadError
from features.beads.store import BeadNotFoundError, BeadStoreError, open_store
from workflows.bead_workflow import RalphBeadWorkflow, workflow_id_for
from workflows.ralph_loop import PRECONDITION_ERRORS, RalphLoop

load_dotenv()

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None

# Beads with a loop running in this process (in-process mode only)
_active_beads: set[str] = set()


def get_settings() -> config.Settings:
    return config.load_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    settings = get_settings()
    # Initialize Postgres
    if settings.database_url:
        try:
            bead_db.init_db(settings.database_url)
            log.info("Postgres database initialized")
        except Exception as e:
            log.warning("Could not connect to Postgres: %s (run history in evidence files only)", e)
    # Connect to Temporal
    if config.TEMPORAL_HOST:
        try:
            temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
            log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
        except Exception as e:
            log.warning("Could not connect to Temporal: %s (loops will run in-process)", e)
            temporal_client = None
    yield


app = FastAPI(
    title="Ralph Runner",
    description="Retry-until-verified agent loop over beads, with Temporal orchestration",
    version="1.0.0",
    lifespan=lifespan,
)


class RunResponse(BaseModel):
    bead_id: str
    status: str
    message: str
    workflow_id: str | None = None
    outcome: dict | None = None


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "ralph-runner",
        "temporal_connected": temporal_client is not None,
        "active_beads": sorted(_active_beads),
    }


# ── Beads ─────────────────────────────────────────────────────────────

@app.get("/beads/{bead_id}")
def get_bead(bead_id: str, settings: config.Settings = Depends(get_settings)):
    """Get the current state of a bead."""
    try:
        return open_store(settings).load(bead_id).to_dict()
    except BeadNotFoundError:
        raise HTTPException(status_code=404, detail=f"Bead not found: {bead_id}")
    except MalformedBeadError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BeadStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/beads/{bead_id}/run", response_model=RunResponse)
async def run_bead(bead_id: str, settings: config.Settings = Depends(get_settings)):
    """Run the Ralph loop on a bead (via Temporal when connected)."""
    if temporal_client:
        workflow_id = workflow_id_for(bead_id)
        try:
            await temporal_client.start_workflow(
                RalphBeadWorkflow.run,
                bead_id,
                id=workflow_id,
                task_queue=config.TEMPORAL_TASK_QUEUE,
            )
        except WorkflowAlreadyStartedError:
            raise HTTPException(status_code=409, detail=f"A loop is already running for {bead_id}")
        return RunResponse(
            bead_id=bead_id,
            status="started",
            message=f"Loop started via Temporal. Workflow ID: {workflow_id}",
            workflow_id=workflow_id,
        )

    # Run in-process (no Temporal server)
    if bead_id in _active_beads:
        raise HTTPException(status_code=409, detail=f"A loop is already running for {bead_id}")
    _active_beads.add(bead_id)
    try:
        loop = asyncio.get_running_loop()
        ralph = RalphLoop.from_settings(settings)
        outcome = await loop.run_in_executor(None, ralph.run_bead, bead_id)
    except BeadNotFoundError:
        raise HTTPException(status_code=404, detail=f"Bead not found: {bead_id}")
    except AgentUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PRECONDITION_ERRORS as e:
        raise HTTPException(status_code=422, detail=str(e))
    finally:
        _active_beads.discard(bead_id)

    return RunResponse(
        bead_id=bead_id,
        status=outcome.status.value,
        message=f"Loop ran in-process: {outcome.status.value} after {outcome.iterations} iteration(s)",
        outcome=outcome.to_dict(),
    )


# ── Run history ───────────────────────────────────────────────────────

@app.get("/runs")
def list_runs(limit: int = 50, settings: config.Settings = Depends(get_settings)):
    """List recent loop runs."""
    return {"runs": _load_runs(settings, None, limit)}


@app.get("/runs/{bead_id}")
def list_bead_runs(bead_id: str, limit: int = 50, settings: config.Settings = Depends(get_settings)):
    """List loop runs for one bead."""
    return {"bead_id": bead_id, "runs": _load_runs(settings, bead_id, limit)}


@app.get("/runs/{bead_id}/{run_id}")
def get_run_attempts(bead_id: str, run_id: str, settings: config.Settings = Depends(get_settings)):
    """List the attempts of one loop run."""
    if settings.database_url:
        try:
            attempts = bead_db.get_attempts(settings.database_url, run_id)
            if attempts:
                return {"bead_id": bead_id, "run_id": run_id, "attempts": [_serialize(a) for a in attempts]}
        except Exception as e:
            log.warning("Could not read attempts from Postgres: %s", e)

    # Fallback: the attempt history embedded in the evidence file
    for record in list_evidence(settings.resolve(settings.evidence_dir), bead_id):
        if record.get("run_id") == run_id:
            return {"bead_id": bead_id, "run_id": run_id, "attempts": record.get("attempts", [])}
    raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


def _load_runs(settings: config.Settings, bead_id: str | None, limit: int) -> list[dict]:
    # Try Postgres first
    if settings.database_url:
        try:
            return [_serialize(r) for r in bead_db.list_runs(settings.database_url, bead_id=bead_id, limit=limit)]
        except Exception as e:
            log.warning("Could not read runs from Postgres: %s", e)

    # Fallback: evidence files
    records = list_evidence(settings.resolve(settings.evidence_dir), bead_id)
    return [
        {
            "run_id": r.get("run_id"),
            "bead_id": r.get("work_item_id"),
            "status": r.get("status"),
            "iterations": r.get("iterations"),
            "timestamp": r.get("timestamp"),
            "failure_reason": r.get("failure_reason"),
            "evidence_file": r.get("evidence_file"),
        }
        for r in records[:limit]
    ]


def _serialize(obj: Any) -> Any:
    """Make a dict JSON-serializable (handle datetimes, Decimals, etc)."""
    if isinstance(obj, dict):
        return {k: _serialize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_serialize(v) for v in obj]
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return obj
