"""
FastAPI application — REST API for Deploy Pilot.

Endpoints:
  POST /events              — Start a pipeline for an explicit event
  POST /webhooks/github     — Start a pipeline from a GitHub push / pull_request delivery
  GET  /runs                — List pipeline runs
  GET  /runs/{run_id}       — Get pipeline run status/results
  POST /runs/{run_id}/cancel — Cancel an in-flight run
  POST /deploy              — Re-run the remote rollout alone for a published tag
  GET  /health              — Health check

A new event for a branch supersedes (cancels) the run still in flight for it.

Usage:
    uvicorn app:app --port 8000
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from temporalio.client import Client

import config
from activities.remote_deploy import redeploy
from features.runs import store as run_store
from models.errors import ConfigurationError, DeployError
from models.schemas import Event, EventType
from utils.webhooks import event_from_github, verify_signature
from workflows.pipeline import DeploymentPipeline
from workflows.runner import prepare_pipeline, run_pipeline
from workflows.scheduler import PipelineScheduler, new_run_id

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

temporal_client: Client | None = None

# In-flight runs, keyed for supersession by (event type, branch, source branch)
_tasks: dict[str, asyncio.Task] = {}
_schedulers: dict[str, PipelineScheduler] = {}
_latest: dict[tuple[str, str, str], str] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global temporal_client
    if not hasattr(app.state, "settings"):
        app.state.settings = config.Settings.from_env()
    if not hasattr(app.state, "jobs_factory"):
        app.state.jobs_factory = None
    if config.TEMPORAL_HOST:
        try:
            temporal_client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
            log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
        except Exception as e:
            log.warning("Could not connect to Temporal: %s (pipeline will run in-process)", e)
            temporal_client = None
    yield
    for task in list(_tasks.values()):
        task.cancel()


app = FastAPI(
    title="Deploy Pilot",
    description="Gated build, publish and tunnel-deploy pipeline orchestrator",
    version="1.0.0",
    lifespan=lifespan,
)


class EventRequest(BaseModel):
    type: EventType
    branch: str = Field(..., min_length=1)
    revision_id: str = Field(..., min_length=1)
    source_branch: str = ""
    version: str = ""


class PipelineStartResponse(BaseModel):
    run_id: str
    status: str
    message: str
    superseded: str | None = None
    result: dict | None = None


class DeployRequest(BaseModel):
    tag: str = "latest"


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "deploy-pilot",
        "temporal_connected": temporal_client is not None,
        "active_runs": sorted(_tasks),
    }


# ── Pipeline ──────────────────────────────────────────────────────────

@app.post("/events", response_model=PipelineStartResponse)
async def start_from_event(req: EventRequest, request: Request, wait: bool = False):
    """Start a pipeline for an explicit event. ``wait=true`` blocks until it finishes."""
    event = Event(**req.model_dump())
    return await _start(request.app, event, wait)


@app.post("/webhooks/github", response_model=PipelineStartResponse)
async def github_webhook(request: Request, wait: bool = False):
    body = await request.body()
    settings = request.app.state.settings
    signature = request.headers.get("X-Hub-Signature-256", "")
    if not verify_signature(settings.webhook_secret, body, signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    event_name = request.headers.get("X-GitHub-Event", "")
    try:
        event = event_from_github(event_name, await request.json())
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Malformed {event_name} payload: {e}")
    if event is None:
        return PipelineStartResponse(run_id="", status="ignored", message=f"No pipeline for {event_name}")
    return await _start(request.app, event, wait)


async def _start(app: FastAPI, event: Event, wait: bool) -> PipelineStartResponse:
    key = (event.type.value, event.branch, event.source_branch)
    superseded = await _supersede(key)
    run_id = new_run_id()
    settings = app.state.settings

    if temporal_client and not wait:
        await temporal_client.start_workflow(
            DeploymentPipeline.run,
            event.to_dict(),
            id=run_id,
            task_queue=config.TEMPORAL_TASK_QUEUE,
        )
        _latest[key] = run_id
        return PipelineStartResponse(
            run_id=run_id,
            status="started",
            message=f"Pipeline started via Temporal. Workflow ID: {run_id}",
            superseded=superseded,
        )

    jobs = app.state.jobs_factory(settings) if app.state.jobs_factory else None
    try:
        scheduler = prepare_pipeline(event, settings, jobs=jobs, run_id=run_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    task = asyncio.create_task(run_pipeline(scheduler, event), name=run_id)
    _tasks[run_id] = task
    _schedulers[run_id] = scheduler
    _latest[key] = run_id
    task.add_done_callback(lambda _t: _forget(run_id))

    if wait:
        try:
            result = await task
        except asyncio.CancelledError:
            return PipelineStartResponse(
                run_id=run_id, status="cancelled", message="Pipeline was superseded", superseded=superseded,
            )
        return PipelineStartResponse(
            run_id=run_id, status=result["status"], message="Pipeline ran in-process",
            superseded=superseded, result=result,
        )

    return PipelineStartResponse(
        run_id=run_id,
        status="started",
        message=f"Pipeline running in-process (no Temporal). Run ID: {run_id}",
        superseded=superseded,
    )


async def _supersede(key: tuple[str, str, str]) -> str | None:
    """Cancel the in-flight run for ``key``; returns its id if one was cancelled."""
    previous = _latest.pop(key, None)
    if previous is None:
        return None
    if previous in _tasks:
        log.info("Superseding run %s", previous)
        await _cancel_task(previous)
        return previous
    if temporal_client:
        try:
            await temporal_client.get_workflow_handle(previous).cancel()
            log.info("Superseded workflow %s", previous)
            return previous
        except Exception as e:
            log.warning("Could not cancel workflow %s: %s", previous, e)
    return None


async def _cancel_task(run_id: str) -> None:
    task = _tasks.get(run_id)
    if task is None or task.done():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def _forget(run_id: str) -> None:
    _tasks.pop(run_id, None)
    _schedulers.pop(run_id, None)


@app.get("/runs")
async def list_runs(request: Request, status: str | None = None, limit: int = 50):
    """List pipeline runs, in-flight first."""
    live = [
        {"run_id": run_id, "status": "running", **s.tracker.summary()}
        for run_id, s in _schedulers.items()
    ]
    saved = run_store.list_runs(request.app.state.settings.runs_dir, limit=limit, status=status)
    if status and status != "running":
        live = []
    return {"runs": (live + saved)[:limit]}


@app.get("/runs/{run_id}")
async def get_run(run_id: str, request: Request):
    """Get the results of a pipeline run."""
    scheduler = _schedulers.get(run_id)
    if scheduler is not None:
        return {
            "run_id": run_id,
            "status": "running",
            "jobs": scheduler.tracker.to_list(),
            "job_summary": scheduler.tracker.summary(),
        }

    record = run_store.load_run(request.app.state.settings.runs_dir, run_id)
    if record is not None:
        return record

    if temporal_client:
        try:
            handle = temporal_client.get_workflow_handle(run_id)
            desc = await handle.describe()
            result = None
            if desc.status.name == "COMPLETED":
                result = await handle.result()
            return {"run_id": run_id, "temporal_status": desc.status.name, "result": result}
        except Exception:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")

    raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


@app.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    if run_id in _tasks:
        await _cancel_task(run_id)
        return {"run_id": run_id, "status": "cancelled"}
    if temporal_client:
        try:
            await temporal_client.get_workflow_handle(run_id).cancel()
            return {"run_id": run_id, "status": "cancel_requested"}
        except Exception as e:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id} ({e})")
    raise HTTPException(status_code=404, detail=f"Run not in flight: {run_id}")


# ── Deploy ────────────────────────────────────────────────────────────

@app.post("/deploy")
async def deploy(req: DeployRequest, request: Request):
    """Re-run only the rollout for an image tag that is already published."""
    try:
        result = await redeploy(request.app.state.settings, req.tag)
    except DeployError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.to_dict())
    return result.to_dict()
