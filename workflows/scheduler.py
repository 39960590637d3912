"""
Pipeline Scheduler — runs a job graph for one event.

A job is launched only once every job it needs has succeeded and its trigger
holds for the event. A failed, skipped or cancelled dependency resolves the
job to skipped without running it. Jobs whose dependencies are all satisfied
run concurrently, so independent subgraphs fan out.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from activities.readiness import Sleep
from activities.stage_runner import JobResult, StageRunner
from config import Settings
from features.runs.tracker import RunTracker
from models.errors import ConfigurationError
from models.schemas import Event, Job, JobRun, JobStatus
from workflows.graph import JobGraph

log = logging.getLogger(__name__)

RunnerFactory = Callable[[Job, str], StageRunner]


def new_run_id() -> str:
    return f"run-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


class PipelineScheduler:
    def __init__(
        self,
        graph: JobGraph,
        settings: Settings,
        pipeline_env: dict[str, str] | None = None,
        run_id: str | None = None,
        sleep: Sleep = asyncio.sleep,
        runner_factory: RunnerFactory | None = None,
    ):
        self.graph = graph
        self.settings = settings
        self.pipeline_env = dict(pipeline_env or {})
        self.run_id = run_id or new_run_id()
        self.tracker = RunTracker(self.run_id)
        self._sleep = sleep
        self._runner_factory = runner_factory or self._default_runner
        self._partial: dict[str, JobResult] = {}

    def _default_runner(self, job: Job, workdir: str) -> StageRunner:
        return StageRunner(self.settings, workdir, self.pipeline_env, sleep=self._sleep)

    def workdir_for(self, job: Job) -> str:
        path = Path(self.settings.workspace_dir) / self.run_id / job.name
        path.mkdir(parents=True, exist_ok=True)
        return str(path)

    def check_secrets(self, event: Event) -> None:
        """Every job the event could run must have its secrets available."""
        for job in self.graph:
            if job.trigger is not None and not job.trigger(event):
                continue
            missing = self.settings.secrets.missing(job.required_secrets)
            if missing:
                raise ConfigurationError(f"Job {job.name} requires missing secrets: {missing}")

    async def run(self, event: Event) -> RunTracker:
        """Run the graph to completion. Only ConfigurationError escapes."""
        self.check_secrets(event)
        for job in self.graph:
            self.tracker.create(job)
        log.info("Pipeline %s scheduling %d jobs for %s", self.run_id, len(self.graph), event.to_dict())

        running: dict[asyncio.Task, str] = {}
        try:
            while True:
                self._launch_ready(event, running)
                if not running:
                    break
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    self._record(running.pop(task), task)
        except asyncio.CancelledError:
            await self._cancel(running)
            raise
        return self.tracker

    def _launch_ready(self, event: Event, running: dict[asyncio.Task, str]) -> None:
        # Skips can cascade, so sweep until nothing changes.
        changed = True
        while changed:
            changed = False
            for job in self.graph:
                run = self.tracker.get(job.name)
                if run.status is not JobStatus.PENDING:
                    continue
                deps = [self.tracker.get(d) for d in self.graph.dependencies(job.name)]
                if any(not d.status.terminal for d in deps):
                    continue
                blocked = [d.name for d in deps if d.status is not JobStatus.SUCCEEDED]
                if blocked:
                    self.tracker.skip(run, f"dependency not succeeded: {', '.join(sorted(blocked))}")
                elif job.trigger is not None and not job.trigger(event):
                    self.tracker.skip(run, f"trigger not satisfied: {job.trigger}")
                else:
                    self._start(run, event, running)
                changed = True

    def _start(self, run: JobRun, event: Event, running: dict[asyncio.Task, str]) -> None:
        job = run.job
        self.tracker.start(run)
        partial = JobResult(job=job.name, ok=True)
        self._partial[job.name] = partial
        runner = self._runner_factory(job, self.workdir_for(job))
        task = asyncio.create_task(runner.run(job, event, partial), name=f"job:{job.name}")
        running[task] = job.name

    def _record(self, name: str, task: asyncio.Task) -> None:
        run = self.tracker.get(name)
        exc = task.exception()
        if exc is not None:
            log.error("Job %s raised", name, exc_info=exc)
            run.steps = list(self._partial[name].steps)
            self.tracker.fail(run, f"{type(exc).__name__}: {exc}")
            return
        result: JobResult = task.result()
        run.steps = list(result.steps)
        run.output = result.output
        if result.ok:
            self.tracker.succeed(run)
        else:
            self.tracker.fail(run, result.error or "failed", failed_step=result.failed_step)

    async def _cancel(self, running: dict[asyncio.Task, str]) -> None:
        # Jobs that finished before the cancellation keep their real outcome.
        for task in [t for t in running if t.done() and not t.cancelled()]:
            self._record(running.pop(task), task)
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)
        for name in running.values():
            self.tracker.get(name).steps = list(self._partial[name].steps)
        for run in self.tracker.runs.values():
            self.tracker.cancel(run, "pipeline cancelled")
