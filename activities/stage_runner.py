"""
Activity: Stage Runner — executes the steps of one job, strictly in order.

The first failing step fails the job; every later step is recorded as skipped.
Side effects of steps that already succeeded are left in place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from activities.readiness import ReadinessGate, Sleep
from config import Settings
from models.errors import PipelineError, StepFailure
from models.schemas import Event, Job, Step, StepContext, StepResult, StepStatus
from utils.shell import run_shell

log = logging.getLogger(__name__)


@dataclass
class JobResult:
    job: str
    ok: bool
    steps: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None

    @property
    def output(self) -> dict:
        return {s.name: s.output for s in self.steps if s.output}


class StageRunner:
    """Runs a job's steps on a single worker.

    ``pipeline_env`` is visible to every step, overridden by the job's env, then
    by the step's own env. Secrets are added only for the groups a step names
    in ``needs_secrets``.
    """

    def __init__(
        self,
        settings: Settings,
        workdir: str,
        pipeline_env: dict[str, str] | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.workdir = workdir
        self.pipeline_env = dict(pipeline_env or {})
        self._sleep = sleep

    def step_env(self, job: Job, step: Step) -> dict[str, str]:
        env = {**self.pipeline_env, **job.env, **step.env}
        env.update(self.settings.secrets.env_for(step.needs_secrets))
        return env

    async def run(self, job: Job, event: Event, result: JobResult | None = None) -> JobResult:
        """Run every step; pass ``result`` to keep partial results on cancellation."""
        if result is None:
            result = JobResult(job=job.name, ok=True)
        gate = ReadinessGate(job.services, sleep=self._sleep)
        gate.start()
        remaining = list(job.steps)
        try:
            while remaining:
                step = remaining.pop(0)
                step_result = await self._run_step(job, step, event, gate)
                result.steps.append(step_result)
                if not step_result.ok:
                    result.ok = False
                    result.failed_step = step.name
                    result.error = step_result.error
                    break
        except asyncio.CancelledError:
            result.steps.append(StepResult(name=step.name, status=StepStatus.CANCELLED))
            result.ok = False
            result.error = "cancelled"
            self._skip(result, remaining)
            raise
        finally:
            await gate.close()

        self._skip(result, remaining)
        return result

    def _skip(self, result: JobResult, remaining: list[Step]) -> None:
        for step in remaining:
            result.steps.append(StepResult(name=step.name, status=StepStatus.SKIPPED))
            log.info("[STEP] Skipped: %s/%s", result.job, step.name)
        remaining.clear()

    async def _run_step(self, job: Job, step: Step, event: Event, gate: ReadinessGate) -> StepResult:
        start = time.monotonic()
        log.info("[STEP] Running: %s/%s", job.name, step.name)
        try:
            await gate.wait_for(step.needs_services)
            if step.command is not None:
                step_result = await self._run_command(job, step)
            else:
                ctx = StepContext(
                    job_name=job.name,
                    step_name=step.name,
                    event=event,
                    env=self.step_env(job, step),
                    workdir=self.workdir,
                )
                step_result = await step.action(ctx)
        except PipelineError as e:
            step_result = StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                exit_status=getattr(e, "exit_status", None),
                logs=getattr(e, "output", ""),
                error=str(e),
            )
        except Exception as e:
            log.error("[STEP] %s/%s raised: %s", job.name, step.name, e, exc_info=True)
            step_result = StepResult(
                name=step.name, status=StepStatus.FAILED, error=f"{type(e).__name__}: {e}",
            )

        step_result.duration_sec = round(time.monotonic() - start, 2)
        if step_result.ok:
            log.info("[STEP] Succeeded: %s/%s (%.2fs)", job.name, step.name, step_result.duration_sec)
        else:
            log.error("[STEP] Failed: %s/%s: %s", job.name, step.name, step_result.error)
        return step_result

    async def _run_command(self, job: Job, step: Step) -> StepResult:
        cmd = await run_shell(
            step.command,
            cwd=self.workdir,
            env=self.step_env(job, step),
            timeout=self.settings.step_timeout,
            secrets=self.settings.secrets.values(),
        )
        if not cmd.ok:
            raise StepFailure(step.name, cmd.exit_status, cmd.output)
        return StepResult(
            name=step.name,
            status=StepStatus.SUCCEEDED,
            exit_status=cmd.exit_status,
            logs=cmd.output,
        )
