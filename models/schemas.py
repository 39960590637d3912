"""
Data models for the pipeline.

Static configuration (Job, Step, BackingService) is immutable; per-invocation
state (JobRun, StepResult) is mutated only by the stage runner and the run
tracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from workflows.triggers import Trigger


class EventType(str, Enum):
    PUSH = "push"
    PROPOSED_MERGE = "proposed-merge"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class Readiness(str, Enum):
    READY = "ready"
    UNREADY = "unready"


@dataclass(frozen=True)
class Event:
    """A source-control change that starts one pipeline invocation.

    For a push, ``branch`` is the pushed branch. For a proposed merge it is the
    target branch; the head branch goes in ``source_branch``.
    """
    type: EventType
    branch: str
    revision_id: str
    source_branch: str = ""
    version: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", EventType(self.type))
        if not self.branch or not self.branch.strip():
            raise ValueError("Event branch cannot be empty")
        if not self.revision_id or not self.revision_id.strip():
            raise ValueError("Event revision_id cannot be empty")

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "branch": self.branch,
            "revision_id": self.revision_id,
            "source_branch": self.source_branch,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]),
            branch=data["branch"],
            revision_id=data["revision_id"],
            source_branch=data.get("source_branch", ""),
            version=data.get("version", ""),
        )


@dataclass
class StepResult:
    """Outcome of a single step execution."""
    name: str
    status: StepStatus
    exit_status: int | None = None
    logs: str = ""
    error: str | None = None
    duration_sec: float | None = None
    output: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.SUCCEEDED


@dataclass(frozen=True)
class StepContext:
    """What an action step sees: its merged env and only its declared secrets."""
    job_name: str
    step_name: str
    event: Event
    env: dict[str, str]
    workdir: str


StepAction = Callable[[StepContext], Awaitable[StepResult]]


@dataclass(frozen=True)
class Step:
    """One command (or Python action) inside a job."""
    name: str
    command: str | None = None
    action: StepAction | None = None
    env: dict[str, str] = field(default_factory=dict)
    needs_services: tuple[str, ...] = ()
    needs_secrets: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Step name cannot be empty")
        if (self.command is None) == (self.action is None):
            raise ValueError(f"Step {self.name} must define exactly one of command or action")
        if self.action is not None and not callable(self.action):
            raise TypeError(f"Step {self.name} action must be callable")
        object.__setattr__(self, "needs_services", tuple(self.needs_services))
        object.__setattr__(self, "needs_secrets", tuple(self.needs_secrets))


Probe = Callable[[], bool]


@dataclass(frozen=True)
class BackingService:
    """An externally started service the readiness gate only observes."""
    name: str
    probe: Probe
    retry_interval: float = 10.0
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"Service {self.name} max_retries must be >= 1")
        if self.retry_interval < 0:
            raise ValueError(f"Service {self.name} retry_interval must be >= 0")


@dataclass(frozen=True)
class Job:
    name: str
    steps: tuple[Step, ...]
    needs: frozenset[str] = frozenset()
    trigger: "Trigger | None" = None
    services: tuple[BackingService, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Job name cannot be empty")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", frozenset(self.needs))
        object.__setattr__(self, "services", tuple(self.services))
        names = [s.name for s in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Job {self.name} has duplicate step names")
        known = {s.name for s in self.services}
        for step in self.steps:
            unknown = set(step.needs_services) - known
            if unknown:
                raise ValueError(
                    f"Step {self.name}/{step.name} needs undeclared services: {sorted(unknown)}"
                )

    @property
    def required_secrets(self) -> frozenset[str]:
        return frozenset(s for step in self.steps for s in step.needs_secrets)


@dataclass
class JobRun:
    """Per-invocation state of a Job."""
    job: Job
    status: JobStatus = JobStatus.PENDING
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    steps: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    skip_reason: str = ""
    output: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.job.name

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "failed_step": self.failed_step,
            "error": self.error,
            "skip_reason": self.skip_reason,
            "steps": [
                {
                    "name": s.name,
                    "status": s.status.value,
                    "exit_status": s.exit_status,
                    "error": s.error,
                    "duration_sec": s.duration_sec,
                    "logs": s.logs,
                }
                for s in self.steps
            ],
            "output": self.output,
        }


@dataclass(frozen=True)
class Artifact:
    """A published image. Immutable once pushed."""
    image_reference: str
    tags: tuple[str, ...]

    @property
    def references(self) -> list[str]:
        return [f"{self.image_reference}:{t}" for t in self.tags]


@dataclass
class RemoteOperationResult:
    name: str
    command: str
    exit_status: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class DeployResult:
    """Outcome of a rollout; ``failed_operation`` names the remote step that broke."""
    host: str
    status: str = "pending"  # succeeded, failed
    operations: list[RemoteOperationResult] = field(default_factory=list)
    failed_operation: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "status": self.status,
            "failed_operation": self.failed_operation,
            "error": self.error,
            "operations": [
                {"name": o.name, "command": o.command, "exit_status": o.exit_status, "output": o.output}
                for o in self.operations
            ],
        }


@dataclass
class PipelineRun:
    """Complete record of a pipeline execution."""
    run_id: str = ""
    event: dict = field(default_factory=dict)
    started_at: str = ""
    completed_at: str = ""
    duration_sec: float = 0.0
    status: str = "pending"
    jobs: list[dict] = field(default_factory=list)
    job_summary: dict = field(default_factory=dict)
    log_file: str = ""
    error: str | None = None
