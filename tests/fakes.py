from __future__ import annotations

from models.schemas import StepContext, StepResult, StepStatus
from utils.shell import CommandResult


class CountingProbe:
    """Healthy from attempt ``healthy_at`` onwards (never when None)."""

    def __init__(self, healthy_at: int | None):
        self.healthy_at = healthy_at
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.healthy_at is not None and self.calls >= self.healthy_at


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def ok_action(log: list[str] | None = None, output: dict | None = None):
    async def action(ctx: StepContext) -> StepResult:
        if log is not None:
            log.append(f"{ctx.job_name}/{ctx.step_name}")
        return StepResult(name=ctx.step_name, status=StepStatus.SUCCEEDED, exit_status=0, output=output or {})
    return action


def failing_action(log: list[str] | None = None):
    async def action(ctx: StepContext) -> StepResult:
        if log is not None:
            log.append(f"{ctx.job_name}/{ctx.step_name}")
        return StepResult(name=ctx.step_name, status=StepStatus.FAILED, exit_status=1, error="boom")
    return action


class FakeEngine:
    """Container engine that records calls; ``fail`` names a phase to break."""

    def __init__(self, fail: str | None = None):
        self.fail = fail
        self.calls: list[tuple] = []

    def _result(self, phase: str) -> CommandResult:
        if phase == self.fail:
            return CommandResult(args=[phase], exit_status=1, output=f"{phase} denied")
        return CommandResult(args=[phase], exit_status=0, output="")

    async def login(self, username: str, token: str) -> CommandResult:
        self.calls.append(("login", username))
        return self._result("login")

    async def build(self, context: str, references: list[str]) -> CommandResult:
        self.calls.append(("build", context, tuple(references)))
        return self._result("build")

    async def push(self, reference: str) -> CommandResult:
        self.calls.append(("push", reference))
        return self._result("push")

    @property
    def pushed(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "push"]


class FakeHost:
    """Remote host state: a checkout directory and a compose stack."""

    def __init__(self, has_checkout: bool = False, running: bool = False, reachable: bool = True):
        self.has_checkout = has_checkout
        self.running = running
        self.running_tag: str | None = "old" if running else None
        self.reachable = reachable
        self.clones = 0
        self.fast_forwards = 0
        self.fail_on: str | None = None

    def execute(self, command: str) -> CommandResult:
        if not self.reachable:
            return CommandResult(args=[command], exit_status=255, output="websocket: bad handshake")
        if self.fail_on and self.fail_on in command:
            return CommandResult(args=[command], exit_status=1, output="error from host")
        if command.startswith("if [ -d"):
            if self.has_checkout:
                self.fast_forwards += 1
            else:
                self.clones += 1
                self.has_checkout = True
            return CommandResult(args=[command], exit_status=0, output="")
        if command.endswith(" down"):
            self.running = False
            self.running_tag = None
        elif command.endswith(" up -d"):
            tag = command.split("IMAGE_TAG=", 1)[1].split(" ", 1)[0]
            self.running = True
            self.running_tag = tag
        return CommandResult(args=[command], exit_status=0, output="")

    def state(self) -> tuple:
        return (self.has_checkout, self.running, self.running_tag)


class FakeSession:
    def __init__(self, host: FakeHost, name: str = "deploy.example.test"):
        self.host = name
        self.remote = host
        self.commands: list[str] = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        self.opened = True

    async def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self.remote.execute(command)

    async def close(self) -> None:
        self.closed = True
