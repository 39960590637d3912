"""
Activity: Remote Deployment — rolls the published image out on the target host.

The host is reached with ``ssh`` proxied through ``cloudflared access ssh``, so
it needs no direct network exposure. The rollout is a short list of discrete
remote operations instead of one script:

  connect          reach the host through the tunnel
  ensure-checkout  clone the deployment repo, or fast-forward an existing one
  pull-images      fetch the freshly published images
  stop-stack       ``docker compose down`` (no-op when nothing runs)
  start-stack      ``docker compose up -d``

Stop-then-start makes the whole sequence safe to repeat. A failure stops the
rollout and is reported with the operation and command that broke; the
registry push is never rolled back.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
from dataclasses import dataclass
from typing import Callable, Protocol

from config import Settings
from models.errors import DeployError
from models.schemas import DeployResult, RemoteOperationResult, StepContext, StepResult, StepStatus
from utils.shell import CommandResult, run_command

log = logging.getLogger(__name__)

SSH_CONNECT_FAILURE = 255
REMOTE_TIMEOUT = 900

# One rollout at a time per host. Locks bind to the first event loop that
# contends for them, so all rollouts must run on the one app or worker loop.
_host_locks: dict[str, asyncio.Lock] = {}


def host_lock(host: str) -> asyncio.Lock:
    if host not in _host_locks:
        _host_locks[host] = asyncio.Lock()
    return _host_locks[host]


class RemoteSession(Protocol):
    host: str

    async def open(self) -> None: ...

    async def run(self, command: str) -> CommandResult: ...

    async def close(self) -> None: ...


class TunnelSSHSession:
    """SSH through a Cloudflare Access tunnel.

    ``open`` writes the private key to a 0600 temp file; ``close`` removes it.
    Each ``run`` is one non-interactive ssh invocation.
    """

    def __init__(
        self,
        host: str,
        user: str,
        private_key: str,
        tunnel_binary: str = "cloudflared",
        timeout: float = REMOTE_TIMEOUT,
    ):
        self.host = host
        self.user = user
        self._private_key = private_key
        self.tunnel_binary = tunnel_binary
        self.timeout = timeout
        self._key_path: str | None = None

    async def open(self) -> None:
        if self._key_path:
            return
        fd, path = tempfile.mkstemp(prefix="deploy_key_")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self._private_key.rstrip("\n") + "\n")
        os.chmod(path, 0o600)
        self._key_path = path

    def ssh_args(self, command: str) -> list[str]:
        proxy = f"{self.tunnel_binary} access ssh --hostname {self.host}"
        return [
            "ssh",
            "-i", self._key_path or "",
            "-o", "StrictHostKeyChecking=no",
            "-o", "BatchMode=yes",
            "-o", f"ProxyCommand={proxy}",
            f"{self.user}@{self.host}",
            command,
        ]

    async def run(self, command: str) -> CommandResult:
        if not self._key_path:
            raise DeployError("session", command, "session is not open")
        return await run_command(
            self.ssh_args(command), timeout=self.timeout, secrets=[self._private_key]
        )

    async def close(self) -> None:
        if self._key_path:
            try:
                os.remove(self._key_path)
            except FileNotFoundError:
                pass
            self._key_path = None

    async def __aenter__(self) -> "TunnelSSHSession":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


@dataclass(frozen=True)
class RemoteOperation:
    name: str
    command: str


def rollout_plan(
    checkout_dir: str,
    repository_url: str,
    compose_file: str,
    image_tag: str,
) -> list[RemoteOperation]:
    """The idempotent rollout sequence for one host."""
    d = shlex.quote(checkout_dir)
    compose = f"docker compose -f {shlex.quote(compose_file)}"
    return [
        RemoteOperation("connect", "true"),
        RemoteOperation(
            "ensure-checkout",
            f"if [ -d {d}/.git ]; then git -C {d} pull --ff-only; "
            f"else git clone {shlex.quote(repository_url)} {d}; fi",
        ),
        RemoteOperation("pull-images", f"cd {d} && IMAGE_TAG={shlex.quote(image_tag)} {compose} pull"),
        RemoteOperation("stop-stack", f"cd {d} && {compose} down"),
        RemoteOperation("start-stack", f"cd {d} && IMAGE_TAG={shlex.quote(image_tag)} {compose} up -d"),
    ]


class RemoteDeploymentExecutor:
    def __init__(self, session: RemoteSession):
        self.session = session

    async def _execute(self, op: RemoteOperation) -> RemoteOperationResult:
        log.info("Remote %s on %s: %s", op.name, self.session.host, op.command)
        result = await self.session.run(op.command)
        return RemoteOperationResult(
            name=op.name, command=op.command, exit_status=result.exit_status, output=result.output,
        )

    def _error(self, op_result: RemoteOperationResult) -> DeployError:
        if op_result.exit_status == SSH_CONNECT_FAILURE:
            reason = f"host {self.session.host} unreachable through tunnel"
        else:
            reason = f"exit={op_result.exit_status}: {op_result.output.strip()[-500:]}"
        return DeployError(op_result.name, op_result.command, reason)

    async def run_operation(self, op: RemoteOperation) -> RemoteOperationResult:
        """Run one remote operation on an open session; raises DeployError when it fails."""
        op_result = await self._execute(op)
        if not op_result.ok:
            raise self._error(op_result)
        return op_result

    async def deploy(self, plan: list[RemoteOperation]) -> DeployResult:
        """Run the plan in order, stopping at the first failure.

        Holds the per-host lock for the whole sequence and always releases the
        session, including on cancellation.
        """
        deploy_result = DeployResult(host=self.session.host)
        async with host_lock(self.session.host):
            try:
                await self.session.open()
                for op in plan:
                    op_result = await self._execute(op)
                    deploy_result.operations.append(op_result)
                    if not op_result.ok:
                        e = self._error(op_result)
                        deploy_result.status = "failed"
                        deploy_result.failed_operation = e.operation
                        deploy_result.error = str(e)
                        log.error("Rollout on %s failed at %s: %s", self.session.host, e.operation, e)
                        return deploy_result
            finally:
                await self.session.close()

        deploy_result.status = "succeeded"
        log.info("Rollout on %s complete (%d operations)", self.session.host, len(deploy_result.operations))
        return deploy_result


def settings_plan(settings: Settings, image_tag: str) -> list[RemoteOperation]:
    return rollout_plan(
        settings.deploy_dir,
        settings.deploy_repository_url,
        settings.deploy_compose_file,
        image_tag,
    )


SessionFactory = Callable[[str], RemoteSession]


def tunnel_session_factory(settings: Settings) -> SessionFactory:
    def factory(private_key: str) -> RemoteSession:
        return TunnelSSHSession(settings.deploy_ssh_hostname, settings.deploy_ssh_user, private_key)
    return factory


def deploy_step(settings: Settings, image_tag: str = "latest", session_factory: SessionFactory | None = None):
    """Step action: roll out ``image_tag`` on the configured host."""
    session_factory = session_factory or tunnel_session_factory(settings)

    async def action(ctx: StepContext) -> StepResult:
        # Only present when the step declares needs_secrets=("deploy_key",)
        key = ctx.env.get("SSH_PRIVATE_KEY", "")
        if not key:
            raise DeployError("session", "", "deployment key not provided to this step")
        if not settings.deploy_ssh_hostname:
            raise DeployError("session", "", "DEPLOY_SSH_HOSTNAME is not configured")

        plan = settings_plan(settings, image_tag)
        result = await RemoteDeploymentExecutor(session_factory(key)).deploy(plan)
        return StepResult(
            name=ctx.step_name,
            status=StepStatus.SUCCEEDED if result.ok else StepStatus.FAILED,
            exit_status=0 if result.ok else 1,
            logs="\n".join(f"[{o.name}] {o.output}".rstrip() for o in result.operations),
            error=result.error,
            output=result.to_dict(),
        )

    return action


async def redeploy(
    settings: Settings,
    image_tag: str = "latest",
    session_factory: SessionFactory | None = None,
) -> DeployResult:
    """Re-run the rollout alone for an already-published tag."""
    if not settings.secrets.deploy_key:
        raise DeployError("session", "", "SSH_PRIVATE_KEY is not configured")
    session_factory = session_factory or tunnel_session_factory(settings)
    plan = settings_plan(settings, image_tag)
    return await RemoteDeploymentExecutor(session_factory(settings.secrets.deploy_key)).deploy(plan)
