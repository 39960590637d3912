import asyncio
import os
import stat

import pytest

from activities.remote_deploy import (
    RemoteDeploymentExecutor,
    RemoteOperation,
    TunnelSSHSession,
    deploy_step,
    redeploy,
    rollout_plan,
)
from config import Secrets, Settings
from models.errors import DeployError
from models.schemas import Event, EventType, StepContext, StepStatus
from tests.fakes import FakeHost, FakeSession


def _plan(tag="latest"):
    return rollout_plan("fider", "https://example.test/fider.git", "docker-compose.yml", tag)


def _deploy(host: FakeHost, tag="latest"):
    session = FakeSession(host)
    result = asyncio.run(RemoteDeploymentExecutor(session).deploy(_plan(tag)))
    return result, session


def test_plan_is_the_discrete_rollout_sequence():
    assert [op.name for op in _plan()] == [
        "connect", "ensure-checkout", "pull-images", "stop-stack", "start-stack",
    ]


def test_first_rollout_clones_and_starts_stack():
    host = FakeHost()
    result, session = _deploy(host)

    assert result.ok
    assert host.clones == 1
    assert host.state() == (True, True, "latest")
    assert session.opened and session.closed


def test_rollout_is_idempotent():
    host = FakeHost()
    _deploy(host)
    first = host.state()
    result, _ = _deploy(host)

    assert result.ok
    assert host.state() == first
    assert host.clones == 1
    assert host.fast_forwards == 1


def test_existing_stack_is_replaced():
    host = FakeHost(has_checkout=True, running=True)
    result, _ = _deploy(host, tag="3f2a9c1")
    assert result.ok
    assert host.state() == (True, True, "3f2a9c1")


def test_unreachable_host_fails_at_connect():
    host = FakeHost(reachable=False)
    result, session = _deploy(host)

    assert result.status == "failed"
    assert result.failed_operation == "connect"
    assert "unreachable through tunnel" in result.error
    assert len(session.commands) == 1
    assert session.closed


def test_failing_operation_is_reported_and_stops_rollout():
    host = FakeHost(has_checkout=True, running=True)
    host.fail_on = "docker-compose.yml pull"
    result, session = _deploy(host)

    assert result.failed_operation == "pull-images"
    assert result.operations[-1].name == "pull-images"
    assert result.operations[-1].output == "error from host"
    # stack left untouched
    assert host.running and host.running_tag == "old"
    assert session.closed


def test_run_operation_raises_deploy_error():
    host = FakeHost()
    host.fail_on = "true"
    executor = RemoteDeploymentExecutor(FakeSession(host))

    with pytest.raises(DeployError) as excinfo:
        asyncio.run(executor.run_operation(RemoteOperation("connect", "true")))
    assert excinfo.value.operation == "connect"
    assert excinfo.value.command == "true"


def test_session_closed_on_cancellation():
    class HangingSession(FakeSession):
        async def run(self, command):
            await asyncio.sleep(30)

    session = HangingSession(FakeHost())

    async def scenario():
        task = asyncio.create_task(RemoteDeploymentExecutor(session).deploy(_plan()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert session.closed


def test_ssh_args_route_through_tunnel():
    session = TunnelSSHSession("deploy.example.test", "softwaredev", "KEY")
    args = session.ssh_args("true")

    assert args[0] == "ssh"
    assert "ProxyCommand=cloudflared access ssh --hostname deploy.example.test" in args
    assert "softwaredev@deploy.example.test" in args
    assert args[-1] == "true"
    assert "KEY" not in args


def test_key_file_lives_only_while_session_is_open():
    session = TunnelSSHSession("deploy.example.test", "softwaredev", "-----KEY-----")

    async def scenario():
        async with session:
            path = session._key_path
            assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
            with open(path, encoding="utf-8") as f:
                assert f.read() == "-----KEY-----\n"
        return path

    path = asyncio.run(scenario())
    assert not os.path.exists(path)


def test_run_on_closed_session_is_an_error():
    session = TunnelSSHSession("deploy.example.test", "softwaredev", "KEY")
    with pytest.raises(DeployError):
        asyncio.run(session.run("true"))


def _ctx(env):
    return StepContext(
        job_name="deploy",
        step_name="Deploy over tunnel",
        event=Event(type=EventType.PUSH, branch="main", revision_id="abc"),
        env=env,
        workdir="/tmp",
    )


def test_deploy_step_requires_key_in_step_env():
    settings = Settings(deploy_ssh_hostname="deploy.example.test", secrets=Secrets(deploy_key="KEY"))
    action = deploy_step(settings, session_factory=lambda key: FakeSession(FakeHost()))
    with pytest.raises(DeployError, match="deployment key"):
        asyncio.run(action(_ctx({})))


def test_deploy_step_reports_failed_rollout():
    settings = Settings(deploy_ssh_hostname="deploy.example.test")
    host = FakeHost(reachable=False)
    action = deploy_step(settings, session_factory=lambda key: FakeSession(host))

    result = asyncio.run(action(_ctx({"SSH_PRIVATE_KEY": "KEY"})))

    assert result.status is StepStatus.FAILED
    assert result.output["failed_operation"] == "connect"


def test_redeploy_needs_configured_key():
    with pytest.raises(DeployError):
        asyncio.run(redeploy(Settings()))

    host = FakeHost()
    settings = Settings(deploy_ssh_hostname="deploy.example.test", secrets=Secrets(deploy_key="KEY"))
    result = asyncio.run(redeploy(settings, "v2", session_factory=lambda key: FakeSession(host)))
    assert result.ok
    assert host.running_tag == "v2"
