import asyncio

import pytest

from activities.publish import ArtifactPublisher, DockerCLI, artifact_tags, publish_step
from config import Secrets, Settings
from models.errors import PublishError
from models.schemas import Event, EventType, StepContext, StepStatus
from tests.fakes import FakeEngine

CREDS = Secrets(registry_username="ci-bot", registry_token="registry-token")


def _publish(engine, tags, credentials=CREDS):
    publisher = ArtifactPublisher(engine, "wushie/fider")
    return asyncio.run(publisher.publish("/src", tags, credentials))


def test_builds_once_and_pushes_every_tag():
    engine = FakeEngine()
    artifact = _publish(engine, artifact_tags("3f2a9c1"))

    assert artifact.references == ["wushie/fider:latest", "wushie/fider:3f2a9c1"]
    assert engine.calls == [
        ("login", "ci-bot"),
        ("build", "/src", ("wushie/fider:latest", "wushie/fider:3f2a9c1")),
        ("push", "wushie/fider:latest"),
        ("push", "wushie/fider:3f2a9c1"),
    ]


def test_duplicate_and_blank_tags_are_collapsed():
    engine = FakeEngine()
    artifact = _publish(engine, ["latest", "", "latest", "v1"])
    assert artifact.tags == ("latest", "v1")


@pytest.mark.parametrize("phase", ["login", "build", "push"])
def test_each_phase_failure_raises_publish_error(phase):
    engine = FakeEngine(fail=phase)
    with pytest.raises(PublishError) as excinfo:
        _publish(engine, ["latest", "abc"])
    assert excinfo.value.phase == phase
    assert f"{phase} denied" in str(excinfo.value)


def test_push_failure_stops_remaining_pushes():
    engine = FakeEngine(fail="push")
    with pytest.raises(PublishError):
        _publish(engine, ["latest", "abc"])
    assert engine.pushed == ["wushie/fider:latest"]


def test_missing_credentials_never_reach_the_engine():
    engine = FakeEngine()
    with pytest.raises(PublishError, match="credentials"):
        _publish(engine, ["latest"], Secrets(registry_username="ci-bot"))
    assert engine.calls == []


def test_no_tags_is_an_error():
    with pytest.raises(PublishError) as excinfo:
        _publish(FakeEngine(), [])
    assert excinfo.value.phase == "tagging"


def test_step_uses_only_credentials_handed_to_the_step(tmp_path):
    # settings carry credentials, but the step env does not
    settings = Settings(secrets=CREDS)
    engine = FakeEngine()
    action = publish_step(settings, engine)
    ctx = StepContext(
        job_name="deploy",
        step_name="Build and push image",
        event=Event(type=EventType.PUSH, branch="main", revision_id="abc"),
        env={},
        workdir=str(tmp_path),
    )
    with pytest.raises(PublishError):
        asyncio.run(action(ctx))

    ctx = StepContext(
        job_name=ctx.job_name,
        step_name=ctx.step_name,
        event=ctx.event,
        env={"REGISTRY_USERNAME": "ci-bot", "REGISTRY_TOKEN": "registry-token"},
        workdir=str(tmp_path),
    )
    result = asyncio.run(action(ctx))
    assert result.status is StepStatus.SUCCEEDED
    assert result.output == {"image": "wushie/fider", "tags": ["latest", "abc"]}
    assert engine.calls[1][1] == str(tmp_path / ".")


def test_docker_login_passes_token_on_stdin(monkeypatch):
    seen = {}

    async def fake_run_command(args, **kwargs):
        seen["args"] = args
        seen["stdin"] = kwargs.get("stdin")
        from utils.shell import CommandResult
        return CommandResult(args=args, exit_status=0, output="")

    monkeypatch.setattr("activities.publish.run_command", fake_run_command)
    asyncio.run(DockerCLI().login("ci-bot", "registry-token"))

    assert "registry-token" not in seen["args"]
    assert seen["stdin"] == "registry-token"
    assert "--password-stdin" in seen["args"]
