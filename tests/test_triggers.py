import pytest

from models.schemas import Event, EventType
from workflows.triggers import (
    always,
    deploy_trigger,
    integration_trigger,
    on_branch,
    on_event,
    on_proposed_merge,
    on_push,
)


def _event(kind: EventType, branch: str) -> Event:
    return Event(type=kind, branch=branch, revision_id="abc123")


def test_composition_operators():
    trunk_push = on_push() & on_branch("main")
    assert trunk_push(_event(EventType.PUSH, "main"))
    assert not trunk_push(_event(EventType.PUSH, "dev"))
    assert not trunk_push(_event(EventType.PROPOSED_MERGE, "main"))

    either = on_push() | on_proposed_merge()
    assert either(_event(EventType.PROPOSED_MERGE, "x"))

    not_main = ~on_branch("main")
    assert not_main(_event(EventType.PUSH, "feature"))
    assert not not_main(_event(EventType.PUSH, "main"))
    assert always()(_event(EventType.PUSH, "anything"))


def test_description_reads_like_the_condition():
    assert str(deploy_trigger("main")) == "(event=push and branch=main)"
    assert str(on_event("push", "proposed-merge")) == "event=proposed-merge|push"


@pytest.mark.parametrize(
    "kind, branch, expected",
    [
        (EventType.PUSH, "main", True),
        (EventType.PROPOSED_MERGE, "main", True),
        (EventType.PUSH, "feature-x", False),
        (EventType.PROPOSED_MERGE, "release", False),
    ],
)
def test_integration_trigger(kind, branch, expected):
    assert integration_trigger("main")(_event(kind, branch)) is expected


@pytest.mark.parametrize("kind", list(EventType))
@pytest.mark.parametrize("branch", ["feature-x", "develop", "refs/heads/main"])
def test_deploy_never_eligible_off_trunk(kind, branch):
    assert not deploy_trigger("main")(_event(kind, branch))


def test_deploy_never_eligible_for_proposed_merge_to_trunk():
    assert not deploy_trigger("main")(_event(EventType.PROPOSED_MERGE, "main"))
    assert deploy_trigger("main")(_event(EventType.PUSH, "main"))


def test_event_rejects_blank_fields():
    with pytest.raises(ValueError):
        Event(type=EventType.PUSH, branch=" ", revision_id="abc")
    with pytest.raises(ValueError):
        Event(type=EventType.PUSH, branch="main", revision_id="")


def test_event_round_trips_through_dict():
    event = Event(type="proposed-merge", branch="main", revision_id="abc", source_branch="feature-x")
    assert event.type is EventType.PROPOSED_MERGE
    assert Event.from_dict(event.to_dict()) == event
