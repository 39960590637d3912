"""
Trigger predicates — decide whether a job is eligible for an event.

Predicates are pure and compose with ``&``, ``|`` and ``~``::

    on_push() & on_branch("main")
    (on_push() | on_proposed_merge()) & on_branch("main")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from models.schemas import Event, EventType


@dataclass(frozen=True)
class Trigger:
    """A named predicate over an Event."""
    description: str
    predicate: Callable[[Event], bool]

    def __call__(self, event: Event) -> bool:
        return bool(self.predicate(event))

    def __and__(self, other: "Trigger") -> "Trigger":
        return Trigger(
            f"({self.description} and {other.description})",
            lambda e: self(e) and other(e),
        )

    def __or__(self, other: "Trigger") -> "Trigger":
        return Trigger(
            f"({self.description} or {other.description})",
            lambda e: self(e) or other(e),
        )

    def __invert__(self) -> "Trigger":
        return Trigger(f"not {self.description}", lambda e: not self(e))

    def __str__(self) -> str:
        return self.description


def always() -> Trigger:
    return Trigger("always", lambda e: True)


def on_event(*types: EventType | str) -> Trigger:
    wanted = frozenset(EventType(t) for t in types)
    label = "|".join(sorted(t.value for t in wanted))
    return Trigger(f"event={label}", lambda e: e.type in wanted)


def on_push() -> Trigger:
    return on_event(EventType.PUSH)


def on_proposed_merge() -> Trigger:
    return on_event(EventType.PROPOSED_MERGE)


def on_branch(*branches: str) -> Trigger:
    wanted = frozenset(branches)
    return Trigger(f"branch={'|'.join(sorted(wanted))}", lambda e: e.branch in wanted)


def integration_trigger(trunk: str) -> Trigger:
    """Pushes and proposed merges targeting the trunk."""
    return (on_push() | on_proposed_merge()) & on_branch(trunk)


def deploy_trigger(trunk: str) -> Trigger:
    """Only pushes landing on the trunk."""
    return on_push() & on_branch(trunk)
