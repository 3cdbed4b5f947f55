"""Step types: trigger kinds, dependency conditions, and step definitions.

A Step is the static description of one unit of work in a flow. Steps are
immutable once registered; the registry derives the execution graph from
their conditions.

Usage:
    from stepflow.runtime.types import Step, TriggerKind, and_, or_

    step = Step(
        name="summarize",
        kind=TriggerKind.LISTEN,
        fn=summarize,
        condition=and_("fetch_a", "fetch_b"),
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, FrozenSet, Optional, Tuple, Union

from ._ids import StepName


class TriggerKind(str, Enum):
    """How a step becomes eligible to run."""

    START = "start"  # Eligible exactly once, at tick 0
    LISTEN = "listen"  # Eligible when its condition over upstream sources holds
    ROUTER = "router"  # Like LISTEN, but its output selects labeled edges
    FALLBACK = "fallback"  # Eligible when a watched step fails


class ConditionType(str, Enum):
    """How a condition combines its sources."""

    SINGLE = "single"
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class Condition:
    """Dependency expression over upstream step names or router labels.

    Attributes:
        kind: SINGLE, AND or OR.
        sources: Source names in declaration order, without duplicates.
    """

    kind: ConditionType
    sources: Tuple[str, ...]

    @classmethod
    def single(cls, source: str) -> "Condition":
        return cls(kind=ConditionType.SINGLE, sources=(source,))

    def is_satisfied(self, seen: FrozenSet[str]) -> bool:
        """Return True if the sources seen so far satisfy this condition."""
        if self.kind == ConditionType.AND:
            return all(source in seen for source in self.sources)
        return any(source in seen for source in self.sources)

    def describe(self) -> str:
        if self.kind == ConditionType.SINGLE:
            return self.sources[0]
        joiner = " AND " if self.kind == ConditionType.AND else " OR "
        return "(" + joiner.join(self.sources) + ")"


ConditionLike = Union[str, Condition]


def _collect_sources(conditions: Tuple[ConditionLike, ...], combinator: str) -> Tuple[str, ...]:
    if not conditions:
        raise ValueError(f"{combinator}() requires at least one condition")
    sources = []
    for condition in conditions:
        if isinstance(condition, str):
            sources.append(condition)
        elif isinstance(condition, Condition):
            sources.extend(condition.sources)
        else:
            raise TypeError(f"Invalid condition type: {type(condition).__name__}")
    # Deduplicate, keeping the first occurrence
    return tuple(dict.fromkeys(sources))


def and_(*conditions: ConditionLike) -> Condition:
    """Condition satisfied once every source has completed."""
    return Condition(kind=ConditionType.AND, sources=_collect_sources(conditions, "and_"))


def or_(*conditions: ConditionLike) -> Condition:
    """Condition satisfied as soon as any source completes."""
    return Condition(kind=ConditionType.OR, sources=_collect_sources(conditions, "or_"))


def as_condition(value: ConditionLike) -> Condition:
    """Coerce a bare source name into a single-source condition."""
    if isinstance(value, Condition):
        return value
    if isinstance(value, str) and value:
        return Condition.single(value)
    raise TypeError(f"Expected a step name or Condition, got {value!r}")


class _StopSignal:
    """Sentinel a step returns to end the flow after the current tick."""

    _instance: Optional["_StopSignal"] = None

    def __new__(cls) -> "_StopSignal":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "STOP"

    def __reduce__(self):
        return (_StopSignal, ())


STOP = _StopSignal()


StepCallable = Callable[..., Any]


@dataclass(frozen=True)
class Step:
    """A registered unit of work.

    Attributes:
        name: Unique name within the flow.
        kind: Trigger kind (start, listen, router, fallback).
        fn: Callable invoked as fn(state, inputs).
        condition: Dependency expression (None for start steps; for
            fallback steps, None means "any step").
        labels: Discriminants a router may emit (routers only).
        max_reentries: Re-entry bound when the step lies on a cycle.
    """

    name: StepName
    kind: TriggerKind
    fn: StepCallable = field(compare=False)
    condition: Optional[Condition] = None
    labels: Tuple[str, ...] = ()
    max_reentries: Optional[int] = None

    @property
    def sources(self) -> Tuple[str, ...]:
        return self.condition.sources if self.condition is not None else ()

    @property
    def is_router(self) -> bool:
        return self.kind == TriggerKind.ROUTER
