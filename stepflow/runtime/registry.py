"""
registry.py - Step registration and execution graph construction.

Each Flow owns one StepRegistry. Steps are registered in order; build()
validates the whole set and derives the immutable ExecutionGraph the
scheduler walks:

- Every listen/router source must name a registered step or a label
  declared by a router; fallback sources must name steps.
- Router labels must be unique across routers and must not shadow a step.
- Cycles made only of plain (non-router) edges are rejected.
- Steps on a router-mediated cycle must have a re-entry bound.
- At least one start step must exist.

Build is pure: the same registrations always produce an equal graph.

Usage:
    registry = StepRegistry()
    registry.register(Step("load", TriggerKind.START, load))
    registry.register(Step("clean", TriggerKind.LISTEN, clean, Condition.single("load")))
    graph = registry.build()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from .errors import DuplicateStepError, GraphValidationError
from .types import Step, StepName, TriggerKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """A producer -> consumer dependency.

    Attributes:
        source: Step name or router label the consumer listens to.
        producer: Step whose completion (or label emission) feeds the edge.
        consumer: Step that listens.
        label: Router label for router-mediated edges, else None.
        on_error: True for failure edges into fallback steps.
    """

    source: str
    producer: StepName
    consumer: StepName
    label: Optional[str] = None
    on_error: bool = False


@dataclass(frozen=True)
class ExecutionGraph:
    """Registered steps plus derived adjacency. Immutable during execution.

    Attributes:
        steps: Steps keyed by name, in registration order.
        start_steps: Names of start steps in registration order.
        edges: All dependency edges, ordered by consumer registration order.
        consumers: Source (step name or label) -> listening steps.
        label_owners: Router label -> router step name.
        fallbacks: Step name -> fallback steps watching it.
        catch_all_fallbacks: Fallback steps that watch every step.
        cyclic_steps: Steps on a router-mediated cycle.
        reentry_limits: Re-entry bound for each cyclic step.
    """

    steps: Dict[StepName, Step]
    start_steps: Tuple[StepName, ...]
    edges: Tuple[Edge, ...]
    consumers: Dict[str, Tuple[StepName, ...]]
    label_owners: Dict[str, StepName]
    fallbacks: Dict[StepName, Tuple[StepName, ...]] = field(default_factory=dict)
    catch_all_fallbacks: Tuple[StepName, ...] = ()
    cyclic_steps: FrozenSet[StepName] = frozenset()
    reentry_limits: Dict[StepName, int] = field(default_factory=dict)

    def get(self, name: StepName) -> Step:
        return self.steps[name]

    def listeners_of(self, source: str) -> Tuple[StepName, ...]:
        return self.consumers.get(source, ())

    def fallbacks_for(self, step_name: StepName) -> Tuple[StepName, ...]:
        """Fallback steps to schedule when step_name fails, registration order.

        Failures of fallback steps themselves are never handled.
        """
        if self.steps[step_name].kind == TriggerKind.FALLBACK:
            return ()
        names = set(self.fallbacks.get(step_name, ())) | set(self.catch_all_fallbacks)
        names.discard(step_name)
        return tuple(n for n in self.steps if n in names)

    def to_mermaid(self) -> str:
        """Render the graph as a Mermaid flowchart."""
        ids = {name: f"n{i}" for i, name in enumerate(self.steps)}
        lines = ["flowchart TD"]
        for name, step in self.steps.items():
            if step.kind == TriggerKind.START:
                lines.append(f'    {ids[name]}(["{name}"])')
            elif step.kind == TriggerKind.ROUTER:
                lines.append(f'    {ids[name]}{{"{name}"}}')
            elif step.kind == TriggerKind.FALLBACK:
                lines.append(f'    {ids[name]}[/"{name}"/]')
            else:
                lines.append(f'    {ids[name]}["{name}"]')
        for edge in self.edges:
            src, dst = ids[edge.producer], ids[edge.consumer]
            if edge.on_error:
                lines.append(f"    {src} -. error .-> {dst}")
            elif edge.label is not None:
                lines.append(f'    {src} -- "{edge.label}" --> {dst}')
            else:
                lines.append(f"    {src} --> {dst}")
        return "\n".join(lines) + "\n"


class StepRegistry:
    """Ordered collection of steps for one flow definition."""

    def __init__(self) -> None:
        self._steps: Dict[StepName, Step] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def steps(self) -> List[Step]:
        return list(self._steps.values())

    def register(self, step: Step) -> Step:
        """Add a step.

        Raises:
            DuplicateStepError: If a step with the same name exists.
            ValueError: If the step declaration is malformed.
        """
        if step.name in self._steps:
            raise DuplicateStepError(step.name)
        if not step.name:
            raise ValueError("Step name must be a non-empty string")
        if step.max_reentries is not None and step.max_reentries < 0:
            raise ValueError(f"Step '{step.name}': max_reentries must be >= 0")
        if step.kind == TriggerKind.START and step.condition is not None:
            raise ValueError(f"Start step '{step.name}' cannot declare a condition")
        if step.kind in (TriggerKind.LISTEN, TriggerKind.ROUTER) and step.condition is None:
            raise ValueError(f"Step '{step.name}' must declare what it listens to")
        if step.kind == TriggerKind.ROUTER and not step.labels:
            raise ValueError(f"Router '{step.name}' must declare at least one label")
        if step.kind != TriggerKind.ROUTER and step.labels:
            raise ValueError(f"Only routers declare labels (step '{step.name}')")
        self._steps[step.name] = step
        logger.debug("Registered %s step '%s'", step.kind.value, step.name)
        return step

    def build(self, default_max_reentries: Optional[int] = None) -> ExecutionGraph:
        """Validate the registrations and derive the execution graph.

        Args:
            default_max_reentries: Bound applied to cyclic steps that do not
                declare their own.

        Raises:
            GraphValidationError: Listing every problem found.
        """
        problems: List[str] = []
        steps = dict(self._steps)
        order = {name: i for i, name in enumerate(steps)}

        start_steps = tuple(n for n, s in steps.items() if s.kind == TriggerKind.START)
        if not start_steps:
            problems.append("flow has no start step")

        label_owners: Dict[str, StepName] = {}
        for name, step in steps.items():
            for label in step.labels:
                if label in steps:
                    problems.append(f"router '{name}' label '{label}' shadows a step name")
                elif label in label_owners:
                    problems.append(
                        f"label '{label}' is declared by both '{label_owners[label]}' and '{name}'"
                    )
                else:
                    label_owners[label] = name

        edges: List[Edge] = []
        fallbacks: Dict[StepName, List[StepName]] = {}
        catch_all: List[StepName] = []
        for name, step in steps.items():
            if step.kind == TriggerKind.FALLBACK:
                if step.condition is None:
                    catch_all.append(name)
                    continue
                for source in step.sources:
                    if source not in steps:
                        problems.append(f"fallback '{name}' watches unknown step '{source}'")
                        continue
                    fallbacks.setdefault(source, []).append(name)
                    edges.append(Edge(source=source, producer=source, consumer=name, on_error=True))
                continue
            for source in step.sources:
                if source in steps:
                    edges.append(Edge(source=source, producer=source, consumer=name))
                elif source in label_owners:
                    edges.append(
                        Edge(source=source, producer=label_owners[source], consumer=name, label=source)
                    )
                else:
                    problems.append(f"step '{name}' listens to unknown step or label '{source}'")

        consumers: Dict[str, List[StepName]] = {}
        for edge in edges:
            if not edge.on_error:
                consumers.setdefault(edge.source, []).append(edge.consumer)

        # Plain edges may never close a loop; only router labels can
        plain = [e for e in edges if e.label is None]
        for component in _cyclic_components(list(steps), plain):
            members = sorted(component, key=order.__getitem__)
            problems.append("cycle without a router: " + " -> ".join(members + members[:1]))

        cyclic: Set[StepName] = set()
        for component in _cyclic_components(list(steps), edges):
            cyclic.update(component)

        reentry_limits: Dict[StepName, int] = {}
        for name in sorted(cyclic, key=order.__getitem__):
            limit = steps[name].max_reentries
            if limit is None:
                limit = default_max_reentries
            if limit is None:
                problems.append(f"step '{name}' is on a router cycle but has no max_reentries")
            else:
                reentry_limits[name] = limit

        if problems:
            raise GraphValidationError(problems)

        graph = ExecutionGraph(
            steps=steps,
            start_steps=start_steps,
            edges=tuple(edges),
            consumers={k: tuple(v) for k, v in consumers.items()},
            label_owners=label_owners,
            fallbacks={k: tuple(v) for k, v in fallbacks.items()},
            catch_all_fallbacks=tuple(catch_all),
            cyclic_steps=frozenset(cyclic),
            reentry_limits=reentry_limits,
        )
        logger.debug(
            "Built graph: %d steps, %d edges, %d cyclic", len(steps), len(edges), len(cyclic)
        )
        return graph


def _cyclic_components(nodes: Sequence[StepName], edges: Sequence[Edge]) -> List[FrozenSet[StepName]]:
    """Strongly connected components that contain a cycle (Tarjan).

    Returns components of size > 1 and single nodes with a self-loop, in
    the order their first member appears in nodes.
    """
    adjacency: Dict[StepName, List[StepName]] = {n: [] for n in nodes}
    self_loops: Set[StepName] = set()
    for edge in edges:
        adjacency[edge.producer].append(edge.consumer)
        if edge.producer == edge.consumer:
            self_loops.add(edge.producer)

    index: Dict[StepName, int] = {}
    lowlink: Dict[StepName, int] = {}
    on_stack: Set[StepName] = set()
    stack: List[StepName] = []
    found: List[FrozenSet[StepName]] = []
    counter = 0

    def visit(node: StepName) -> None:
        nonlocal counter
        index[node] = lowlink[node] = counter
        counter += 1
        stack.append(node)
        on_stack.add(node)
        for succ in adjacency[node]:
            if succ not in index:
                visit(succ)
                lowlink[node] = min(lowlink[node], lowlink[succ])
            elif succ in on_stack:
                lowlink[node] = min(lowlink[node], index[succ])
        if lowlink[node] == index[node]:
            component = set()
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.add(member)
                if member == node:
                    break
            if len(component) > 1 or node in self_loops:
                found.append(frozenset(component))

    for node in nodes:
        if node not in index:
            visit(node)

    position = {n: i for i, n in enumerate(nodes)}
    return sorted(found, key=lambda c: min(position[m] for m in c))
