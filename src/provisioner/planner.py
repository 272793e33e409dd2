"""Dependency-aware planning of diff entries into stages.

Every non-NoOp diff entry becomes an operation in one of two phases:
- apply: Create or Update, ordered after the applies of its dependencies
- destroy: Delete, ordered before the destroys of its dependencies

Replacements contribute one operation per phase. By default the old
instance is destroyed before the new one is created. With
lifecycle.create_before_destroy the new instance is created first, and
the old one is destroyed only after every dependent has been applied.

Stages are topological levels computed with Kahn's algorithm: a stage
holds every operation whose ordering constraints are satisfied by
earlier stages, so operations within one stage never constrain each
other and may run concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .errors import PlanningError, PreventDestroyError
from .graph import ResourceGraph
from .models import Action, DiffEntry, Plan, ResourceKey, Stage

logger = logging.getLogger(__name__)

APPLY = "apply"
DESTROY = "destroy"


@dataclass(frozen=True)
class _Op:
    """One operation node: (resource key, phase)."""

    key: ResourceKey
    phase: str

    def __lt__(self, other: _Op) -> bool:
        return (self.key, self.phase) < (other.key, other.phase)


def _phase(entry: DiffEntry) -> str:
    return DESTROY if entry.action == Action.DELETE else APPLY


def _select_targets(
    entries: list[DiffEntry],
    graph: ResourceGraph,
    targets: Iterable[ResourceKey],
    destroy: bool,
) -> list[DiffEntry]:
    """Restrict entries to targets plus what they need.

    Applies pull in their transitive dependencies; destroys pull in their
    transitive dependents.
    """
    selected: set[ResourceKey] = set()
    for target in targets:
        selected.add(target)
        if target not in graph:
            continue
        if destroy:
            selected |= graph.transitive_dependents(target)
        else:
            selected |= graph.transitive_dependencies(target)

    if destroy:
        # Recorded dependents of a destroyed target that are no longer configured
        changed = True
        while changed:
            changed = False
            for entry in entries:
                if entry.key in selected or entry.prior is None:
                    continue
                if any(dep in selected for dep in entry.prior.dependencies):
                    selected.add(entry.key)
                    changed = True

    return [entry for entry in entries if entry.key in selected]


def _recorded_dependencies(entry: DiffEntry, graph: ResourceGraph) -> list[ResourceKey]:
    """Dependencies relevant to ordering a destroy."""
    deps: list[ResourceKey] = []
    if entry.prior is not None:
        deps.extend(entry.prior.dependencies)
    if entry.key in graph:
        deps.extend(dep for dep in graph.dependencies(entry.key) if dep not in deps)
    return deps


def _check_prevent_destroy(entries: list[DiffEntry], graph: ResourceGraph) -> None:
    for entry in entries:
        if entry.action != Action.DELETE or entry.key not in graph:
            continue
        if graph.resource(entry.key).lifecycle.prevent_destroy:
            raise PreventDestroyError(entry.key)


def build_plan(
    diffs: Iterable[DiffEntry],
    graph: ResourceGraph,
    targets: Iterable[ResourceKey] | None = None,
    destroy: bool = False,
) -> Plan:
    """Order diff entries into stages.

    Args:
        diffs: Output of compute_diff().
        graph: The desired resource graph the diff was computed from.
        targets: Optional resource keys to restrict the plan to.
        destroy: Whether this is a destroy plan.

    Returns:
        An immutable Plan.

    Raises:
        PreventDestroyError: If a protected resource would be destroyed.
        PlanningError: If the operations cannot be ordered.
    """
    entries = [entry for entry in diffs if entry.action != Action.NOOP]
    target_keys = sorted(set(targets or []))
    if target_keys:
        entries = _select_targets(entries, graph, target_keys, destroy)

    _check_prevent_destroy(entries, graph)

    ops: dict[_Op, DiffEntry] = {}
    for entry in entries:
        op = _Op(entry.key, _phase(entry))
        if op in ops:
            raise PlanningError(f"Duplicate {op.phase} operation for {entry.key}")
        ops[op] = entry

    # after[op] = operations that must complete before op starts
    after: dict[_Op, set[_Op]] = {op: set() for op in ops}

    def require(op: _Op, before: _Op) -> None:
        if op in ops and before in ops and op != before:
            after[op].add(before)

    for op, entry in ops.items():
        if op.phase == APPLY:
            # Dependencies exist before the dependent is applied
            for dep in graph.dependencies(entry.key):
                require(op, _Op(dep, APPLY))
        else:
            # Dependents are destroyed before their dependencies
            for dep in _recorded_dependencies(entry, graph):
                require(_Op(dep, DESTROY), op)

    for op, entry in ops.items():
        if op.phase != APPLY or not entry.replacement:
            continue
        destroy_op = _Op(entry.key, DESTROY)
        lifecycle = entry.desired.lifecycle if entry.desired is not None else None
        if lifecycle is not None and lifecycle.create_before_destroy:
            require(destroy_op, op)
            for dependent in graph.dependents(entry.key):
                require(destroy_op, _Op(dependent, APPLY))
        else:
            # Dependents referencing the resource need the new instance, which
            # cannot exist until the old one is gone
            require(op, destroy_op)

    # A removed resource outlives the updates that stop referencing it
    for op, entry in ops.items():
        if op.phase != APPLY or entry.prior is None:
            continue
        for dep in entry.prior.dependencies:
            destroy_op = _Op(dep, DESTROY)
            if destroy_op not in ops or ops[destroy_op].replacement:
                continue
            if not _runs_before(after, destroy_op, op):
                require(destroy_op, op)

    stages = _levels(ops, after)

    plan = Plan(
        stages=[
            Stage(index=i, entries=[ops[op] for op in level]) for i, level in enumerate(stages)
        ],
        destroy=destroy,
        targets=target_keys,
    )

    logger.info(
        "Built plan",
        extra={
            "stages": len(plan.stages),
            "operations": len(ops),
            "destroy": destroy,
            "targets": [str(t) for t in target_keys],
            **plan.summary(),
        },
    )
    return plan


def _runs_before(after: dict[_Op, set[_Op]], first: _Op, second: _Op) -> bool:
    """Whether existing edges already force first to complete before second."""
    seen: set[_Op] = set()
    stack = [second]
    while stack:
        current = stack.pop()
        if current == first:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(after[current])
    return False


def _levels(ops: dict[_Op, DiffEntry], after: dict[_Op, set[_Op]]) -> list[list[_Op]]:
    """Compute topological levels by repeated removal of ready operations."""
    in_degree = {op: len(before) for op, before in after.items()}
    unlocks: dict[_Op, list[_Op]] = {op: [] for op in ops}
    for op, before in after.items():
        for prerequisite in before:
            unlocks[prerequisite].append(op)

    levels: list[list[_Op]] = []
    ready = sorted(op for op, degree in in_degree.items() if degree == 0)

    while ready:
        levels.append(ready)
        released: list[_Op] = []
        for op in ready:
            for successor in unlocks[op]:
                in_degree[successor] -= 1
                if in_degree[successor] == 0:
                    released.append(successor)
        ready = sorted(released)

    remaining = sorted(op for op, degree in in_degree.items() if degree > 0)
    if remaining:
        members = ", ".join(f"{op.phase} {op.key}" for op in remaining)
        raise PlanningError(f"Operations could not be ordered (cycle among: {members})")

    return levels
