"""Builds a dependency-ordered plan from declared resources."""

from __future__ import annotations

from collections import deque
from typing import Mapping

from shipwright.core.errors import CyclicDependencyError, UnknownDependencyError
from shipwright.specs.models import Plan, ResourceSpec


class PlanBuilder:
    """Topologically orders resources so dependencies always come first.

    Among resources that are ready at the same time, declaration order is
    kept, which makes the plan stable across runs of the same manifest.
    """

    def build(self, resources: Mapping[str, ResourceSpec]) -> Plan:
        for name, spec in resources.items():
            for dep in sorted(spec.depends_on):
                if dep not in resources:
                    raise UnknownDependencyError(name, dep)

        order = list(resources)
        position = {name: index for index, name in enumerate(order)}
        pending = {name: len(resources[name].depends_on) for name in order}
        dependents: dict[str, list[str]] = {name: [] for name in order}
        for name in order:
            for dep in resources[name].depends_on:
                dependents[dep].append(name)

        ready = deque(name for name in order if pending[name] == 0)
        steps: list[ResourceSpec] = []
        while ready:
            name = ready.popleft()
            steps.append(resources[name])
            released = []
            for child in dependents[name]:
                pending[child] -= 1
                if pending[child] == 0:
                    released.append(child)
            for child in sorted(released, key=position.__getitem__):
                _insert_ordered(ready, child, position)

        if len(steps) != len(resources):
            remaining = {name for name, count in pending.items() if count > 0}
            raise CyclicDependencyError(_find_cycle(resources, remaining))

        return Plan(steps=tuple(steps))


def _insert_ordered(ready: deque[str], name: str, position: dict[str, int]) -> None:
    """Insert keeping the ready queue sorted by declaration position."""
    for index, queued in enumerate(ready):
        if position[queued] > position[name]:
            ready.insert(index, name)
            return
    ready.append(name)


def _find_cycle(resources: Mapping[str, ResourceSpec], remaining: set[str]) -> list[str]:
    """Return one dependency cycle among the unresolved resources, e.g. [a, b, a]."""
    visiting: list[str] = []
    done: set[str] = set()

    def dfs(node: str) -> list[str] | None:
        if node in visiting:
            return visiting[visiting.index(node):] + [node]
        if node in done:
            return None
        visiting.append(node)
        for dep in sorted(resources[node].depends_on):
            if dep in remaining:
                cycle = dfs(dep)
                if cycle:
                    return cycle
        visiting.pop()
        done.add(node)
        return None

    for name in resources:
        if name in remaining:
            cycle = dfs(name)
            if cycle:
                return cycle
    return sorted(remaining)


def build_plan(resources: Mapping[str, ResourceSpec]) -> Plan:
    return PlanBuilder().build(resources)
