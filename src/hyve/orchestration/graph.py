"""Dependency ordering for a requested service set.

Edges are restricted to the requested set: a `depends_on` entry that is not
requested is treated as already satisfied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Sequence, Set

from ..config import ServiceSpec
from ..errors import ConfigurationError


@dataclass(frozen=True)
class StartPlan:
    order: List[str]
    levels: List[List[str]]


def _deps_in_set(name: str, specs: Mapping[str, ServiceSpec], members: Set[str]) -> List[str]:
    spec = specs.get(name)
    if spec is None:
        return []
    return [d for d in spec.depends_on if d in members]


def topological_order(requested: Sequence[str], specs: Mapping[str, ServiceSpec]) -> List[str]:
    """Depth-first order, dependencies before dependents, request order as tie-break.

    Raises ConfigurationError on a cycle among requested services.
    """
    members = set(requested)
    visited: Set[str] = set()
    visiting: List[str] = []
    out: List[str] = []

    def visit(name: str) -> None:
        if name in visited:
            return
        if name in visiting:
            cycle = visiting[visiting.index(name):] + [name]
            raise ConfigurationError(f"Dependency cycle detected: {' -> '.join(cycle)}")
        visiting.append(name)
        for dep in _deps_in_set(name, specs, members):
            visit(dep)
        visiting.pop()
        visited.add(name)
        out.append(name)

    for name in requested:
        visit(name)
    return out


def dependency_levels(order: Sequence[str], specs: Mapping[str, ServiceSpec]) -> List[List[str]]:
    """Greedy widest-level partition of a topological order."""
    members = set(order)
    assigned: Set[str] = set()
    levels: List[List[str]] = []
    while len(assigned) < len(members):
        level = [
            name
            for name in order
            if name not in assigned and all(d in assigned for d in _deps_in_set(name, specs, members))
        ]
        if not level:
            # Only reachable with an order that was not produced by topological_order().
            remaining = [n for n in order if n not in assigned]
            raise ConfigurationError(f"Cannot schedule services (cyclic dependencies?): {', '.join(remaining)}")
        assigned.update(level)
        levels.append(level)
    return levels


def resolve_levels(requested: Sequence[str], specs: Mapping[str, ServiceSpec]) -> StartPlan:
    order = topological_order(list(dict.fromkeys(requested)), specs)
    return StartPlan(order=order, levels=dependency_levels(order, specs))


def dependents_of(failed: Iterable[str], order: Sequence[str], specs: Mapping[str, ServiceSpec]) -> List[str]:
    """Services in `order` that directly depend on any failed service."""
    failed_set = set(failed)
    out: List[str] = []
    for name in order:
        spec = specs.get(name)
        if spec is not None and any(d in failed_set for d in spec.depends_on):
            out.append(name)
    return out

