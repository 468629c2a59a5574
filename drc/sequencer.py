"""Dependency sequencer: turns declared service dependencies into a rollout plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from .descriptors import ServiceDescriptor
from .errors import CyclicDependencyError, NotFoundError

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class RolloutPlan:
    """Services in start order; every service comes after its dependencies."""

    services: tuple[str, ...]

    def __iter__(self) -> Iterator[str]:
        return iter(self.services)

    def __len__(self) -> int:
        return len(self.services)

    def position(self, name: str) -> int:
        return self.services.index(name)


def _closure(by_name: dict[str, ServiceDescriptor], targets: Iterable[str]) -> set[str]:
    wanted: set[str] = set()
    queue = list(targets)
    while queue:
        name = queue.pop(0)
        if name in wanted:
            continue
        if name not in by_name:
            raise NotFoundError(name)
        wanted.add(name)
        queue.extend(by_name[name].depends_on)
    return wanted


def build_plan(descriptors: Iterable[ServiceDescriptor], targets: Iterable[str] | None = None) -> RolloutPlan:
    """Depth-first topological sort with three-colour cycle detection.

    Roots are visited in declaration order and dependencies in the order they
    are declared, so the same input always yields the same plan. The first
    back-edge found is reported as the path that closes the cycle.

    If ``targets`` is given, the plan only holds those services and their
    transitive dependencies.
    """
    ordered = list(descriptors)
    by_name = {d.name: d for d in ordered}

    for d in ordered:
        for dep in d.depends_on:
            if dep not in by_name:
                raise NotFoundError(dep, f"Service '{d.name}' depends on unknown service '{dep}'.")

    wanted = _closure(by_name, targets) if targets is not None else set(by_name)

    color = {name: _WHITE for name in by_name}
    out: list[str] = []

    for d in ordered:
        if d.name not in wanted or color[d.name] != _WHITE:
            continue
        # Iterative DFS; path holds the grey nodes from the root down.
        color[d.name] = _GRAY
        path = [d.name]
        pending = [iter(d.depends_on)]
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                pending.pop()
                done = path.pop()
                color[done] = _BLACK
                out.append(done)
            elif color[dep] == _GRAY:
                raise CyclicDependencyError(path[path.index(dep):] + [dep])
            elif color[dep] == _WHITE:
                color[dep] = _GRAY
                path.append(dep)
                pending.append(iter(by_name[dep].depends_on))

    return RolloutPlan(services=tuple(out))


def dependents_of(descriptors: Iterable[ServiceDescriptor], names: Iterable[str]) -> list[str]:
    """Services that depend, directly or transitively, on any of ``names``.

    Returned in declaration order; useful when deciding how far a rollback
    should cascade.
    """
    ordered = list(descriptors)
    affected: set[str] = set()
    queue = list(names)
    while queue:
        current = queue.pop(0)
        for d in ordered:
            if current in d.depends_on and d.name not in affected:
                affected.add(d.name)
                queue.append(d.name)
    return [d.name for d in ordered if d.name in affected]
