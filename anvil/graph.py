"""Dependency graph over declared targets."""
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping, Sequence
import heapq

from .dependencies import ResolvedDependency
from .errors import DependencyCycle, DependencyUnavailable, InvalidTargetGraph
from .targets import Target


def _find_cycle(names: Sequence[str], edges: Mapping[str, Sequence[str]]) -> list[str]:
    visited: set[str] = set()
    active: set[str] = set()
    path: list[str] = []

    def _dfs(node: str) -> list[str] | None:
        visited.add(node)
        active.add(node)
        path.append(node)
        for dep in edges.get(node, ()):
            if dep in active:
                return path[path.index(dep):]
            if dep not in visited:
                cycle = _dfs(dep)
                if cycle:
                    return cycle
        active.discard(node)
        path.pop()
        return None

    for name in names:
        if name in visited:
            continue
        cycle = _dfs(name)
        if cycle:
            return cycle
    return []


class TargetGraph:
    """Validated, acyclic graph of targets; edges point at dependencies.

    Instances are read-only after :meth:`build` and may be shared between
    worker threads. Orderings are deterministic: ties are broken by the order
    in which targets were declared.
    """

    def __init__(
        self,
        targets: Sequence[Target],
        dependencies: Mapping[str, ResolvedDependency] | None = None,
    ) -> None:
        self._targets: tuple[Target, ...] = tuple(targets)
        self._by_name: Dict[str, Target] = {target.name: target for target in self._targets}
        self._index: Dict[str, int] = {target.name: position for position, target in enumerate(self._targets)}
        self._external: Dict[str, ResolvedDependency] = dict(dependencies or {})
        self._dependents: Dict[str, List[str]] = {target.name: [] for target in self._targets}
        for target in self._targets:
            for dep in target.depends:
                self._dependents[dep].append(target.name)
        self._order: tuple[Target, ...] | None = None
        self._groups: tuple[tuple[Target, ...], ...] | None = None

    @classmethod
    def build(
        cls,
        declarations: Iterable[Target],
        dependencies: Mapping[str, ResolvedDependency] | None = None,
    ) -> "TargetGraph":
        targets = list(declarations)
        external = dict(dependencies or {})

        seen: set[str] = set()
        for target in targets:
            if target.name in seen:
                raise InvalidTargetGraph(f"Target '{target.name}' is declared more than once")
            seen.add(target.name)

        for target in targets:
            for dep in target.depends:
                if dep not in seen:
                    available = ", ".join(sorted(seen)) or "<none>"
                    raise InvalidTargetGraph(
                        f"Target '{target.name}' depends on unknown target '{dep}'. Available targets: {available}"
                    )
            for name in target.external:
                if name not in external:
                    raise DependencyUnavailable(name, f"required by target '{target.name}' but not resolved")

        edges = {target.name: list(target.depends) for target in targets}
        cycle = _find_cycle([target.name for target in targets], edges)
        if cycle:
            position = {target.name: index for index, target in enumerate(targets)}
            start = min(range(len(cycle)), key=lambda item: position[cycle[item]])
            raise DependencyCycle(cycle[start:] + cycle[:start])

        graph = cls(targets, external)
        graph.topological_order()
        return graph

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def targets(self) -> tuple[Target, ...]:
        """Targets in declaration order."""

        return self._targets

    def get(self, name: str) -> Target:
        try:
            return self._by_name[name]
        except KeyError:
            available = ", ".join(self._by_name) or "<none>"
            raise KeyError(f"Target '{name}' not found. Available targets: {available}") from None

    def declaration_index(self, name: str) -> int:
        return self._index[name]

    def dependencies_of(self, name: str) -> tuple[Target, ...]:
        return tuple(self._by_name[dep] for dep in self.get(name).depends)

    def dependents_of(self, name: str) -> tuple[Target, ...]:
        return tuple(self._by_name[dep] for dep in self._dependents[name])

    def external_of(self, name: str) -> tuple[ResolvedDependency, ...]:
        return tuple(self._external[dep] for dep in self.get(name).external)

    @property
    def external(self) -> Mapping[str, ResolvedDependency]:
        return dict(self._external)

    def _closure(self, names: Iterable[str], step: Mapping[str, Sequence[str]]) -> List[str]:
        found: set[str] = set()
        pending = list(names)
        while pending:
            current = pending.pop()
            for neighbour in step[current]:
                if neighbour not in found:
                    found.add(neighbour)
                    pending.append(neighbour)
        return sorted(found, key=self._index.__getitem__)

    def transitive_dependencies(self, name: str) -> List[str]:
        return self._closure([name], {target.name: target.depends for target in self._targets})

    def transitive_dependents(self, name: str) -> List[str]:
        return self._closure([name], self._dependents)

    def edges(self) -> List[tuple[str, str]]:
        """``(dependent, dependency)`` pairs in declaration order."""

        return [(target.name, dep) for target in self._targets for dep in target.depends]

    def topological_order(self) -> tuple[Target, ...]:
        if self._order is not None:
            return self._order

        indegree = {target.name: len(target.depends) for target in self._targets}
        ready = [self._index[name] for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[Target] = []

        while ready:
            target = self._targets[heapq.heappop(ready)]
            order.append(target)
            for dependent in self._dependents[target.name]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, self._index[dependent])

        if len(order) != len(self._targets):
            edges = {target.name: list(target.depends) for target in self._targets}
            raise DependencyCycle(_find_cycle([target.name for target in self._targets], edges))

        self._order = tuple(order)
        return self._order

    def independent_groups(self) -> tuple[tuple[Target, ...], ...]:
        """Successive ready sets: each group depends only on earlier groups."""

        if self._groups is not None:
            return self._groups

        level: Dict[str, int] = {}
        for target in self.topological_order():
            level[target.name] = 1 + max((level[dep] for dep in target.depends), default=-1)

        buckets: Dict[int, List[Target]] = {}
        for target in self._targets:
            buckets.setdefault(level[target.name], []).append(target)
        self._groups = tuple(tuple(buckets[depth]) for depth in sorted(buckets))
        return self._groups

    def subgraph(self, names: Iterable[str]) -> "TargetGraph":
        """Graph restricted to ``names`` and everything they depend on."""

        selected = list(names)
        for name in selected:
            self.get(name)
        keep = set(selected)
        for name in selected:
            keep.update(self.transitive_dependencies(name))
        targets = [target for target in self._targets if target.name in keep]
        used = {dep for target in targets for dep in target.external}
        return TargetGraph(targets, {name: dep for name, dep in self._external.items() if name in used})


__all__ = ["TargetGraph"]
