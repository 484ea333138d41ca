# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .errors import CyclicDependency, DuplicateJob, UnknownDependency
from .model import JobInstance, JobTemplate

WHITE, GREY, BLACK = 0, 1, 2


@dataclass(frozen=True)
class Dag:
    """
    Index-based job graph.

    `instances` is the arena; `deps[i]` lists the indices instance i waits on,
    `dependents[i]` the indices waiting on i.
    """
    instances: Tuple[JobInstance, ...]
    deps: Tuple[Tuple[int, ...], ...]
    dependents: Tuple[Tuple[int, ...], ...]
    _index: Mapping[str, int]

    def __len__(self) -> int:
        return len(self.instances)

    def index(self, instance_id: str) -> int:
        return self._index[instance_id]

    def deps_of(self, i: int) -> Tuple[int, ...]:
        return self.deps[i]

    def dependents_of(self, i: int) -> Tuple[int, ...]:
        return self.dependents[i]

    def roots(self) -> List[int]:
        return [i for i, d in enumerate(self.deps) if not d]

    @property
    def ids(self) -> List[str]:
        return [inst.id for inst in self.instances]


def build_dag(templates: Iterable[JobTemplate], instances: Sequence[JobInstance]) -> Dag:
    """
    Link expanded instances by their templates' `needs`.

    A dependency on a template resolves to every instance expanded from it,
    so a single job needing a 4-way matrix job waits on all 4.
    """
    templates = list(templates)
    names = [t.name for t in templates]
    if len(set(names)) != len(names):
        raise DuplicateJob(names=sorted({n for n in names if names.count(n) > 1}))

    by_template: Dict[str, List[int]] = {n: [] for n in names}
    index: Dict[str, int] = {}
    for i, inst in enumerate(instances):
        if inst.id in index:
            raise DuplicateJob(names=[inst.id])
        index[inst.id] = i
        by_template.setdefault(inst.template, []).append(i)

    needs_of = {t.name: t.needs for t in templates}

    deps: List[Tuple[int, ...]] = []
    for inst in instances:
        resolved: List[int] = []
        for dep in needs_of.get(inst.template, ()):
            targets = by_template.get(dep)
            if not targets:
                raise UnknownDependency(job=inst.template, dependency=dep, known=names)
            for t in targets:
                if t not in resolved:
                    resolved.append(t)
        deps.append(tuple(resolved))

    _check_acyclic(instances, deps)

    dependents: List[List[int]] = [[] for _ in instances]
    for i, ds in enumerate(deps):
        for d in ds:
            dependents[d].append(i)

    linked = tuple(
        replace(inst, needs=tuple(instances[d].id for d in deps[i]))
        for i, inst in enumerate(instances)
    )
    return Dag(
        instances=linked,
        deps=tuple(deps),
        dependents=tuple(tuple(d) for d in dependents),
        _index=MappingProxyType(index),
    )


def _check_acyclic(instances: Sequence[JobInstance], deps: Sequence[Tuple[int, ...]]) -> None:
    """Three-colour iterative DFS; a grey node reached again closes a cycle."""
    color = [WHITE] * len(instances)

    for start in range(len(instances)):
        if color[start] != WHITE:
            continue
        color[start] = GREY
        path = [start]
        stack = [(start, iter(deps[start]))]

        while stack:
            node, it = stack[-1]
            nxt = next(it, None)
            if nxt is None:
                color[node] = BLACK
                stack.pop()
                path.pop()
                continue
            if color[nxt] == GREY:
                loop = path[path.index(nxt):] + [nxt]
                raise CyclicDependency(cycle=[instances[i].id for i in loop])
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append((nxt, iter(deps[nxt])))


def topo_levels(dag: Dag) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Each stage could run in parallel.
    """
    indeg = [len(d) for d in dag.deps]
    q = deque(sorted((i for i, d in enumerate(indeg) if d == 0), key=lambda i: dag.instances[i].id))

    levels: List[List[str]] = []
    while q:
        level_size = len(q)
        level: List[int] = []
        for _ in range(level_size):
            level.append(q.popleft())

        nxt: List[int] = []
        for node in level:
            for child in dag.dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=lambda i: dag.instances[i].id))
        levels.append(sorted(dag.instances[i].id for i in level))

    return levels
