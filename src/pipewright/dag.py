# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import ValidationError
from .model import Job, JobStatus, PipelineDefinition


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must succeed BEFORE this job)

    Returns (adj, indeg) where adj maps a job to the jobs that need it.
    """
    names = [j.name for j in jobs]
    problems: List[str] = []

    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        problems.append(f"duplicate job names: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs:
            if need not in name_set:
                problems.append(
                    f"job '{job.name}' needs missing job '{need}' (known jobs: {sorted(name_set)})"
                )
                continue
            if need == job.name:
                problems.append(f"job '{job.name}' needs itself")
                continue
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    if problems:
        raise ValidationError("invalid job graph", problems)

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValidationError("job graph has a cycle", [f"stuck jobs: {remaining}"])

    return levels


class Graph:
    """
    Validated job graph for one pipeline definition.

    Ordering helpers always follow declaration order so that scheduling
    traces are reproducible.
    """

    def __init__(self, definition: PipelineDefinition):
        self.definition = definition
        self.order: List[str] = definition.job_names
        self._position = {name: i for i, name in enumerate(self.order)}
        self.jobs: Dict[str, Job] = {j.name: j for j in definition.jobs}
        self.adj, self.indeg = build_dag(definition.jobs)
        self._levels = topo_levels(self.adj, self.indeg)

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self):
        return iter(self.order)

    def _sorted(self, names: Iterable[str]) -> List[str]:
        return sorted(names, key=self._position.__getitem__)

    def dependents(self, name: str) -> List[str]:
        return self._sorted(self.adj[name])

    def levels(self) -> List[List[str]]:
        return [self._sorted(level) for level in self._levels]

    def topological_order(self) -> List[str]:
        return [name for level in self.levels() for name in level]

    def ready_jobs(self, statuses: Mapping[str, JobStatus]) -> List[str]:
        """Pending jobs whose every dependency has Succeeded, in declaration order."""
        ready = []
        for name in self.order:
            if statuses.get(name, JobStatus.PENDING) is not JobStatus.PENDING:
                continue
            if all(statuses.get(d) is JobStatus.SUCCEEDED for d in self.jobs[name].needs):
                ready.append(name)
        return ready

    def transitive_dependents(self, name: str) -> List[str]:
        seen: Set[str] = set()
        q = deque(self.adj[name])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.adj[node])
        return self._sorted(seen)


def load(definition: PipelineDefinition) -> Graph:
    """Validate `definition` and return its Graph, or raise ValidationError."""
    if not definition.jobs:
        raise ValidationError(f"pipeline '{definition.name}' declares no jobs")
    return Graph(definition)
