"""
Job graph — validates ``needs`` edges and orders jobs topologically.
"""

from __future__ import annotations

from collections import deque
from typing import Iterable

from models.errors import ConfigurationError
from models.schemas import Job


class JobGraph:
    """A validated DAG of jobs. Construction fails on any configuration error."""

    def __init__(self, jobs: Iterable[Job]):
        self.jobs: dict[str, Job] = {}
        for job in jobs:
            if job.name in self.jobs:
                raise ConfigurationError(f"Duplicate job name: {job.name}")
            self.jobs[job.name] = job
        self._check_dependencies()
        self.order: list[str] = self._topological_order()

    def _check_dependencies(self) -> None:
        for job in self.jobs.values():
            unknown = sorted(job.needs - self.jobs.keys())
            if unknown:
                raise ConfigurationError(f"Job {job.name} needs unknown jobs: {unknown}")
            if job.name in job.needs:
                raise ConfigurationError(f"Job {job.name} depends on itself")

    def _topological_order(self) -> list[str]:
        # Kahn's algorithm; ties keep declaration order.
        declared = list(self.jobs)
        indegree = {name: len(self.jobs[name].needs) for name in declared}
        ready = deque(name for name in declared if indegree[name] == 0)
        order: list[str] = []
        while ready:
            name = ready.popleft()
            order.append(name)
            for other in declared:
                if name in self.jobs[other].needs:
                    indegree[other] -= 1
                    if indegree[other] == 0:
                        ready.append(other)

        if len(order) != len(declared):
            cyclic = sorted(n for n in declared if indegree[n] > 0)
            raise ConfigurationError(f"Dependency cycle between jobs: {cyclic}")
        return order

    def dependencies(self, name: str) -> frozenset[str]:
        return self.jobs[name].needs

    def dependents(self, name: str) -> list[str]:
        return [n for n in self.order if name in self.jobs[n].needs]

    def __iter__(self):
        return (self.jobs[name] for name in self.order)

    def __len__(self) -> int:
        return len(self.jobs)
