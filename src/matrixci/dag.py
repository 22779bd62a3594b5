# dag.py
from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Dict, Iterable, List, Set, Tuple

from .errors import DuplicateJobName, MalformedConfig

if TYPE_CHECKING:
    from .model import JobDefinition


def build_dag(jobs: Iterable["JobDefinition"]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job dependency graph.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)

    Returns (adj, indeg) where adj maps a job to the jobs waiting on it.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    seen: Set[str] = set()
    for n in names:
        if n in seen:
            raise DuplicateJobName(n)
        seen.add(n)

    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in adj:
                raise MalformedConfig(
                    f"needs unknown job '{need}'. Known jobs: {sorted(adj)}",
                    where=f"jobs.{job.name}.needs",
                )
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Jobs in one stage do not depend on each other.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []

        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise MalformedConfig(f"job dependencies form a cycle. Stuck jobs: {remaining}", where="jobs")

    return levels


def dependents_closure(adj: Dict[str, Set[str]], root: str) -> List[str]:
    """Every job that (transitively) needs `root`, in breadth-first order."""
    out: List[str] = []
    seen = {root}
    q = deque(sorted(adj.get(root, set())))
    while q:
        node = q.popleft()
        if node in seen:
            continue
        seen.add(node)
        out.append(node)
        q.extend(sorted(adj.get(node, set())))
    return out
