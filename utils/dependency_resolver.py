"""
Stage ordering for delivery tasks (Kahn's topological sort).
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Dict, List


def resolve_dependencies(tasks: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
    """
    Parameters
    ----------
    tasks : list of dicts, each with at least::
        {"task_id": str, "depends_on": List[str]}

    Returns
    -------
    List of stages.  Each stage is a list of task dicts that can run
    concurrently.  Stages are ordered so every dependency of a stage-N
    task has finished in a stage < N.  Dependencies on tasks that are not
    part of the plan are ignored (e.g. email asking for Drive links on a
    form with no Drive folder).
    """
    if not tasks:
        return []

    graph: Dict[str, List[str]] = defaultdict(list)
    in_degree: Dict[str, int] = {}
    task_map: Dict[str, Dict[str, Any]] = {t["task_id"]: t for t in tasks}

    for task in tasks:
        tid = task["task_id"]
        deps = [d for d in task.get("depends_on", []) if d in task_map]
        in_degree[tid] = len(deps)
        for dep in deps:
            graph[dep].append(tid)

    queue: deque[str] = deque(tid for tid, deg in in_degree.items() if deg == 0)

    stages: List[List[Dict[str, Any]]] = []

    while queue:
        current_stage: List[Dict[str, Any]] = []
        for _ in range(len(queue)):
            tid = queue.popleft()
            current_stage.append(task_map[tid])
            for dependent in graph[tid]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)
        stages.append(current_stage)

    remaining = {k: v for k, v in in_degree.items() if v > 0}
    if remaining:
        raise ValueError(f"Circular dependency detected among: {remaining}")

    return stages
