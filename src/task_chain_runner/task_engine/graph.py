"""Pure dependency-graph analysis over a snapshot of tasks.

Every function takes the task collection as an argument and never touches the
store, so callers decide how the snapshot was taken (usually under the store
lock via :meth:`TaskEngine.can_execute` / :meth:`TaskEngine.detect_cycle`).
Functions accept :class:`Task` objects or plain mappings, which lets imported
plans be checked before they are written.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Union

from .model import Task, TaskStatus

TaskLike = Union[Task, Mapping[str, Any]]


@dataclass
class _Node:
    id: str
    status: str
    dependencies: list[str]
    blocked_by: list[str]
    blocks: list[str]
    rank: tuple[int, int] = (2, 5)


def _as_node(task: TaskLike) -> _Node:
    if isinstance(task, Task):
        return _Node(
            id=task.id,
            status=task.status.value,
            dependencies=list(task.dependencies),
            blocked_by=[],
            blocks=list(task.blocks),
            rank=task.rank,
        )
    return _Node(
        id=str(task.get("id", "")),
        status=str(task.get("status") or TaskStatus.PENDING.value),
        dependencies=[str(d) for d in task.get("dependencies") or []],
        blocked_by=[str(d) for d in task.get("blocked_by") or []],
        blocks=[str(d) for d in task.get("blocks") or []],
    )


def _nodes(tasks: Iterable[TaskLike]) -> dict[str, _Node]:
    out: dict[str, _Node] = {}
    for t in tasks:
        node = _as_node(t)
        out[node.id] = node
    return out


# ---------------------------------------------------------------------------
# Executability
# ---------------------------------------------------------------------------

@dataclass
class ExecutionCheck:
    can_execute: bool
    blocked_by: list[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"can_execute": self.can_execute}
        if self.blocked_by:
            data["blocked_by"] = list(self.blocked_by)
        if self.reason:
            data["reason"] = self.reason
        return data


def can_execute(tasks: Iterable[TaskLike], task_id: str) -> ExecutionCheck:
    """Return whether *task_id* can run now.

    A task cannot run when it is missing, already completed, or any of its
    dependencies is not completed.  Dependencies that do not resolve count as
    blocking.
    """
    nodes = _nodes(tasks)
    node = nodes.get(task_id)
    if node is None:
        return ExecutionCheck(False, reason=f"Task not found: {task_id}")
    if node.status == TaskStatus.COMPLETED.value:
        return ExecutionCheck(False, reason="Task is already completed")

    blocked: list[str] = []
    for dep_id in node.dependencies + node.blocked_by:
        dep = nodes.get(dep_id)
        if (dep is None or dep.status != TaskStatus.COMPLETED.value) and dep_id not in blocked:
            blocked.append(dep_id)
    if blocked:
        return ExecutionCheck(False, blocked_by=blocked, reason="Waiting on incomplete dependencies")
    return ExecutionCheck(True)


# ---------------------------------------------------------------------------
# Cycles
# ---------------------------------------------------------------------------

def detect_cycle(tasks: Iterable[TaskLike]) -> list[str]:
    """Find a dependency cycle, returning ``[]`` when the graph is a DAG.

    Depth-first traversal with a visited set and an explicit stack, so long
    dependency chains do not hit the interpreter recursion limit.  When a node
    still on the stack is reached again, the path from that node back to itself
    (inclusive on both ends) is returned.
    """
    nodes = _nodes(tasks)
    # 0 = unvisited, 1 = on the stack, 2 = done
    state: dict[str, int] = {nid: 0 for nid in nodes}

    for root in nodes:
        if state[root] != 0:
            continue
        path: list[str] = [root]
        stack = [iter(nodes[root].dependencies + nodes[root].blocked_by)]
        state[root] = 1
        while stack:
            nid = path[-1]
            for dep_id in stack[-1]:
                if dep_id not in nodes:
                    continue
                if state[dep_id] == 1:
                    start = path.index(dep_id)
                    return path[start:] + [dep_id]
                if state[dep_id] == 0:
                    state[dep_id] = 1
                    path.append(dep_id)
                    stack.append(iter(nodes[dep_id].dependencies + nodes[dep_id].blocked_by))
                    break
            else:
                stack.pop()
                path.pop()
                state[nid] = 2
    return []


def break_cycles(tasks: Iterable[TaskLike]) -> tuple[list[list[str]], list[tuple[str, str]]]:
    """Find every cycle and the edges whose removal makes the graph acyclic.

    Repeatedly runs :func:`detect_cycle`, dropping the closing edge of each
    cycle found.  Returns ``(cycles, removed)`` where each removed edge is a
    ``(task_id, dependency_id)`` pair.
    """
    nodes = _nodes(tasks)
    working = [
        {"id": n.id, "status": n.status, "dependencies": list(dict.fromkeys(n.dependencies + n.blocked_by))}
        for n in nodes.values()
    ]
    by_id = {t["id"]: t for t in working}
    cycles: list[list[str]] = []
    removed: list[tuple[str, str]] = []
    while True:
        cycle = detect_cycle(working)
        if not cycle:
            return cycles, removed
        cycles.append(cycle)
        # path order is dependent -> dependency, so drop the closing edge
        by_id[cycle[-2]]["dependencies"].remove(cycle[-1])
        removed.append((cycle[-2], cycle[-1]))


def would_cycle(tasks: Iterable[TaskLike], task_id: str, new_dependency: str) -> bool:
    """True if making *task_id* depend on *new_dependency* would close a cycle."""
    if task_id == new_dependency:
        return True
    nodes = _nodes(tasks)
    # Walk the dependency chain from new_dependency looking for task_id.
    stack = [new_dependency]
    seen: set[str] = set()
    while stack:
        nid = stack.pop()
        if nid == task_id:
            return True
        if nid in seen:
            continue
        seen.add(nid)
        node = nodes.get(nid)
        if node is not None:
            stack.extend(node.dependencies + node.blocked_by)
    return False


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

@dataclass
class ReferenceReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate_references(tasks: Iterable[TaskLike]) -> ReferenceReport:
    """Check that every referenced id resolves within *tasks*.

    Unresolved ``dependencies``/``blocked_by`` are errors; unresolved ``blocks``
    are warnings since a task may declare it blocks a task not created yet.
    """
    nodes = _nodes(tasks)
    report = ReferenceReport()
    for node in nodes.values():
        for dep_id in node.dependencies:
            if dep_id not in nodes:
                report.errors.append(f"Task {node.id}: dependency '{dep_id}' does not exist")
        for dep_id in node.blocked_by:
            if dep_id not in nodes:
                report.errors.append(f"Task {node.id}: blocked_by '{dep_id}' does not exist")
        for target in node.blocks:
            if target not in nodes:
                report.warnings.append(f"Task {node.id}: blocks '{target}' which does not exist yet")
    return report


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def dependents_of(tasks: Iterable[TaskLike], task_id: str) -> list[str]:
    """Ids of tasks that directly depend on *task_id*."""
    return [n.id for n in _nodes(tasks).values() if task_id in n.dependencies + n.blocked_by]


def execution_order(tasks: Iterable[TaskLike]) -> list[list[str]]:
    """Topological sort of incomplete tasks into batches (Kahn's algorithm).

    Each batch holds tasks whose incomplete dependencies all sit in earlier
    batches; within a batch the most urgent/highest priority task comes first.
    Tasks caught in a cycle are left out.
    """
    nodes = {nid: n for nid, n in _nodes(tasks).items() if n.status != TaskStatus.COMPLETED.value}
    in_degree: dict[str, int] = {nid: 0 for nid in nodes}
    adj: dict[str, list[str]] = defaultdict(list)

    for node in nodes.values():
        for dep_id in set(node.dependencies + node.blocked_by):
            if dep_id in nodes:
                adj[dep_id].append(node.id)
                in_degree[node.id] += 1

    def _key(nid: str) -> tuple[int, int]:
        urgency, priority = nodes[nid].rank
        return -urgency, -priority

    batches: list[list[str]] = []
    queue = sorted((nid for nid, deg in in_degree.items() if deg == 0), key=_key)
    while queue:
        batches.append(list(queue))
        next_queue: list[str] = []
        for nid in queue:
            for neighbor in adj.get(nid, []):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    next_queue.append(neighbor)
        queue = sorted(next_queue, key=_key)
    return batches
