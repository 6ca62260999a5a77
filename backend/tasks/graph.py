"""Task dependency graph utilities.

Contains utilities for:
- holding a snapshot of tasks and "requires" edges in memory,
- detecting whether a new edge would close a cycle,
- ordering tasks so prerequisites come before dependents,
- propagating earliest-start instants forward through the graph,
- finding the critical path (longest chain by estimated duration).

Everything here is pure: callers hand in a snapshot and get derived results back.
Persistence and locking live in `engine.py` / `storage.py`.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

Edge = Tuple[int, int]  # (dependent_id, required_id)


class DependencyError(Exception):
    """Recoverable rejection of a dependency operation. Never leaves a partial mutation."""

    code = "invalid"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TaskNotFound(DependencyError):
    code = "unknown_task"

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} does not exist")
        self.task_id = task_id


class SelfDependency(DependencyError):
    code = "self_dependency"

    def __init__(self, task_id: int):
        super().__init__("A task cannot depend on itself")
        self.task_id = task_id


class CyclicDependency(DependencyError):
    code = "cycle"

    def __init__(self, dependent_id: int, required_id: int):
        super().__init__("This would create a circular dependency")
        self.dependent_id = dependent_id
        self.required_id = required_id


class CycleDetected(Exception):
    """Raised by the orderer when the graph it was given is not acyclic."""

    def __init__(self, cycle: List[int]):
        super().__init__(f"Circular dependency detected: {' -> '.join(map(str, cycle))}")
        self.cycle = cycle


class InternalConsistencyFault(RuntimeError):
    """A graph that passed cycle validation turned out to be cyclic."""


@dataclass
class TaskNode:
    id: int
    title: str
    due_date: Optional[datetime] = None
    estimated_duration: Optional[int] = None  # minutes
    earliest_start_date: Optional[datetime] = None
    image_url: Optional[str] = None

    @property
    def duration(self) -> int:
        return self.estimated_duration or 0


@dataclass
class CriticalPath:
    tasks: List[TaskNode] = field(default_factory=list)
    total_duration: int = 0

    @property
    def task_ids(self) -> List[int]:
        return [t.id for t in self.tasks]


@dataclass
class Schedule:
    order: List[int]
    earliest_starts: Dict[int, datetime]
    critical_path: CriticalPath


class TaskGraph:
    """In-memory dependency graph keyed by task id.

    Edges are stored twice so both directions are O(1):
      _requires[a]   -> ids that `a` requires (its prerequisites)
      _dependents[b] -> ids that require `b`
    The inner dicts are used as ordered sets.
    """

    def __init__(self):
        self.tasks: Dict[int, TaskNode] = {}
        self._requires: Dict[int, Dict[int, None]] = {}
        self._dependents: Dict[int, Dict[int, None]] = {}

    @classmethod
    def from_snapshot(cls, tasks: Iterable[TaskNode], edges: Iterable[Edge]) -> "TaskGraph":
        """Build a graph from storage listings.

        Tasks and adjacency are inserted in ascending id order so every traversal
        over the same snapshot visits nodes in the same order.
        """
        graph = cls()
        for task in sorted(tasks, key=lambda t: t.id):
            graph.add_task(task)
        for dependent_id, required_id in sorted(edges):
            graph.add_edge(dependent_id, required_id)
        return graph

    def __contains__(self, task_id: int) -> bool:
        return task_id in self.tasks

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self) -> Iterator[int]:
        return iter(self.tasks)

    def get(self, task_id: int) -> TaskNode:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise TaskNotFound(task_id) from None

    def add_task(self, task: TaskNode) -> None:
        self.tasks[task.id] = task
        self._requires.setdefault(task.id, {})
        self._dependents.setdefault(task.id, {})

    def remove_task(self, task_id: int) -> List[Edge]:
        """Remove a task and every edge touching it. Returns the removed edges."""
        self.get(task_id)
        removed = [(task_id, r) for r in self._requires[task_id]]
        removed += [(d, task_id) for d in self._dependents[task_id]]
        for dependent_id, required_id in removed:
            self.remove_edge(dependent_id, required_id)
        del self.tasks[task_id]
        del self._requires[task_id]
        del self._dependents[task_id]
        return removed

    def add_edge(self, dependent_id: int, required_id: int) -> bool:
        """Record that `dependent_id` requires `required_id`.

        Returns False (and changes nothing) when the edge already exists.
        Does not check for cycles; see `would_create_cycle`.
        """
        self.get(dependent_id)
        self.get(required_id)
        if dependent_id == required_id:
            raise SelfDependency(dependent_id)
        if required_id in self._requires[dependent_id]:
            return False
        self._requires[dependent_id][required_id] = None
        self._dependents[required_id][dependent_id] = None
        return True

    def remove_edge(self, dependent_id: int, required_id: int) -> bool:
        self.get(dependent_id)
        self.get(required_id)
        if required_id not in self._requires[dependent_id]:
            return False
        del self._requires[dependent_id][required_id]
        del self._dependents[required_id][dependent_id]
        return True

    def has_edge(self, dependent_id: int, required_id: int) -> bool:
        return required_id in self._requires.get(dependent_id, {})

    def neighbors_of(self, task_id: int) -> List[int]:
        """Tasks that require `task_id`."""
        self.get(task_id)
        return list(self._dependents[task_id])

    def dependencies_of(self, task_id: int) -> List[int]:
        """Tasks that `task_id` requires."""
        self.get(task_id)
        return list(self._requires[task_id])

    def edges(self) -> List[Edge]:
        return [(d, r) for d, reqs in self._requires.items() for r in reqs]

    def sources(self) -> List[int]:
        """Tasks with no prerequisites, in insertion order."""
        return [tid for tid in self.tasks if not self._requires[tid]]

    def duration_of(self, task_id: int) -> int:
        return self.get(task_id).duration

    def copy(self) -> "TaskGraph":
        clone = TaskGraph()
        for task in self.tasks.values():
            clone.add_task(replace(task))
        for dependent_id, required_id in self.edges():
            clone.add_edge(dependent_id, required_id)
        return clone


def would_create_cycle(dependent_id: int, required_id: int, graph: TaskGraph) -> bool:
    """Return True if adding "dependent_id requires required_id" would close a cycle.

    Walks what `required_id` (transitively) requires; if that reaches
    `dependent_id`, the new edge would close the loop. Uses an explicit stack so
    deep chains do not hit the recursion limit.
    """
    if dependent_id == required_id:
        return True

    visited = set()
    on_stack = set()
    stack: List[Tuple[int, Iterator[int]]] = [(required_id, iter(graph.dependencies_of(required_id)))]
    visited.add(required_id)
    on_stack.add(required_id)

    while stack:
        node, children = stack[-1]
        child = next(children, None)
        if child is None:
            stack.pop()
            on_stack.discard(node)
            continue
        if child == dependent_id:
            return True
        if child in on_stack:
            logger.warning("Existing cycle through task %s found while validating %s -> %s",
                           child, dependent_id, required_id)
            return True
        if child in visited:
            continue
        visited.add(child)
        on_stack.add(child)
        stack.append((child, iter(graph.dependencies_of(child))))

    return False


def topological_order(graph: TaskGraph) -> List[int]:
    """Order task ids so every prerequisite precedes its dependents.

    Depth-first over `neighbors_of`, prepending each node as it finishes. Roots and
    children are walked in reverse graph order so tasks with no constraint between
    them come out in ascending id order; the result is deterministic.

    Raises:
        CycleDetected: if traversal re-enters a node that is still active.
    """
    visited = set()
    active: Dict[int, None] = {}  # ordered, so the cycle can be reported
    finished: List[int] = []

    for root in reversed(list(graph)):
        if root in visited:
            continue
        visited.add(root)
        active[root] = None
        stack: List[Tuple[int, Iterator[int]]] = [(root, reversed(graph.neighbors_of(root)))]
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                del active[node]
                finished.append(node)
                continue
            if child in active:
                path = list(active)
                raise CycleDetected(path[path.index(child):] + [child])
            if child in visited:
                continue
            visited.add(child)
            active[child] = None
            stack.append((child, reversed(graph.neighbors_of(child))))

    finished.reverse()
    return finished


def propagate_earliest_start(graph: TaskGraph,
                             order: List[int],
                             reference_now: datetime) -> Dict[int, datetime]:
    """Compute the earliest feasible start of every task.

    Args:
        graph: the snapshot to schedule.
        order: a topological order of `graph` (see `topological_order`).
        reference_now: instant of the recomputation; nothing starts before it.

    Returns:
        Mapping task id -> earliest start. For every edge (d, r) the result
        satisfies start[d] >= start[r] + duration(r).
    """
    starts: Dict[int, datetime] = {}
    for task_id in order:
        earliest = reference_now
        for required_id in graph.dependencies_of(task_id):
            finish = starts[required_id] + timedelta(minutes=graph.duration_of(required_id))
            if finish > earliest:
                earliest = finish
        starts[task_id] = earliest
    return starts


def find_critical_path(graph: TaskGraph, order: Optional[List[int]] = None) -> CriticalPath:
    """Return the dependency chain with the greatest summed duration.

    Longest remaining path is memoized per node by walking the topological order
    backwards, so every successor branch is considered once. Ties go to the
    lowest task id, both when picking the next hop and the starting source.
    Chains always run to a task nothing depends on, so zero-duration tails are
    kept and a lone task still yields a one-element path.
    """
    if not len(graph):
        return CriticalPath()
    if order is None:
        order = topological_order(graph)

    best: Dict[int, int] = {}
    next_hop: Dict[int, Optional[int]] = {}
    for task_id in reversed(order):
        chosen = None
        for succ in sorted(graph.neighbors_of(task_id)):
            if chosen is None or best[succ] > best[chosen]:
                chosen = succ
        best[task_id] = graph.duration_of(task_id) + (best[chosen] if chosen is not None else 0)
        next_hop[task_id] = chosen

    start = None
    for source in sorted(graph.sources()):
        if start is None or best[source] > best[start]:
            start = source

    path: List[TaskNode] = []
    node = start
    while node is not None:
        path.append(graph.get(node))
        node = next_hop[node]
    return CriticalPath(tasks=path, total_duration=best[start])
