"""Dependency engine facade.

Every mutation runs validate -> commit -> recompute under one process-wide writer
lock and inside one storage transaction, so a rejected call leaves storage as it
was and two writers can never both pass cycle validation against the same graph.
Reads take no lock; they see whatever `storage.atomic()` gives them, which for
the Django storage is a committed snapshot.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from .graph import (
    CriticalPath,
    CycleDetected,
    CyclicDependency,
    InternalConsistencyFault,
    Schedule,
    SelfDependency,
    TaskGraph,
    TaskNode,
    find_critical_path,
    propagate_earliest_start,
    topological_order,
    would_create_cycle,
)
from .storage import TaskStorage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DependencyEngine:
    def __init__(self, storage: TaskStorage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or _utcnow
        self._write_lock = threading.Lock()

    # -----------------------
    # reads
    # -----------------------
    def snapshot(self) -> TaskGraph:
        with self.storage.atomic():
            return self._load()

    def list_dependencies(self, task_id: int) -> List[TaskNode]:
        graph = self.snapshot()
        return [graph.get(r) for r in graph.dependencies_of(task_id)]

    def critical_path(self) -> CriticalPath:
        graph = self.snapshot()
        return find_critical_path(graph, self._order(graph))

    # -----------------------
    # writes
    # -----------------------
    def add_dependency(self, dependent_id: int, required_id: int) -> TaskNode:
        """Make `dependent_id` require `required_id` and return the required task.

        Raises TaskNotFound, SelfDependency or CyclicDependency before anything is
        written. Adding an edge that already exists is a no-op.
        """
        with self._write_lock, self.storage.atomic():
            graph = self._load()
            graph.get(dependent_id)
            required = graph.get(required_id)
            if dependent_id == required_id:
                logger.info("Rejected self-dependency on task %s", dependent_id)
                raise SelfDependency(dependent_id)
            if graph.has_edge(dependent_id, required_id):
                logger.debug("Dependency %s -> %s already present", dependent_id, required_id)
                return required
            if would_create_cycle(dependent_id, required_id, graph):
                logger.info("Rejected dependency %s -> %s: would create a cycle", dependent_id, required_id)
                raise CyclicDependency(dependent_id, required_id)

            self.storage.create_edge(dependent_id, required_id)
            graph.add_edge(dependent_id, required_id)
            self._recompute(graph)
            logger.info("Task %s now requires task %s", dependent_id, required_id)
            return graph.get(required_id)

    def remove_dependency(self, dependent_id: int, required_id: int) -> bool:
        """Drop the edge if present. Returns False when there was nothing to remove."""
        with self._write_lock, self.storage.atomic():
            graph = self._load()
            if not graph.remove_edge(dependent_id, required_id):
                return False
            self.storage.delete_edge(dependent_id, required_id)
            self._recompute(graph)
            logger.info("Task %s no longer requires task %s", dependent_id, required_id)
            return True

    def add_task(self, title: str, **fields: Any) -> TaskNode:
        with self._write_lock, self.storage.atomic():
            node = self.storage.create_task(title=title, **fields)
            graph = self._load()
            self._recompute(graph)
            return graph.get(node.id)

    def update_task(self, task_id: int, **fields: Any) -> TaskNode:
        with self._write_lock, self.storage.atomic():
            graph = self._load()
            before = graph.get(task_id)
            node = self.storage.update_task(task_id, **fields)
            if node.duration == before.duration:
                return node
            graph.tasks[task_id] = node
            self._recompute(graph)
            return graph.get(task_id)

    def remove_task(self, task_id: int) -> None:
        with self._write_lock, self.storage.atomic():
            graph = self._load()
            removed = graph.remove_task(task_id)
            self.storage.delete_task(task_id)
            self._recompute(graph)
            logger.info("Deleted task %s and %d dependency edge(s)", task_id, len(removed))

    def recompute(self) -> Schedule:
        with self._write_lock, self.storage.atomic():
            return self._recompute(self._load())

    # -----------------------
    # internals
    # -----------------------
    def _load(self) -> TaskGraph:
        return TaskGraph.from_snapshot(self.storage.list_tasks(), self.storage.list_edges())

    def _order(self, graph: TaskGraph) -> List[int]:
        try:
            return topological_order(graph)
        except CycleDetected as exc:
            logger.critical("Dependency graph is cyclic despite validation: %s", exc.cycle)
            raise InternalConsistencyFault(str(exc)) from exc

    def _recompute(self, graph: TaskGraph) -> Schedule:
        order = self._order(graph)
        starts = propagate_earliest_start(graph, order, self.clock())
        changed = {tid: instant for tid, instant in starts.items()
                   if graph.get(tid).earliest_start_date != instant}
        if changed:
            self.storage.update_earliest_starts(changed)
        for task_id, instant in changed.items():
            graph.get(task_id).earliest_start_date = instant
        path = find_critical_path(graph, order)
        logger.debug("Recomputed schedule for %d task(s); critical path %s (%d min)",
                     len(order), path.task_ids, path.total_duration)
        return Schedule(order=order, earliest_starts=starts, critical_path=path)
