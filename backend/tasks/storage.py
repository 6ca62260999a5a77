"""Storage collaborator for the dependency engine.

The engine only talks to `TaskStorage`; `DjangoTaskStorage` is the ORM-backed
implementation used by the API.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, ContextManager, Dict, List

from django.db import transaction

from .graph import Edge, TaskNode, TaskNotFound
from .models import Task, TaskDependency


class TaskStorage(ABC):
    @abstractmethod
    def atomic(self) -> ContextManager:
        """Context in which a group of reads/writes is applied all-or-nothing."""

    @abstractmethod
    def list_tasks(self) -> List[TaskNode]: ...

    @abstractmethod
    def list_edges(self) -> List[Edge]: ...

    @abstractmethod
    def create_edge(self, dependent_id: int, required_id: int) -> None: ...

    @abstractmethod
    def delete_edge(self, dependent_id: int, required_id: int) -> None: ...

    @abstractmethod
    def update_earliest_start(self, task_id: int, instant: datetime) -> None: ...

    def update_earliest_starts(self, starts: Dict[int, datetime]) -> None:
        """Write several earliest starts at once. Backends override this to batch."""
        for task_id, instant in starts.items():
            self.update_earliest_start(task_id, instant)

    @abstractmethod
    def create_task(self, **fields: Any) -> TaskNode: ...

    @abstractmethod
    def update_task(self, task_id: int, **fields: Any) -> TaskNode: ...

    @abstractmethod
    def delete_task(self, task_id: int) -> None:
        """Delete a task together with every edge that references it."""


def to_node(task: Task) -> TaskNode:
    return TaskNode(
        id=task.id,
        title=task.title,
        due_date=task.due_date,
        estimated_duration=task.estimated_duration,
        earliest_start_date=task.earliest_start_date,
        image_url=task.image_url,
    )


class DjangoTaskStorage(TaskStorage):
    editable_fields = ("title", "due_date", "estimated_duration", "image_url")

    def atomic(self):
        return transaction.atomic()

    def list_tasks(self) -> List[TaskNode]:
        return [to_node(t) for t in Task.objects.order_by("id")]

    def list_edges(self) -> List[Edge]:
        return list(TaskDependency.objects.order_by("dependent_id", "required_id")
                    .values_list("dependent_id", "required_id"))

    def create_edge(self, dependent_id: int, required_id: int) -> None:
        TaskDependency.objects.create(dependent_id=dependent_id, required_id=required_id)

    def delete_edge(self, dependent_id: int, required_id: int) -> None:
        TaskDependency.objects.filter(dependent_id=dependent_id, required_id=required_id).delete()

    def update_earliest_start(self, task_id: int, instant: datetime) -> None:
        Task.objects.filter(pk=task_id).update(earliest_start_date=instant)

    def update_earliest_starts(self, starts: Dict[int, datetime]) -> None:
        rows = [Task(pk=tid, earliest_start_date=instant) for tid, instant in starts.items()]
        Task.objects.bulk_update(rows, ["earliest_start_date"])

    def create_task(self, **fields: Any) -> TaskNode:
        return to_node(Task.objects.create(**self._clean(fields)))

    def update_task(self, task_id: int, **fields: Any) -> TaskNode:
        task = self._get(task_id)
        for name, value in self._clean(fields).items():
            setattr(task, name, value)
        task.save()
        return to_node(task)

    def delete_task(self, task_id: int) -> None:
        # TaskDependency rows go with it (on_delete=CASCADE on both keys)
        self._get(task_id).delete()

    def _get(self, task_id: int) -> Task:
        try:
            return Task.objects.get(pk=task_id)
        except Task.DoesNotExist:
            raise TaskNotFound(task_id) from None

    def _clean(self, fields):
        unknown = set(fields) - set(self.editable_fields)
        if unknown:
            raise TypeError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
        return fields
