# views.py
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from .engine import DependencyEngine
from .graph import DependencyError, TaskNotFound
from .models import Task
from .serializers import (
    DependencyInputSerializer,
    TaskInputSerializer,
    TaskSerializer,
    critical_path_payload,
)
from .storage import DjangoTaskStorage

# one engine per process so its writer lock serializes every mutation
engine = DependencyEngine(DjangoTaskStorage())


def error_response(exc: DependencyError) -> Response:
    """Map an engine rejection to a 4xx with its reason code."""
    code = status.HTTP_404_NOT_FOUND if isinstance(exc, TaskNotFound) else status.HTTP_400_BAD_REQUEST
    return Response({"error": exc.message, "code": exc.code}, status=code)


class TaskList(APIView):
    """
    GET  /api/tasks/  -> all tasks, newest first
    POST /api/tasks/  -> create a task; earliest starts are recomputed
    """

    def get(self, request):
        tasks = Task.objects.order_by('-created_at', '-id')
        return Response(TaskSerializer(tasks, many=True).data)

    def post(self, request):
        serializer = TaskInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        node = engine.add_task(**serializer.validated_data)
        return Response(TaskSerializer(node).data, status=status.HTTP_201_CREATED)


class TaskDetail(APIView):
    """GET / PATCH / DELETE /api/tasks/<id>/"""

    def get(self, request, task_id: int):
        try:
            task = Task.objects.get(pk=task_id)
        except Task.DoesNotExist:
            return error_response(TaskNotFound(task_id))
        return Response(TaskSerializer(task).data)

    def patch(self, request, task_id: int):
        serializer = TaskInputSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        try:
            node = engine.update_task(task_id, **serializer.validated_data)
        except DependencyError as exc:
            return error_response(exc)
        return Response(TaskSerializer(node).data)

    def delete(self, request, task_id: int):
        try:
            engine.remove_task(task_id)
        except DependencyError as exc:
            return error_response(exc)
        return Response(status=status.HTTP_204_NO_CONTENT)


class TaskDependencies(APIView):
    """
    GET    /api/tasks/<id>/dependencies/                  -> prerequisites of the task
    POST   /api/tasks/<id>/dependencies/                  -> {"required_id": n}, returns the prerequisite
    DELETE /api/tasks/<id>/dependencies/?required_id=n    -> remove one prerequisite
    """

    def get(self, request, task_id: int):
        try:
            required = engine.list_dependencies(task_id)
        except DependencyError as exc:
            return error_response(exc)
        return Response(TaskSerializer(required, many=True).data)

    def post(self, request, task_id: int):
        serializer = DependencyInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            required = engine.add_dependency(task_id, serializer.validated_data['required_id'])
        except DependencyError as exc:
            return error_response(exc)
        return Response(TaskSerializer(required).data, status=status.HTTP_201_CREATED)

    def delete(self, request, task_id: int):
        serializer = DependencyInputSerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        try:
            engine.remove_dependency(task_id, serializer.validated_data['required_id'])
        except DependencyError as exc:
            return error_response(exc)
        return Response({"message": "Dependency removed"}, status=status.HTTP_200_OK)


class CriticalPathView(APIView):
    """GET /api/critical-path/ -> longest dependency chain and its total duration (minutes)."""

    def get(self, request):
        return Response(critical_path_payload(engine.critical_path()))


class RecomputeSchedule(APIView):
    """POST /api/schedule/recompute/ -> refresh earliest starts and return the whole schedule."""

    def post(self, request):
        schedule = engine.recompute()
        payload = {
            "order": schedule.order,
            "earliest_starts": {
                str(tid): start.isoformat() for tid, start in schedule.earliest_starts.items()
            },
        }
        payload.update(critical_path_payload(schedule.critical_path))
        return Response(payload, status=status.HTTP_200_OK)
