from rest_framework import serializers


class TaskSerializer(serializers.Serializer):
    """Read-only view of a task; works for both `Task` models and `TaskNode`s."""
    id = serializers.IntegerField(read_only=True)
    title = serializers.CharField(read_only=True)
    due_date = serializers.DateTimeField(read_only=True, allow_null=True)
    estimated_duration = serializers.IntegerField(read_only=True, allow_null=True)
    earliest_start_date = serializers.DateTimeField(read_only=True, allow_null=True)
    image_url = serializers.CharField(read_only=True, allow_null=True)


class TaskInputSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    due_date = serializers.DateTimeField(required=False, allow_null=True)
    estimated_duration = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    image_url = serializers.URLField(max_length=500, required=False, allow_null=True)


class DependencyInputSerializer(serializers.Serializer):
    required_id = serializers.IntegerField()


def critical_path_payload(path) -> dict:
    return {
        "critical_path": TaskSerializer(path.tasks, many=True).data,
        "total_duration": path.total_duration,
    }
