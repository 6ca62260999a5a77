from django.db import models


class Task(models.Model):
    title = models.CharField(max_length=255)
    due_date = models.DateTimeField(null=True, blank=True)
    estimated_duration = models.PositiveIntegerField(null=True, blank=True)  # minutes
    earliest_start_date = models.DateTimeField(null=True, blank=True)  # derived, see engine
    image_url = models.URLField(max_length=500, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.title


class TaskDependency(models.Model):
    """`dependent` cannot start before `required` completes."""

    dependent = models.ForeignKey(Task, on_delete=models.CASCADE, related_name="dependencies")
    required = models.ForeignKey(Task, on_delete=models.CASCADE, related_name="dependents")

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["dependent", "required"], name="unique_task_dependency"),
            models.CheckConstraint(condition=~models.Q(dependent=models.F("required")),
                                   name="task_dependency_not_self"),
        ]

    def __str__(self):
        return f"{self.dependent_id} requires {self.required_id}"
