from django.urls import path

from . import views

urlpatterns = [
    path('tasks/', views.TaskList.as_view(), name='task-list'),
    path('tasks/<int:task_id>/', views.TaskDetail.as_view(), name='task-detail'),
    path('tasks/<int:task_id>/dependencies/', views.TaskDependencies.as_view(), name='task-dependencies'),
    path('critical-path/', views.CriticalPathView.as_view(), name='critical-path'),
    path('schedule/recompute/', views.RecomputeSchedule.as_view(), name='schedule-recompute'),
]
