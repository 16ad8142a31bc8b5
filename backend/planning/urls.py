"""
URL configuration for the planning app.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('', views.api_info, name='api-info'),
    # Stateless engine endpoints
    path('dependencies/validate/', views.validate_dependencies, name='validate-dependencies'),
    path('timeline/order/', views.order_timeline, name='order-timeline'),
    path('skills/effective/', views.effective_skills, name='effective-skills'),
    path('assignments/preview/', views.preview_assignments, name='preview-assignments'),
    path('replan/preview/', views.preview_replan, name='preview-replan'),
    # Project planning lifecycle
    path('projects/<uuid:project_id>/planning/lock/', views.lock_plan, name='lock-plan'),
    path('projects/<uuid:project_id>/assignments/run/', views.run_assignments, name='run-assignments'),
    path(
        'projects/<uuid:project_id>/assignments/assign-unassigned/',
        views.assign_unassigned,
        name='assign-unassigned'
    ),
    path('projects/<uuid:project_id>/replan/', views.replan_project, name='replan-project'),
    # Workflow read models
    path('projects/<uuid:project_id>/workflow/timeline/', views.project_timeline, name='project-timeline'),
    path(
        'projects/<uuid:project_id>/workflow/timeline/<uuid:task_id>/',
        views.task_timeline,
        name='task-timeline'
    ),
    path('projects/<uuid:project_id>/workflow/board/', views.project_board, name='project-board'),
]
