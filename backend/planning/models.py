"""
Persistence models for project planning.

These rows are the store the planning service reads from and writes to.
The engine modules never touch them directly; the service materializes
plain records before calling into the engine.
"""

import uuid

from django.db import models
from django.core.validators import MinValueValidator, MaxValueValidator

from .matching import DIFFICULTY_POINTS
from .replan import TaskStatus


class Project(models.Model):
    """
    A project whose tasks are planned, assigned and replanned.

    Attributes:
        planning_status: draft -> locked -> assigned lifecycle
        deadline: End of the project window used for due-date placement
    """

    class PlanningStatus(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        LOCKED = 'locked', 'Locked'
        ASSIGNED = 'assigned', 'Assigned'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    planning_status = models.CharField(
        max_length=16,
        choices=PlanningStatus.choices,
        default=PlanningStatus.DRAFT
    )
    deadline = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.name} ({self.planning_status})"


class ProjectMember(models.Model):
    ROLE_CHOICES = [('owner', 'Owner'), ('member', 'Member')]

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='members')
    user_id = models.CharField(max_length=64)
    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default='member')

    class Meta:
        unique_together = [('project', 'user_id')]
        ordering = ['user_id']

    def __str__(self):
        return f"{self.user_id} in {self.project_id} ({self.role})"


class Skill(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=120, unique=True)

    def __str__(self):
        return self.name


class UserSkill(models.Model):
    """Global skill level of a user, the baseline for every project."""

    user_id = models.CharField(max_length=64)
    skill = models.ForeignKey(Skill, on_delete=models.CASCADE)
    level = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(0), MaxValueValidator(5)]
    )

    class Meta:
        unique_together = [('user_id', 'skill')]


class ProjectMemberSkill(models.Model):
    """Project-scoped skill level that overrides the global one."""

    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='skill_overrides')
    user_id = models.CharField(max_length=64)
    skill = models.ForeignKey(Skill, on_delete=models.CASCADE)
    level = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(0), MaxValueValidator(5)]
    )

    class Meta:
        unique_together = [('project', 'user_id', 'skill')]


class Task(models.Model):
    """
    A unit of delegated work.

    Attributes:
        difficulty_points: Effort on the 1, 2, 3, 5, 8 scale
        assignee_user_id: Member the task is delegated to (optional)
    """

    STATUS_CHOICES = [(status.value, status.value.replace('_', ' ').title()) for status in TaskStatus]
    DIFFICULTY_CHOICES = [(points, str(points)) for points in DIFFICULTY_POINTS]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    project = models.ForeignKey(Project, on_delete=models.CASCADE, related_name='tasks')
    title = models.CharField(max_length=120)
    description = models.TextField(blank=True, default='')
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=TaskStatus.TODO.value)
    difficulty_points = models.PositiveSmallIntegerField(choices=DIFFICULTY_CHOICES, default=3)
    due_at = models.DateTimeField(null=True, blank=True)
    assignee_user_id = models.CharField(max_length=64, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['created_at']

    def __str__(self):
        return f"{self.title} ({self.status}, {self.difficulty_points} pts)"


class TaskDependency(models.Model):
    """``task`` cannot start until ``depends_on_task`` is complete."""

    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='dependencies')
    depends_on_task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='dependents')

    class Meta:
        unique_together = [('task', 'depends_on_task')]
        ordering = ['id']


class TaskRequiredSkill(models.Model):
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='required_skills')
    skill = models.ForeignKey(Skill, on_delete=models.CASCADE)
    weight = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(5)]
    )

    class Meta:
        unique_together = [('task', 'skill')]
