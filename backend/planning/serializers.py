"""
Serializers for the planning API.

These validate incoming payloads and convert them into the plain records
the engine modules consume. Difficulty points, statuses and requirement
weights are checked here so the engine only ever sees well-typed input.
"""

from rest_framework import serializers

from .dependencies import DependencyEdge
from .matching import DIFFICULTY_POINTS, CandidateTask, MemberProfile, SkillRequirement
from .phases import TimelineTask
from .replan import ExistingTask, IncomingTask, TaskStatus
from .skills import MemberSkillLevel, ProjectSkillOverride

STATUS_CHOICES = [status.value for status in TaskStatus]


class DependencyEdgeSerializer(serializers.Serializer):
    task_id = serializers.CharField(max_length=64)
    depends_on_task_id = serializers.CharField(max_length=64)


class DependencyValidationSerializer(serializers.Serializer):
    """Task ids (in traversal order) and the edges to validate."""

    task_ids = serializers.ListField(child=serializers.CharField(max_length=64), allow_empty=True)
    edges = DependencyEdgeSerializer(many=True, required=False, default=list)

    def to_engine_input(self):
        data = self.validated_data
        edges = [DependencyEdge(edge['task_id'], edge['depends_on_task_id']) for edge in data['edges']]
        return data['task_ids'], edges


class TimelineTaskSerializer(serializers.Serializer):
    id = serializers.CharField(max_length=64)
    due_at = serializers.DateTimeField(required=False, allow_null=True, default=None)
    created_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class TimelineRequestSerializer(serializers.Serializer):
    tasks = TimelineTaskSerializer(many=True)
    dependencies = DependencyEdgeSerializer(many=True, required=False, default=list)

    def to_engine_input(self):
        data = self.validated_data
        tasks = [TimelineTask(**task) for task in data['tasks']]
        edges = [
            DependencyEdge(edge['task_id'], edge['depends_on_task_id'])
            for edge in data['dependencies']
        ]
        return tasks, edges


class MemberSkillLevelSerializer(serializers.Serializer):
    member_id = serializers.CharField(max_length=64)
    skill_id = serializers.CharField(max_length=64)
    level = serializers.IntegerField(min_value=0, max_value=5)


class ProjectSkillOverrideSerializer(MemberSkillLevelSerializer):
    project_id = serializers.CharField(max_length=64)


class EffectiveSkillsSerializer(serializers.Serializer):
    member_id = serializers.CharField(max_length=64)
    project_id = serializers.CharField(max_length=64)
    skill_ids = serializers.ListField(child=serializers.CharField(max_length=64))
    global_levels = MemberSkillLevelSerializer(many=True, required=False, default=list)
    project_overrides = ProjectSkillOverrideSerializer(many=True, required=False, default=list)

    def to_engine_input(self):
        data = self.validated_data
        return (
            data['member_id'],
            data['project_id'],
            data['skill_ids'],
            [MemberSkillLevel(**row) for row in data['global_levels']],
            [ProjectSkillOverride(**row) for row in data['project_overrides']]
        )


class CandidateTaskSerializer(serializers.Serializer):
    id = serializers.CharField(max_length=64)
    difficulty_points = serializers.ChoiceField(choices=DIFFICULTY_POINTS)
    due_at = serializers.DateTimeField(required=False, allow_null=True, default=None)


class MemberProfileSerializer(serializers.Serializer):
    user_id = serializers.CharField(max_length=64)
    skills = serializers.DictField(
        child=serializers.IntegerField(min_value=0, max_value=5),
        required=False,
        default=dict
    )
    current_load = serializers.IntegerField(min_value=0, required=False, default=0)


class SkillRequirementSerializer(serializers.Serializer):
    task_id = serializers.CharField(max_length=64)
    skill_id = serializers.CharField(max_length=64)
    weight = serializers.IntegerField(min_value=1, max_value=5)


class AssignmentPreviewSerializer(serializers.Serializer):
    """Stateless matcher input; tasks must already be unassigned todo work."""

    tasks = CandidateTaskSerializer(many=True)
    members = MemberProfileSerializer(many=True)
    requirements = SkillRequirementSerializer(many=True, required=False, default=list)

    def to_engine_input(self):
        data = self.validated_data
        return (
            [CandidateTask(**task) for task in data['tasks']],
            [MemberProfile(**member) for member in data['members']],
            [SkillRequirement(**requirement) for requirement in data['requirements']]
        )


class ReplanTaskSerializer(serializers.Serializer):
    """
    A submitted task. Existing tasks carry ``id``; new ones need a
    ``client_ref`` so skills and dependencies can point at them.
    """

    id = serializers.CharField(max_length=64, required=False, allow_null=True, default=None)
    client_ref = serializers.CharField(max_length=60, required=False, allow_null=True, default=None)
    title = serializers.CharField(min_length=3, max_length=120)
    description = serializers.CharField(max_length=1000, required=False, allow_blank=True, default='')
    difficulty_points = serializers.ChoiceField(choices=DIFFICULTY_POINTS)
    status = serializers.ChoiceField(choices=STATUS_CHOICES)
    due_at = serializers.DateTimeField(required=False, allow_null=True, default=None)
    assignee_user_id = serializers.CharField(max_length=64, required=False, allow_null=True, default=None)

    def validate_title(self, value):
        """Ensure title is not just whitespace."""
        if not value.strip():
            raise serializers.ValidationError("Title cannot be empty")
        return value.strip()

    def validate(self, attrs):
        if not attrs.get('id') and not attrs.get('client_ref'):
            raise serializers.ValidationError("Either id or client_ref is required.")
        return attrs


class ExistingTaskSerializer(serializers.Serializer):
    id = serializers.CharField(max_length=64)
    title = serializers.CharField(max_length=120)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    difficulty_points = serializers.ChoiceField(choices=DIFFICULTY_POINTS)
    status = serializers.ChoiceField(choices=STATUS_CHOICES)
    due_at = serializers.DateTimeField(required=False, allow_null=True, default=None)
    assignee_user_id = serializers.CharField(max_length=64, required=False, allow_null=True, default=None)


def _task_ref(task):
    return task.get('id') or task.get('client_ref')


def _reject_duplicate_refs(tasks):
    refs = set()
    for task in tasks:
        ref = _task_ref(task)
        if ref in refs:
            raise serializers.ValidationError({'tasks': f"Duplicate task reference: {ref}"})
        refs.add(ref)


class ReplanPreviewSerializer(serializers.Serializer):
    """Stateless reconciler input: persisted tasks plus the submitted set."""

    existing_tasks = ExistingTaskSerializer(many=True)
    incoming_tasks = ReplanTaskSerializer(many=True)

    def validate(self, attrs):
        _reject_duplicate_refs(attrs['incoming_tasks'])
        return attrs

    def to_engine_input(self):
        data = self.validated_data
        return (
            [ExistingTask(**task) for task in data['existing_tasks']],
            [IncomingTask(**task) for task in data['incoming_tasks']]
        )


class TaskSkillInputSerializer(serializers.Serializer):
    task_ref = serializers.CharField(max_length=64)
    skill_id = serializers.UUIDField()
    weight = serializers.IntegerField(min_value=1, max_value=5)


class TaskDependencyInputSerializer(serializers.Serializer):
    task_ref = serializers.CharField(max_length=64)
    depends_on_task_ref = serializers.CharField(max_length=64)


class ReplanRequestSerializer(serializers.Serializer):
    """Full task set submitted for a project replan."""

    tasks = ReplanTaskSerializer(many=True)
    task_skills = TaskSkillInputSerializer(many=True, required=False, default=list)
    task_dependencies = TaskDependencyInputSerializer(many=True, required=False, default=list)

    def validate(self, attrs):
        _reject_duplicate_refs(attrs['tasks'])

        seen_skills = set()
        for skill in attrs['task_skills']:
            key = (skill['task_ref'], skill['skill_id'])
            if key in seen_skills:
                raise serializers.ValidationError(
                    {'task_skills': f"Duplicate skill {skill['skill_id']} for task {skill['task_ref']}"}
                )
            seen_skills.add(key)

        return attrs
