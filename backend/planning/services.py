"""
Planning service.

Orchestrates the engine modules against the persisted store. Every write
operation is one "planning write" section: it runs inside a transaction that
first locks the project row, so two concurrent replans of the same project
cannot interleave and persist a graph that was never validated as a whole.

Sequence for a replan:
    validate request graph -> reconcile -> persist -> re-link rows
    -> re-validate persisted graph -> match unassigned todo work -> persist

Any ``PlanningError`` raised inside the transaction rolls back everything
written so far.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .dependencies import DependencyEdge, ValidationResult, validate_dependency_graph
from .errors import ErrorCode, PlanningError
from .matching import (
    AssignmentResult,
    CandidateTask,
    SkillRequirement,
    assign_tasks,
    workload_by_member
)
from .models import (
    Project,
    ProjectMember,
    ProjectMemberSkill,
    Skill,
    Task,
    TaskDependency,
    TaskRequiredSkill,
    UserSkill
)
from .phases import TimelineTask, compute_phase_map, get_due_date_placement
from .replan import (
    ExistingTask,
    IncomingTask,
    TaskStatus,
    UpsertAction,
    apply_replan_policy
)
from .skills import MemberSkillLevel, ProjectSkillOverride, resolve_member_profiles

logger = logging.getLogger(__name__)

TASK_FIELDS = (
    'id', 'title', 'description', 'status', 'difficulty_points',
    'due_at', 'assignee_user_id', 'created_at'
)


# ==================== Loading ====================

def _get_project(project_id, for_update: bool = False) -> Project:
    queryset = Project.objects.select_for_update() if for_update else Project.objects.all()
    try:
        return queryset.get(pk=project_id)
    except Project.DoesNotExist:
        raise PlanningError(404, ErrorCode.NOT_FOUND, f"Project {project_id} not found.")


def _task_records(project: Project) -> List[Dict]:
    rows = list(
        Task.objects.filter(project=project)
        .order_by('created_at', 'id')
        .values(*TASK_FIELDS)
    )
    for row in rows:
        row['id'] = str(row['id'])
    return rows


def _dependency_edges(project: Project) -> List[DependencyEdge]:
    pairs = (
        TaskDependency.objects.filter(task__project=project)
        .order_by('id')
        .values_list('task_id', 'depends_on_task_id')
    )
    return [DependencyEdge(str(task_id), str(depends_on)) for task_id, depends_on in pairs]


def _requirements(task_ids: Iterable[str]) -> List[SkillRequirement]:
    rows = (
        TaskRequiredSkill.objects.filter(task_id__in=list(task_ids))
        .order_by('id')
        .values_list('task_id', 'skill_id', 'weight')
    )
    return [SkillRequirement(str(task_id), str(skill_id), weight) for task_id, skill_id, weight in rows]


def _member_profiles(project: Project, task_rows: List[Dict], skill_ids: Iterable[str]):
    member_ids = list(
        ProjectMember.objects.filter(project=project).values_list('user_id', flat=True)
    )
    global_levels = [
        MemberSkillLevel(user_id, str(skill_id), level)
        for user_id, skill_id, level in UserSkill.objects.filter(
            user_id__in=member_ids
        ).values_list('user_id', 'skill_id', 'level')
    ]
    overrides = [
        ProjectSkillOverride(str(project.pk), user_id, str(skill_id), level)
        for user_id, skill_id, level in ProjectMemberSkill.objects.filter(
            project=project, user_id__in=member_ids
        ).values_list('user_id', 'skill_id', 'level')
    ]
    return resolve_member_profiles(
        str(project.pk),
        member_ids,
        skill_ids,
        global_levels,
        overrides,
        load_by_member=workload_by_member(task_rows)
    )


def _raise_if_invalid(result: ValidationResult, message: str) -> None:
    if result.ok:
        return
    logger.warning("%s reason=%s edge=%s", message, result.reason.value, result.edge)
    raise PlanningError(400, ErrorCode.DEPENDENCY_GRAPH_INVALID, message, result.to_dict())


def _require_status(project: Project, expected: str, message: str) -> None:
    if project.planning_status != expected:
        raise PlanningError(
            409,
            ErrorCode.INVALID_STATE,
            message,
            {'planning_status': project.planning_status}
        )


def _set_status(project: Project, status: str) -> None:
    project.planning_status = status
    project.save(update_fields=['planning_status'])


# ==================== Matching ====================

def _unassigned_todo_ids(task_rows: List[Dict], restrict_to: Optional[Set[str]] = None) -> Set[str]:
    return {
        row['id'] for row in task_rows
        if row['status'] == TaskStatus.TODO
        and not row['assignee_user_id']
        and (restrict_to is None or row['id'] in restrict_to)
    }


def _match_and_persist(project: Project, task_rows: List[Dict], candidate_ids: Set[str]) -> AssignmentResult:
    """Run the matcher over ``candidate_ids`` and write the assignments."""
    candidates = [
        CandidateTask(
            id=row['id'],
            difficulty_points=row['difficulty_points'],
            due_at=row['due_at']
        )
        for row in task_rows if row['id'] in candidate_ids
    ]
    requirements = _requirements(candidate_ids)
    profiles = _member_profiles(
        project, task_rows, (requirement.skill_id for requirement in requirements)
    )
    result = assign_tasks(candidates, profiles, requirements)

    for assignment in result.assignments:
        # Guard against rows claimed since they were read
        Task.objects.filter(
            pk=assignment.task_id,
            project=project,
            status=TaskStatus.TODO.value,
            assignee_user_id__isnull=True
        ).update(assignee_user_id=assignment.assignee_user_id, updated_at=timezone.now())

    return result


def _require_members(project: Project) -> None:
    if not ProjectMember.objects.filter(project=project).exists():
        raise PlanningError(400, ErrorCode.NO_MEMBERS, "No project members available for assignment.")


# ==================== Planning lifecycle ====================

def lock_plan(project_id) -> Dict:
    """Freeze a draft plan after validating its dependency graph."""
    with transaction.atomic():
        project = _get_project(project_id, for_update=True)
        _require_status(
            project, Project.PlanningStatus.DRAFT,
            "Project planning status must be draft to lock the plan."
        )

        task_rows = _task_records(project)
        if not task_rows:
            raise PlanningError(
                400, ErrorCode.VALIDATION_ERROR,
                "Plan must contain at least one task before lock."
            )

        _raise_if_invalid(
            validate_dependency_graph([row['id'] for row in task_rows], _dependency_edges(project)),
            "Dependency graph failed validation."
        )
        _set_status(project, Project.PlanningStatus.LOCKED)

    logger.info("Locked plan for project %s with %d task(s)", project.pk, len(task_rows))
    return {'project_id': str(project.pk), 'planning_status': project.planning_status}


def run_assignments(project_id) -> Dict:
    """Assign every unassigned todo task of a locked plan and mark it assigned."""
    with transaction.atomic():
        project = _get_project(project_id, for_update=True)
        _require_status(
            project, Project.PlanningStatus.LOCKED,
            "Project planning status must be locked to run assignments."
        )
        _require_members(project)

        task_rows = _task_records(project)
        result = _match_and_persist(project, task_rows, _unassigned_todo_ids(task_rows))
        _set_status(project, Project.PlanningStatus.ASSIGNED)

    logger.info(
        "Assignment run for project %s: %d assigned, %d left unassigned",
        project.pk, result.assigned_count, len(result.unassigned_task_ids)
    )
    return {
        'project_id': str(project.pk),
        'planning_status': project.planning_status,
        **result.to_dict()
    }


def assign_unassigned(project_id) -> Dict:
    """Fill unassigned todo work without changing the planning status."""
    with transaction.atomic():
        project = _get_project(project_id, for_update=True)
        task_rows = _task_records(project)
        candidate_ids = _unassigned_todo_ids(task_rows)

        if not candidate_ids:
            return {
                'project_id': str(project.pk),
                **AssignmentResult().to_dict()
            }

        _require_members(project)
        result = _match_and_persist(project, task_rows, candidate_ids)

    logger.info("Assigned %d unassigned task(s) in project %s", result.assigned_count, project.pk)
    return {'project_id': str(project.pk), **result.to_dict()}


# ==================== Replan ====================

def _incoming_task(task: Dict) -> IncomingTask:
    return IncomingTask(
        id=task.get('id') or None,
        client_ref=task.get('client_ref') or None,
        title=task['title'],
        description=task.get('description', ''),
        status=task['status'],
        difficulty_points=task['difficulty_points'],
        due_at=task.get('due_at'),
        assignee_user_id=task.get('assignee_user_id')
    )


def _existing_task(row: Dict) -> ExistingTask:
    return ExistingTask(
        id=row['id'],
        title=row['title'],
        description=row['description'],
        status=row['status'],
        difficulty_points=row['difficulty_points'],
        due_at=row['due_at'],
        assignee_user_id=row['assignee_user_id']
    )


def replan_project(project_id, payload: Dict) -> Dict:
    """
    Reconcile a full submitted task set against the persisted plan.

    Args:
        project_id: Project primary key.
        payload: Validated ``ReplanRequestSerializer`` data with ``tasks``,
                 ``task_skills`` and ``task_dependencies``. Skills and
                 dependencies reference tasks by id or ``client_ref``.
    """
    tasks = payload['tasks']
    task_skills = payload.get('task_skills', [])
    task_dependencies = payload.get('task_dependencies', [])

    with transaction.atomic():
        project = _get_project(project_id, for_update=True)
        _require_status(
            project, Project.PlanningStatus.ASSIGNED,
            "Replanning is only available after assignments have been finalized."
        )

        refs = [task.get('id') or task['client_ref'] for task in tasks]
        request_edges = [
            DependencyEdge(dependency['task_ref'], dependency['depends_on_task_ref'])
            for dependency in task_dependencies
        ]
        _raise_if_invalid(
            validate_dependency_graph(refs, request_edges),
            "Dependency validation failed during replan."
        )

        skill_refs = {skill['task_ref'] for skill in task_skills}
        unknown_refs = sorted(skill_refs - set(refs))
        if unknown_refs:
            raise PlanningError(
                400, ErrorCode.VALIDATION_ERROR,
                "Task skills must reference tasks present in the request payload.",
                {'task_refs': unknown_refs}
            )

        requested_skill_ids = {str(skill['skill_id']) for skill in task_skills}
        known_skill_ids = {
            str(pk) for pk in Skill.objects.filter(pk__in=requested_skill_ids).values_list('pk', flat=True)
        }
        if requested_skill_ids - known_skill_ids:
            raise PlanningError(
                400, ErrorCode.VALIDATION_ERROR,
                "Unknown skill ids in task skills.",
                {'skill_ids': sorted(requested_skill_ids - known_skill_ids)}
            )

        existing_rows = _task_records(project)
        existing_ids = {row['id'] for row in existing_rows}
        foreign_ids = [task['id'] for task in tasks if task.get('id') and task['id'] not in existing_ids]
        if foreign_ids:
            raise PlanningError(
                400, ErrorCode.VALIDATION_ERROR,
                "Replan tasks must belong to the project.",
                {'task_ids': foreign_ids}
            )

        policy = apply_replan_policy(
            [_existing_task(row) for row in existing_rows],
            [_incoming_task(task) for task in tasks]
        )

        task_id_by_ref: Dict[str, str] = {}
        updated_count = 0
        inserted_count = 0
        now = timezone.now()

        for upsert in policy.upserts:
            fields = {
                'title': upsert.title,
                'description': upsert.description,
                'status': TaskStatus(upsert.status).value,
                'difficulty_points': upsert.difficulty_points,
                'due_at': upsert.due_at,
                'assignee_user_id': upsert.assignee_user_id
            }
            if upsert.action is UpsertAction.UPDATE:
                Task.objects.filter(pk=upsert.id, project=project).update(updated_at=now, **fields)
                task_id_by_ref[upsert.reference] = upsert.id
                updated_count += 1
            else:
                created = Task.objects.create(project=project, **fields)
                task_id_by_ref[upsert.reference] = str(created.pk)
                inserted_count += 1

        if policy.deleted_task_ids:
            # Requirement and dependency rows go with the task (CASCADE)
            Task.objects.filter(pk__in=policy.deleted_task_ids, project=project).delete()

        referenced_ids = list(task_id_by_ref.values())
        TaskRequiredSkill.objects.filter(task_id__in=referenced_ids).delete()
        TaskDependency.objects.filter(
            Q(task_id__in=referenced_ids) | Q(depends_on_task_id__in=referenced_ids)
        ).delete()

        TaskRequiredSkill.objects.bulk_create([
            TaskRequiredSkill(
                task_id=task_id_by_ref[skill['task_ref']],
                skill_id=skill['skill_id'],
                weight=skill['weight']
            )
            for skill in task_skills
        ])
        TaskDependency.objects.bulk_create([
            TaskDependency(
                task_id=task_id_by_ref[edge.task_id],
                depends_on_task_id=task_id_by_ref[edge.depends_on_task_id]
            )
            for edge in request_edges
        ])

        latest_rows = _task_records(project)
        _raise_if_invalid(
            validate_dependency_graph([row['id'] for row in latest_rows], _dependency_edges(project)),
            "Dependency graph failed validation after replan."
        )

        submitted_todo_ids = {
            task_id_by_ref[ref]
            for ref, task in zip(refs, tasks)
            if task['status'] == TaskStatus.TODO
        }
        candidate_ids = _unassigned_todo_ids(latest_rows, restrict_to=submitted_todo_ids)
        if candidate_ids and ProjectMember.objects.filter(project=project).exists():
            assignment = _match_and_persist(project, latest_rows, candidate_ids)
        else:
            assignment = AssignmentResult(unassigned_task_ids=tuple(sorted(candidate_ids)))

    logger.info(
        "Replanned project %s: %d updated, %d inserted, %d deleted, %d assigned",
        project.pk, updated_count, inserted_count,
        len(policy.deleted_task_ids), assignment.assigned_count
    )
    return {
        'project_id': str(project.pk),
        'updated_tasks': updated_count,
        'inserted_tasks': inserted_count,
        'deleted_task_ids': list(policy.deleted_task_ids),
        'protected_task_ids': list(policy.protected_task_ids),
        'task_ids_by_ref': task_id_by_ref,
        'updated_dependencies': len(request_edges),
        'updated_task_skills': len(task_skills),
        'assignments': assignment.to_dict()
    }


# ==================== Read models ====================

def _serialize_timestamp(value):
    return value.isoformat() if value else None


def _task_summary(row: Dict) -> Dict:
    return {
        'id': row['id'],
        'title': row['title'],
        'status': row['status'],
        'difficulty_points': row['difficulty_points'],
        'due_at': _serialize_timestamp(row['due_at']),
        'assignee_user_id': row['assignee_user_id']
    }


def _placements(project: Project, task_rows: List[Dict]):
    edges = _dependency_edges(project)
    timeline_tasks = [
        TimelineTask(id=row['id'], due_at=row['due_at'], created_at=row['created_at'])
        for row in task_rows
    ]
    return compute_phase_map(timeline_tasks, edges), edges


def get_timeline(project_id) -> Dict:
    """All tasks in dependency order with phase and due-date placement."""
    project = _get_project(project_id)
    task_rows = _task_records(project)
    placements, edges = _placements(project, task_rows)

    ordered_rows = sorted(task_rows, key=lambda row: placements[row['id']].sequence_index)
    return {
        'project_id': str(project.pk),
        'total_tasks': len(ordered_rows),
        'tasks': [
            {
                **_task_summary(row),
                **placements[row['id']].to_dict(),
                'due_date_placement': get_due_date_placement(
                    row['due_at'], project.created_at, project.deadline
                ).value
            }
            for row in ordered_rows
        ],
        'dependencies': [edge.to_dict() for edge in edges]
    }


def get_task_placement(project_id, task_id) -> Dict:
    """Placement of one task within its project's timeline."""
    project = _get_project(project_id)
    task_rows = _task_records(project)
    placements, _ = _placements(project, task_rows)

    placement = placements.get(str(task_id))
    if placement is None:
        raise PlanningError(404, ErrorCode.NOT_FOUND, f"Task {task_id} not found in project.")

    return {'project_id': str(project.pk), 'task_id': str(task_id), **placement.to_dict()}


def get_board(project_id) -> Dict:
    """One column per member plus an unassigned bucket, phase-tagged."""
    project = _get_project(project_id)
    task_rows = _task_records(project)
    placements, _ = _placements(project, task_rows)

    def board_order(row):
        due = row['due_at']
        return (due is None, due.timestamp() if due else 0.0, row['id'])

    def board_task(row):
        return {**_task_summary(row), 'phase': placements[row['id']].phase.value}

    sorted_rows = sorted(task_rows, key=board_order)
    members = ProjectMember.objects.filter(project=project).order_by('user_id')

    return {
        'project_id': str(project.pk),
        'columns': [
            {
                'user_id': member.user_id,
                'role': member.role,
                'tasks': [board_task(row) for row in sorted_rows if row['assignee_user_id'] == member.user_id]
            }
            for member in members
        ],
        'unassigned': [board_task(row) for row in sorted_rows if not row['assignee_user_id']]
    }
