"""
API Views for the planning engine.

Two groups of endpoints:
- Stateless engine endpoints that run one component over the submitted
  payload (validate, order, resolve skills, preview assignments/replans).
- Project endpoints that run a planning write section or a read model
  against the persisted store through ``services``.

Rejected operations come back as ``{"success": false, "error_code", ...}``
with a 4xx status; nothing is persisted when that happens.
"""

from rest_framework import status
from rest_framework.decorators import api_view, throttle_classes
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle
from drf_spectacular.utils import extend_schema
from drf_spectacular.types import OpenApiTypes

from . import services
from .dependencies import ValidationReason, validate_dependency_graph
from .errors import ErrorCode, PlanningError
from .matching import assign_tasks
from .phases import compute_phase_map, order_tasks_by_dependency
from .replan import apply_replan_policy
from .serializers import (
    AssignmentPreviewSerializer,
    DependencyValidationSerializer,
    EffectiveSkillsSerializer,
    ReplanPreviewSerializer,
    ReplanRequestSerializer,
    TimelineRequestSerializer
)
from .skills import resolve_effective_levels


# ============================================
# RATE LIMITING CLASSES
# ============================================

class PreviewRateThrottle(AnonRateThrottle):
    """Rate limit for stateless engine endpoints."""
    scope = 'planning_preview'


class PlanningWriteRateThrottle(AnonRateThrottle):
    """Rate limit for endpoints that write a project's plan."""
    scope = 'planning_write'


# ============================================
# RESPONSE HELPERS
# ============================================

def _invalid_input(serializer) -> Response:
    return Response(
        {
            'success': False,
            'error_code': ErrorCode.VALIDATION_ERROR.value,
            'errors': serializer.errors,
            'message': 'Invalid input data. Please check the request format.'
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def _error_response(error: PlanningError) -> Response:
    return Response(error.to_dict(), status=error.status)


def _run_service(operation, *args) -> Response:
    try:
        result = operation(*args)
    except PlanningError as error:
        return _error_response(error)
    return Response({'success': True, **result})


# ============================================
# STATELESS ENGINE ENDPOINTS
# ============================================

@extend_schema(
    summary="Validate a dependency graph",
    description="""
    Check task ids and depends-on edges for unknown nodes, self
    dependencies, duplicate edges and cycles. A failure reports the
    offending edge verbatim.
    """,
    request=DependencyValidationSerializer,
    responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT},
    tags=['Engine']
)
@api_view(['POST'])
@throttle_classes([PreviewRateThrottle])
def validate_dependencies(request: Request) -> Response:
    """
    POST /api/dependencies/validate/

    Request Body:
    {
        "task_ids": ["T1", "T2"],
        "edges": [{"task_id": "T2", "depends_on_task_id": "T1"}]
    }
    """
    serializer = DependencyValidationSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    task_ids, edges = serializer.to_engine_input()
    result = validate_dependency_graph(task_ids, edges)

    if not result.ok:
        return Response(
            {
                'success': False,
                'error_code': ErrorCode.DEPENDENCY_GRAPH_INVALID.value,
                'message': 'Dependency graph failed validation.',
                'details': result.to_dict()
            },
            status=status.HTTP_400_BAD_REQUEST
        )

    return Response({'success': True, **result.to_dict()})


@extend_schema(
    summary="Order tasks and place them in phases",
    description="Dependency-respecting order with beginning/middle/end phases. Validate the graph first.",
    request=TimelineRequestSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Engine']
)
@api_view(['POST'])
@throttle_classes([PreviewRateThrottle])
def order_timeline(request: Request) -> Response:
    """
    POST /api/timeline/order/
    """
    serializer = TimelineRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    tasks, edges = serializer.to_engine_input()
    placements = compute_phase_map(tasks, edges)

    return Response({
        'success': True,
        'ordered_task_ids': order_tasks_by_dependency(tasks, edges),
        'placements': {task_id: placement.to_dict() for task_id, placement in placements.items()}
    })


@extend_schema(
    summary="Resolve effective skill levels",
    description="Merge global levels with project overrides for one member.",
    request=EffectiveSkillsSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Engine']
)
@api_view(['POST'])
@throttle_classes([PreviewRateThrottle])
def effective_skills(request: Request) -> Response:
    """
    POST /api/skills/effective/
    """
    serializer = EffectiveSkillsSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    member_id, project_id, skill_ids, global_levels, overrides = serializer.to_engine_input()
    levels = resolve_effective_levels(member_id, project_id, skill_ids, global_levels, overrides)

    return Response({
        'success': True,
        'member_id': member_id,
        'project_id': project_id,
        'levels': levels
    })


@extend_schema(
    summary="Preview task assignments",
    description="""
    Run the matcher over submitted candidate tasks and members without
    persisting anything. Tasks that cannot be matched are listed in
    unassigned_task_ids.
    """,
    request=AssignmentPreviewSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Engine']
)
@api_view(['POST'])
@throttle_classes([PreviewRateThrottle])
def preview_assignments(request: Request) -> Response:
    """
    POST /api/assignments/preview/
    """
    serializer = AssignmentPreviewSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    result = assign_tasks(*serializer.to_engine_input())
    return Response({'success': True, **result.to_dict()})


@extend_schema(
    summary="Preview a replan",
    description="Classify submitted tasks as updates or inserts and list deletions.",
    request=ReplanPreviewSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Engine']
)
@api_view(['POST'])
@throttle_classes([PreviewRateThrottle])
def preview_replan(request: Request) -> Response:
    """
    POST /api/replan/preview/
    """
    serializer = ReplanPreviewSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    result = apply_replan_policy(*serializer.to_engine_input())
    return Response({'success': True, **result.to_dict()})


# ============================================
# PROJECT ENDPOINTS
# ============================================

@extend_schema(
    summary="Lock a draft plan",
    description="Validate the project's dependency graph and move it from draft to locked.",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Planning']
)
@api_view(['POST'])
@throttle_classes([PlanningWriteRateThrottle])
def lock_plan(request: Request, project_id) -> Response:
    """
    POST /api/projects/<project_id>/planning/lock/
    """
    return _run_service(services.lock_plan, project_id)


@extend_schema(
    summary="Run assignments",
    description="Assign all unassigned todo tasks of a locked plan and mark the plan assigned.",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Planning']
)
@api_view(['POST'])
@throttle_classes([PlanningWriteRateThrottle])
def run_assignments(request: Request, project_id) -> Response:
    """
    POST /api/projects/<project_id>/assignments/run/
    """
    return _run_service(services.run_assignments, project_id)


@extend_schema(
    summary="Assign unassigned tasks",
    description="Match todo tasks that have no assignee, in any planning state.",
    request=None,
    responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT},
    tags=['Planning']
)
@api_view(['POST'])
@throttle_classes([PlanningWriteRateThrottle])
def assign_unassigned(request: Request, project_id) -> Response:
    """
    POST /api/projects/<project_id>/assignments/assign-unassigned/
    """
    return _run_service(services.assign_unassigned, project_id)


@extend_schema(
    summary="Replan a project",
    description="""
    Reconcile a full submitted task set against the persisted plan.
    In-progress tasks keep their assignee. Omitted tasks are deleted.
    Submitted todo tasks left without an assignee are matched afterwards.
    """,
    request=ReplanRequestSerializer,
    responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 409: OpenApiTypes.OBJECT},
    tags=['Planning']
)
@api_view(['POST'])
@throttle_classes([PlanningWriteRateThrottle])
def replan_project(request: Request, project_id) -> Response:
    """
    POST /api/projects/<project_id>/replan/

    Request Body:
    {
        "tasks": [{"id": "...", "title": "...", "status": "todo", ...},
                  {"client_ref": "new-1", "title": "...", ...}],
        "task_skills": [{"task_ref": "new-1", "skill_id": "...", "weight": 3}],
        "task_dependencies": [{"task_ref": "new-1", "depends_on_task_ref": "..."}]
    }
    """
    serializer = ReplanRequestSerializer(data=request.data)
    if not serializer.is_valid():
        return _invalid_input(serializer)

    return _run_service(services.replan_project, project_id, serializer.validated_data)


@extend_schema(
    summary="Project timeline",
    description="Tasks in dependency order with phase and due-date placement.",
    responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    tags=['Workflow']
)
@api_view(['GET'])
def project_timeline(request: Request, project_id) -> Response:
    """
    GET /api/projects/<project_id>/workflow/timeline/
    """
    return _run_service(services.get_timeline, project_id)


@extend_schema(
    summary="Task timeline placement",
    description="Phase, 1-based sequence index and total task count for one task.",
    responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    tags=['Workflow']
)
@api_view(['GET'])
def task_timeline(request: Request, project_id, task_id) -> Response:
    """
    GET /api/projects/<project_id>/workflow/timeline/<task_id>/
    """
    return _run_service(services.get_task_placement, project_id, task_id)


@extend_schema(
    summary="Project board",
    description="One column per member with phase-tagged tasks, plus unassigned work.",
    responses={200: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    tags=['Workflow']
)
@api_view(['GET'])
def project_board(request: Request, project_id) -> Response:
    """
    GET /api/projects/<project_id>/workflow/board/
    """
    return _run_service(services.get_board, project_id)


@extend_schema(
    summary="API information",
    description="Get API information and available endpoints.",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Info']
)
@api_view(['GET'])
def api_info(request: Request) -> Response:
    """
    GET /api/
    """
    return Response({
        'name': 'Task Delegation Planning API',
        'version': '1.0.0',
        'documentation': '/api/docs/',
        'endpoints': {
            'POST /api/dependencies/validate/': 'Validate a dependency graph',
            'POST /api/timeline/order/': 'Order tasks and assign phases',
            'POST /api/skills/effective/': 'Resolve effective skill levels',
            'POST /api/assignments/preview/': 'Preview task assignments',
            'POST /api/replan/preview/': 'Preview a replan',
            'POST /api/projects/<id>/planning/lock/': 'Lock a draft plan',
            'POST /api/projects/<id>/assignments/run/': 'Assign a locked plan',
            'POST /api/projects/<id>/assignments/assign-unassigned/': 'Fill unassigned todo work',
            'POST /api/projects/<id>/replan/': 'Replan a project',
            'GET /api/projects/<id>/workflow/timeline/': 'Project timeline',
            'GET /api/projects/<id>/workflow/timeline/<task_id>/': 'Task placement',
            'GET /api/projects/<id>/workflow/board/': 'Project board',
            'GET /api/docs/': 'Interactive API documentation',
            'GET /api/schema/': 'OpenAPI schema'
        },
        'dependency_failures': [reason.value for reason in ValidationReason],
        'error_codes': {
            code.value: code.name for code in ErrorCode
        }
    })
