"""
Assignment Matcher.

Assigns each candidate task to exactly one project member, trading skill fit
against workload balance.

Scoring:
--------
fit_score(member, task) = sum(weight * effective_level) over the task's
                          required skills (missing skills count as 0)

Ranking per task (strictly lexicographic):
    1. higher fit score
    2. lower current load (difficulty points, updated after every
       assignment made in this same run)
    3. smaller member id

Members with zero fit stay eligible; they simply rank behind anyone with a
positive fit, which turns the choice into pure load balancing.

Task processing order:
    due date ascending (no due date last), then difficulty points
    descending, then task id, so that large and time-pressured work is
    placed before small tasks skew the member loads.

The matcher does not filter by status. Callers pass only ``todo`` tasks that
have no protected assignee.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .phases import Timestamp, to_timestamp
from .replan import TaskStatus

logger = logging.getLogger(__name__)

DIFFICULTY_POINTS = (1, 2, 3, 5, 8)


@dataclass(frozen=True)
class CandidateTask:
    """A task eligible for automatic assignment."""
    id: str
    difficulty_points: int
    due_at: Timestamp = None


@dataclass
class MemberProfile:
    """A project member with effective skill levels and existing load."""
    user_id: str
    skills: Dict[str, int] = field(default_factory=dict)
    current_load: int = 0

    def to_dict(self) -> Dict:
        return {
            'user_id': self.user_id,
            'skills': dict(self.skills),
            'current_load': self.current_load
        }


@dataclass(frozen=True)
class SkillRequirement:
    """How much a skill matters for a task (weight 1-5)."""
    task_id: str
    skill_id: str
    weight: int


@dataclass(frozen=True)
class Assignment:
    task_id: str
    assignee_user_id: str
    reason: str = ''

    def to_dict(self) -> Dict:
        return {
            'task_id': self.task_id,
            'assignee_user_id': self.assignee_user_id,
            'reason': self.reason
        }


@dataclass(frozen=True)
class AssignmentResult:
    """
    Output of a matcher run.

    Tasks listed in ``unassigned_task_ids`` received no assignment and must be
    left unassigned by the caller.
    """
    assignments: Tuple[Assignment, ...] = ()
    unassigned_task_ids: Tuple[str, ...] = ()
    loads: Tuple[Tuple[str, int], ...] = ()

    @property
    def assigned_count(self) -> int:
        return len(self.assignments)

    def to_dict(self) -> Dict:
        return {
            'assignments': [assignment.to_dict() for assignment in self.assignments],
            'assigned_count': self.assigned_count,
            'unassigned_task_ids': list(self.unassigned_task_ids),
            'loads': dict(self.loads)
        }


def fit_score(member: MemberProfile, requirements: Iterable[SkillRequirement]) -> int:
    """Weighted sum of the member's effective levels over the requirements."""
    return sum(
        requirement.weight * member.skills.get(requirement.skill_id, 0)
        for requirement in requirements
    )


def explain_assignment(
    member: MemberProfile,
    task: CandidateTask,
    requirements: List[SkillRequirement]
) -> str:
    """
    Human-readable reason for picking ``member``.

    Skill coverage is cited when the member has any level in a required
    skill; otherwise the pick came down to workload balance.
    """
    if not requirements:
        return f"{member.user_id} was assigned based on workload balance."

    matched = [
        f"{requirement.skill_id} ({member.skills[requirement.skill_id]}/5)"
        for requirement in requirements
        if member.skills.get(requirement.skill_id, 0) > 0
    ]
    if matched:
        return f"{member.user_id} was assigned due to strongest skill coverage in {', '.join(matched)}."

    return (
        f"{member.user_id} was assigned for workload balance on a "
        f"difficulty {task.difficulty_points} task."
    )


def _task_order_key(task: CandidateTask) -> Tuple[bool, float, int, str]:
    due = to_timestamp(task.due_at)
    return (
        due is None,
        due if due is not None else math.inf,
        -task.difficulty_points,
        task.id
    )


def workload_by_member(tasks: Iterable[Dict]) -> Dict[str, int]:
    """
    Sum difficulty points of assigned, unfinished tasks per assignee.

    Each task is a mapping with ``assignee_user_id``, ``status`` and
    ``difficulty_points``.
    """
    loads: Dict[str, int] = defaultdict(int)
    for task in tasks:
        assignee = task.get('assignee_user_id')
        if not assignee or task.get('status') == TaskStatus.DONE:
            continue
        loads[assignee] += int(task.get('difficulty_points') or 0)
    return dict(loads)


def assign_tasks(
    candidate_tasks: Iterable[CandidateTask],
    members: Iterable[MemberProfile],
    requirements: Iterable[SkillRequirement]
) -> AssignmentResult:
    """
    Match candidate tasks to members deterministically.

    Args:
        candidate_tasks: Unassigned ``todo`` tasks.
        members: Eligible members with effective skills and current load.
        requirements: Skill requirements for any of the candidate tasks.

    Returns:
        AssignmentResult; inputs are never mutated.
    """
    tasks = sorted(candidate_tasks, key=_task_order_key)
    profiles: List[MemberProfile] = list(members)

    if not tasks:
        return AssignmentResult(loads=tuple(sorted((m.user_id, m.current_load) for m in profiles)))

    if not profiles:
        logger.debug("No eligible members; %d task(s) left unassigned", len(tasks))
        return AssignmentResult(unassigned_task_ids=tuple(task.id for task in tasks))

    requirements_by_task: Dict[str, List[SkillRequirement]] = defaultdict(list)
    for requirement in requirements:
        requirements_by_task[requirement.task_id].append(requirement)

    loads: Dict[str, int] = {member.user_id: member.current_load for member in profiles}
    profile_by_id: Dict[str, MemberProfile] = {member.user_id: member for member in profiles}
    assignments: List[Assignment] = []

    for task in tasks:
        task_requirements = requirements_by_task.get(task.id, [])
        best: Optional[Tuple[int, int, str]] = None

        for member in profiles:
            key = (-fit_score(member, task_requirements), loads[member.user_id], member.user_id)
            if best is None or key < best:
                best = key

        chosen = best[2]
        assignments.append(Assignment(
            task_id=task.id,
            assignee_user_id=chosen,
            reason=explain_assignment(profile_by_id[chosen], task, task_requirements)
        ))
        loads[chosen] += task.difficulty_points

    logger.debug("Matched %d task(s) across %d member(s)", len(assignments), len(profiles))

    return AssignmentResult(
        assignments=tuple(assignments),
        loads=tuple(sorted(loads.items()))
    )
