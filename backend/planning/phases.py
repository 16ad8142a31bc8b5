"""
Topological Phase Placer.

Orders tasks so that no task precedes one of its dependencies and buckets the
resulting sequence into three relative phases for timeline and board views.

Ordering:
---------
Kahn's algorithm over the dependency edges. Whenever several tasks are ready
at the same time the one with the earliest due date goes first, then the
earliest creation time, then the smallest identifier. Missing or unparsable
timestamps sort after every real one.

Phases:
-------
ratio = index / (n - 1)     (a single task is always "beginning")
    ratio < 1/3  -> beginning
    ratio < 2/3  -> middle
    otherwise    -> end

The placer trusts the caller to have validated the graph first. Tasks left
over by a cycle are appended in tie-break order instead of being dropped.
"""

import heapq
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from django.utils.dateparse import parse_date, parse_datetime

from .dependencies import EdgeLike, coerce_edge

logger = logging.getLogger(__name__)

Timestamp = Union[datetime, date, str, None]


class TimelinePhase(Enum):
    """Position-derived bucket within the dependency order."""
    BEGINNING = "beginning"
    MIDDLE = "middle"
    END = "end"


class DueDatePlacement(Enum):
    """Calendar-derived bucket within the project window."""
    EARLY = "early"
    MID = "mid"
    LATE = "late"
    UNSCHEDULED = "unscheduled"


@dataclass(frozen=True)
class TimelineTask:
    """The slice of a task the placer needs."""
    id: str
    due_at: Timestamp = None
    created_at: Timestamp = None


@dataclass(frozen=True)
class TimelinePlacement:
    """Where one task sits in the ordered sequence (1-based index)."""
    phase: TimelinePhase
    sequence_index: int
    total_tasks: int

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'sequence_index': self.sequence_index,
            'total_tasks': self.total_tasks
        }


def to_timestamp(value: Timestamp) -> Optional[float]:
    """
    Convert a datetime, date or ISO-8601 string to epoch seconds.

    Plain dates and naive datetimes are read as UTC so they share a clock
    with aware values. Returns None for missing or unparsable values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()
    try:
        parsed = parse_datetime(str(value))
        if parsed is None:
            parsed_date = parse_date(str(value))
            return to_timestamp(parsed_date) if parsed_date else None
    except ValueError:
        return None
    return to_timestamp(parsed)


def _sort_key(task: TimelineTask) -> Tuple[float, float, str]:
    due = to_timestamp(task.due_at)
    created = to_timestamp(task.created_at)
    return (
        due if due is not None else math.inf,
        created if created is not None else math.inf,
        task.id
    )


def order_tasks_by_dependency(
    tasks: Iterable[TimelineTask],
    edges: Iterable[EdgeLike]
) -> List[str]:
    """
    Produce a deterministic dependency-respecting order of task ids.

    Edges whose endpoints are not among ``tasks`` are ignored.
    """
    task_list = list(tasks)
    task_map: Dict[str, TimelineTask] = {task.id: task for task in task_list}
    incoming: Dict[str, int] = {task_id: 0 for task_id in task_map}
    dependents: Dict[str, List[str]] = {task_id: [] for task_id in task_map}

    for raw_edge in edges:
        edge = coerce_edge(raw_edge)
        if edge.task_id not in task_map or edge.depends_on_task_id not in task_map:
            continue
        incoming[edge.task_id] += 1
        dependents[edge.depends_on_task_id].append(edge.task_id)

    ready = [
        (_sort_key(task), task.id)
        for task in task_map.values()
        if incoming[task.id] == 0
    ]
    heapq.heapify(ready)

    ordered: List[str] = []
    while ready:
        _, task_id = heapq.heappop(ready)
        ordered.append(task_id)

        for dependent_id in dependents[task_id]:
            incoming[dependent_id] -= 1
            if incoming[dependent_id] == 0:
                heapq.heappush(ready, (_sort_key(task_map[dependent_id]), dependent_id))

    if len(ordered) < len(task_map):
        placed = set(ordered)
        leftovers = sorted(
            (task for task in task_map.values() if task.id not in placed),
            key=_sort_key
        )
        logger.debug("%d task(s) could not be ordered; graph has a cycle", len(leftovers))
        ordered.extend(task.id for task in leftovers)

    return ordered


def phase_for_position(index: int, total: int) -> TimelinePhase:
    """Map a 0-based position in a sequence of ``total`` tasks to its phase."""
    if total <= 1:
        return TimelinePhase.BEGINNING

    ratio = index / (total - 1)
    if ratio < 1 / 3:
        return TimelinePhase.BEGINNING
    if ratio < 2 / 3:
        return TimelinePhase.MIDDLE
    return TimelinePhase.END


def compute_phase_map(
    tasks: Iterable[TimelineTask],
    edges: Iterable[EdgeLike]
) -> Dict[str, TimelinePlacement]:
    """Precompute the placement of every task, keyed by task id."""
    ordered = order_tasks_by_dependency(tasks, edges)
    total = len(ordered)
    return {
        task_id: TimelinePlacement(
            phase=phase_for_position(index, total),
            sequence_index=index + 1,
            total_tasks=total
        )
        for index, task_id in enumerate(ordered)
    }


def get_timeline_placement(
    task_id: str,
    tasks: Iterable[TimelineTask],
    edges: Iterable[EdgeLike]
) -> Optional[TimelinePlacement]:
    """Placement of a single task, or None if it is not among ``tasks``."""
    return compute_phase_map(tasks, edges).get(task_id)


def get_due_date_placement(
    due_at: Timestamp,
    project_created_at: Timestamp,
    project_deadline: Timestamp
) -> DueDatePlacement:
    """
    Place a due date inside the project window [created_at, deadline].

    The ratio is clamped to [0, 1] so early or late outliers land in the
    first or last bucket.
    """
    due = to_timestamp(due_at)
    if due is None:
        return DueDatePlacement.UNSCHEDULED

    start = to_timestamp(project_created_at)
    end = to_timestamp(project_deadline)
    if start is None or end is None or end <= start:
        return DueDatePlacement.UNSCHEDULED

    ratio = min(max((due - start) / (end - start), 0.0), 1.0)
    if ratio < 1 / 3:
        return DueDatePlacement.EARLY
    if ratio < 2 / 3:
        return DueDatePlacement.MID
    return DueDatePlacement.LATE
