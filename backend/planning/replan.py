"""
Replan Reconciler.

Diffs a full task list submitted from a client edit session against the
persisted tasks of a project and decides what to write.

Rules:
------
- An incoming task that carries the id of an existing task updates it.
- An incoming task without an id (or with an id that is not persisted)
  is inserted; the caller generates the real identifier.
- Every existing task whose id is absent from the incoming list is deleted.
  Stripping its dependency edges and skill requirements is the caller's job.
- Tasks currently ``in_progress`` keep their assignee no matter what the
  payload asks for, and are never moved back to ``todo``. Every other field,
  including a move to ``blocked`` or ``done``, is applied as requested.
- For other tasks a non-null incoming assignee replaces the stored one; a
  null assignee keeps what is stored.

The reconciler performs no I/O and does not validate the dependency graph.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .phases import Timestamp


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class UpsertAction(Enum):
    UPDATE = "update"
    INSERT = "insert"


@dataclass(frozen=True)
class ExistingTask:
    """A persisted task as the reconciler sees it."""
    id: str
    title: str
    description: str
    status: str
    difficulty_points: int
    due_at: Timestamp = None
    assignee_user_id: Optional[str] = None


@dataclass(frozen=True)
class IncomingTask:
    """A task submitted in a replan request."""
    title: str
    description: str
    status: str
    difficulty_points: int
    due_at: Timestamp = None
    id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    client_ref: Optional[str] = None


@dataclass(frozen=True)
class TaskUpsert:
    """A task row to write. ``id`` is None for inserts without an id."""
    action: UpsertAction
    title: str
    description: str
    status: str
    difficulty_points: int
    due_at: Timestamp
    assignee_user_id: Optional[str]
    id: Optional[str] = None
    client_ref: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        return self.id or self.client_ref

    def to_dict(self) -> Dict:
        due_at = self.due_at.isoformat() if hasattr(self.due_at, 'isoformat') else self.due_at
        return {
            'action': self.action.value,
            'id': self.id,
            'client_ref': self.client_ref,
            'title': self.title,
            'description': self.description,
            'status': TaskStatus(self.status).value,
            'difficulty_points': self.difficulty_points,
            'due_at': due_at,
            'assignee_user_id': self.assignee_user_id
        }


@dataclass(frozen=True)
class ReplanResult:
    upserts: Tuple[TaskUpsert, ...]
    deleted_task_ids: Tuple[str, ...]
    protected_task_ids: Tuple[str, ...] = ()

    @property
    def referenced_task_ids(self) -> List[str]:
        """Ids of upserted tasks that already exist, for re-linking rows."""
        return [
            upsert.id for upsert in self.upserts
            if upsert.action is UpsertAction.UPDATE
        ]

    def to_dict(self) -> Dict:
        return {
            'upserts': [upsert.to_dict() for upsert in self.upserts],
            'deleted_task_ids': list(self.deleted_task_ids),
            'protected_task_ids': list(self.protected_task_ids)
        }


def _insert(incoming: IncomingTask) -> TaskUpsert:
    return TaskUpsert(
        action=UpsertAction.INSERT,
        id=incoming.id,
        client_ref=incoming.client_ref,
        title=incoming.title,
        description=incoming.description,
        status=incoming.status,
        difficulty_points=incoming.difficulty_points,
        due_at=incoming.due_at,
        assignee_user_id=incoming.assignee_user_id
    )


def _merge(existing: ExistingTask, incoming: IncomingTask) -> Tuple[TaskUpsert, bool]:
    """Merge an incoming edit into a stored task; flag if protection applied."""
    upsert = TaskUpsert(
        action=UpsertAction.UPDATE,
        id=existing.id,
        client_ref=incoming.client_ref,
        title=incoming.title,
        description=incoming.description,
        status=incoming.status,
        difficulty_points=incoming.difficulty_points,
        due_at=incoming.due_at,
        assignee_user_id=incoming.assignee_user_id or existing.assignee_user_id
    )

    if existing.status != TaskStatus.IN_PROGRESS:
        return upsert, False

    status = existing.status if incoming.status == TaskStatus.TODO else incoming.status
    return replace(upsert, assignee_user_id=existing.assignee_user_id, status=status), True


def apply_replan_policy(
    existing_tasks: Iterable[ExistingTask],
    incoming_tasks: Iterable[IncomingTask]
) -> ReplanResult:
    """
    Classify every submitted task as update or insert and collect deletions.

    Raises:
        ValueError: if two incoming tasks carry the same id.
    """
    existing_list = list(existing_tasks)
    existing_by_id = {task.id: task for task in existing_list}

    upserts: List[TaskUpsert] = []
    protected: List[str] = []
    seen_ids = set()

    for incoming in incoming_tasks:
        if incoming.id is not None:
            if incoming.id in seen_ids:
                raise ValueError(f"Duplicate incoming task id: {incoming.id}")
            seen_ids.add(incoming.id)

        existing = existing_by_id.get(incoming.id) if incoming.id is not None else None
        if existing is None:
            upserts.append(_insert(incoming))
            continue

        upsert, was_protected = _merge(existing, incoming)
        upserts.append(upsert)
        if was_protected:
            protected.append(existing.id)

    deleted = tuple(task.id for task in existing_list if task.id not in seen_ids)

    return ReplanResult(
        upserts=tuple(upserts),
        deleted_task_ids=deleted,
        protected_task_ids=tuple(protected)
    )
