"""
Dependency Graph Validator.

Checks a task dependency graph for structural correctness before anything
is scheduled or persisted. An edge ``(task_id, depends_on_task_id)`` means
the first task cannot start until the second one is complete.

Checks, in order:
-----------------
1. Per edge, in the order the edges were supplied:
   - ``UNKNOWN_NODE``: an endpoint is not part of the validated task set
   - ``SELF_DEPENDENCY``: a task depends on itself
   - ``DUPLICATE_EDGE``: the same ordered pair was already seen
2. Whole graph:
   - ``CYCLE``: a directed cycle exists. The reported edge is the first
     back-edge found by a depth-first traversal that visits roots in the
     order the task ids were given and, within a node, follows outgoing
     edges in supplied order.

The traversal keeps an explicit stack and a state table per node, so deep
chains do not hit the interpreter recursion limit.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class ValidationReason(Enum):
    """Structural failure reasons for a dependency graph."""
    UNKNOWN_NODE = "UNKNOWN_NODE"
    SELF_DEPENDENCY = "SELF_DEPENDENCY"
    DUPLICATE_EDGE = "DUPLICATE_EDGE"
    CYCLE = "CYCLE"


class NodeState(Enum):
    """Traversal marker for a node during cycle detection."""
    UNVISITED = 0
    VISITING = 1
    DONE = 2


@dataclass(frozen=True)
class DependencyEdge:
    """``task_id`` depends on ``depends_on_task_id``."""
    task_id: str
    depends_on_task_id: str

    def as_tuple(self) -> Tuple[str, str]:
        return (self.task_id, self.depends_on_task_id)

    def to_dict(self) -> Dict:
        return {
            'task_id': self.task_id,
            'depends_on_task_id': self.depends_on_task_id
        }


EdgeLike = Union[DependencyEdge, Tuple[str, str], Dict[str, str]]


def coerce_edge(value: EdgeLike) -> DependencyEdge:
    """Accept an edge as a ``DependencyEdge``, a 2-tuple or a dict."""
    if isinstance(value, DependencyEdge):
        return value
    if isinstance(value, dict):
        return DependencyEdge(
            task_id=str(value['task_id']),
            depends_on_task_id=str(value['depends_on_task_id'])
        )
    task_id, depends_on_task_id = value
    return DependencyEdge(task_id=str(task_id), depends_on_task_id=str(depends_on_task_id))


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation run. ``edge`` is the offending pair, if any."""
    ok: bool
    reason: Optional[ValidationReason] = None
    edge: Optional[DependencyEdge] = None

    def to_dict(self) -> Dict:
        if self.ok:
            return {'ok': True}
        return {
            'ok': False,
            'reason': self.reason.value if self.reason else None,
            'edge': self.edge.to_dict() if self.edge else None
        }


VALID = ValidationResult(ok=True)


def _failure(reason: ValidationReason, edge: Optional[DependencyEdge]) -> ValidationResult:
    logger.debug("Dependency graph rejected: %s at %s", reason.value, edge)
    return ValidationResult(ok=False, reason=reason, edge=edge)


def validate_dependency_graph(
    node_ids: Iterable[str],
    edges: Iterable[EdgeLike]
) -> ValidationResult:
    """
    Validate a dependency graph.

    Args:
        node_ids: Task identifiers in the validation scope. Their iteration
                  order drives the traversal, so pass a list (not a set)
                  when reproducible CYCLE edges matter.
        edges: Dependency edges in the order they were submitted.

    Returns:
        ``ValidationResult`` with ``ok=True`` or the first failure found.
    """
    ordered_nodes: List[str] = list(dict.fromkeys(str(node) for node in node_ids))
    known = set(ordered_nodes)
    normalized = [coerce_edge(edge) for edge in edges]

    seen_pairs = set()
    adjacency: Dict[str, List[DependencyEdge]] = {node: [] for node in ordered_nodes}

    for edge in normalized:
        if edge.task_id not in known or edge.depends_on_task_id not in known:
            return _failure(ValidationReason.UNKNOWN_NODE, edge)

        if edge.task_id == edge.depends_on_task_id:
            return _failure(ValidationReason.SELF_DEPENDENCY, edge)

        pair = edge.as_tuple()
        if pair in seen_pairs:
            return _failure(ValidationReason.DUPLICATE_EDGE, edge)
        seen_pairs.add(pair)

        adjacency[edge.task_id].append(edge)

    back_edge = _find_back_edge(ordered_nodes, adjacency)
    if back_edge is not None:
        return _failure(ValidationReason.CYCLE, back_edge)

    return VALID


def _find_back_edge(
    ordered_nodes: List[str],
    adjacency: Dict[str, List[DependencyEdge]]
) -> Optional[DependencyEdge]:
    """Iterative DFS; returns the first edge that closes a cycle."""
    state: Dict[str, NodeState] = {node: NodeState.UNVISITED for node in ordered_nodes}

    for root in ordered_nodes:
        if state[root] is not NodeState.UNVISITED:
            continue

        state[root] = NodeState.VISITING
        # Each frame is (node, index of the next outgoing edge to follow)
        stack: List[Tuple[str, int]] = [(root, 0)]

        while stack:
            node, cursor = stack[-1]
            outgoing = adjacency[node]

            if cursor >= len(outgoing):
                state[node] = NodeState.DONE
                stack.pop()
                continue

            stack[-1] = (node, cursor + 1)
            edge = outgoing[cursor]
            target = edge.depends_on_task_id

            if state[target] is NodeState.VISITING:
                return edge
            if state[target] is NodeState.UNVISITED:
                state[target] = NodeState.VISITING
                stack.append((target, 0))

    return None
