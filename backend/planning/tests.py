"""
Unit and API tests for the planning engine.

Covers the dependency validator, phase placement, skill resolution, the
assignment matcher, the replan reconciler and the project planning
endpoints that tie them to the persisted store.
"""

from django.core.cache import cache
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APITestCase
from rest_framework import status
from datetime import date, datetime, timedelta
import json
import os
import uuid
from unittest import mock

from delegation_api.settings import _env_flag

from .dependencies import DependencyEdge, ValidationReason, validate_dependency_graph
from .errors import ErrorCode
from .matching import (
    AssignmentResult,
    CandidateTask,
    MemberProfile,
    SkillRequirement,
    assign_tasks,
    fit_score,
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
from .phases import (
    DueDatePlacement,
    TimelinePhase,
    TimelineTask,
    compute_phase_map,
    get_due_date_placement,
    get_timeline_placement,
    order_tasks_by_dependency,
    phase_for_position,
    to_timestamp
)
from .replan import (
    ExistingTask,
    IncomingTask,
    TaskStatus,
    UpsertAction,
    apply_replan_policy
)
from .skills import (
    MemberSkillLevel,
    ProjectSkillOverride,
    resolve_effective_levels,
    resolve_member_profiles
)


CHAIN_EDGES = [('T2', 'T1'), ('T3', 'T2')]


class DependencyValidatorTests(TestCase):
    """Tests for structural validation of dependency graphs."""

    def test_acyclic_chain_is_valid(self):
        """A simple chain should validate."""
        result = validate_dependency_graph(['T1', 'T2', 'T3'], CHAIN_EDGES)

        self.assertTrue(result.ok)
        self.assertEqual(result.to_dict(), {'ok': True})

    def test_empty_graph_is_valid(self):
        """No tasks and no edges is a valid graph."""
        self.assertTrue(validate_dependency_graph([], []).ok)

    def test_unknown_node(self):
        """Edges pointing outside the task set are rejected."""
        result = validate_dependency_graph(['T1'], [('T1', 'T9')])

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, ValidationReason.UNKNOWN_NODE)
        self.assertEqual(result.edge, DependencyEdge('T1', 'T9'))

    def test_self_dependency(self):
        """A task cannot depend on itself."""
        result = validate_dependency_graph(['T1'], [('T1', 'T1')])

        self.assertEqual(result.reason, ValidationReason.SELF_DEPENDENCY)
        self.assertEqual(result.edge.as_tuple(), ('T1', 'T1'))

    def test_duplicate_edge(self):
        """The second copy of an edge is reported."""
        result = validate_dependency_graph(['T1', 'T2'], [('T2', 'T1'), ('T2', 'T1')])

        self.assertEqual(result.reason, ValidationReason.DUPLICATE_EDGE)
        self.assertEqual(result.edge, DependencyEdge('T2', 'T1'))

    def test_edges_checked_in_submission_order(self):
        """The first bad edge in input order decides the reason."""
        unknown_first = validate_dependency_graph(['T1'], [('T1', 'X'), ('T1', 'T1')])
        self_first = validate_dependency_graph(['T1'], [('T1', 'T1'), ('T1', 'X')])

        self.assertEqual(unknown_first.reason, ValidationReason.UNKNOWN_NODE)
        self.assertEqual(self_first.reason, ValidationReason.SELF_DEPENDENCY)

    def test_cycle_reports_back_edge(self):
        """Closing the chain back to T1 produces a CYCLE on the back edge."""
        edges = CHAIN_EDGES + [('T1', 'T3')]
        result = validate_dependency_graph(['T1', 'T2', 'T3'], edges)

        self.assertFalse(result.ok)
        self.assertEqual(result.reason, ValidationReason.CYCLE)
        self.assertEqual(result.edge, DependencyEdge('T2', 'T1'))
        self.assertEqual(
            result.to_dict(),
            {'ok': False, 'reason': 'CYCLE', 'edge': {'task_id': 'T2', 'depends_on_task_id': 'T1'}}
        )

    def test_cycle_result_is_deterministic(self):
        """Repeated runs report the same edge."""
        edges = [('A', 'B'), ('B', 'C'), ('C', 'A'), ('D', 'A')]
        results = {validate_dependency_graph(['D', 'A', 'B', 'C'], edges) for _ in range(5)}

        self.assertEqual(len(results), 1)

    def test_deep_chain_does_not_recurse(self):
        """Long chains validate without hitting the recursion limit."""
        nodes = [f"N{i}" for i in range(5000)]
        edges = [(nodes[i], nodes[i + 1]) for i in range(len(nodes) - 1)]

        self.assertTrue(validate_dependency_graph(nodes, edges).ok)

    def test_accepts_dict_edges(self):
        """Edges may be given as mappings."""
        result = validate_dependency_graph(
            ['T1', 'T2'], [{'task_id': 'T2', 'depends_on_task_id': 'T1'}]
        )
        self.assertTrue(result.ok)


class PhasePlacementTests(TestCase):
    """Tests for topological ordering and phase buckets."""

    def setUp(self):
        self.tasks = [TimelineTask('T1'), TimelineTask('T2'), TimelineTask('T3')]

    def test_chain_phases(self):
        """T1 -> T2 -> T3 lands in beginning, middle and end."""
        placements = compute_phase_map(self.tasks, CHAIN_EDGES)

        self.assertEqual(placements['T1'].phase, TimelinePhase.BEGINNING)
        self.assertEqual(placements['T2'].phase, TimelinePhase.MIDDLE)
        self.assertEqual(placements['T3'].phase, TimelinePhase.END)
        self.assertEqual(
            [placements[t].sequence_index for t in ('T1', 'T2', 'T3')],
            [1, 2, 3]
        )
        self.assertTrue(all(p.total_tasks == 3 for p in placements.values()))

    def test_dependencies_precede_dependents(self):
        """Input order does not override the dependency order."""
        reversed_tasks = list(reversed(self.tasks))
        self.assertEqual(order_tasks_by_dependency(reversed_tasks, CHAIN_EDGES), ['T1', 'T2', 'T3'])

    def test_ready_tasks_break_ties_by_due_date(self):
        """Among ready tasks, the earliest due date comes first."""
        tasks = [
            TimelineTask('A', due_at='2026-03-10T00:00:00Z'),
            TimelineTask('B', due_at='2026-03-01T00:00:00Z'),
            TimelineTask('C'),
        ]
        self.assertEqual(order_tasks_by_dependency(tasks, []), ['B', 'A', 'C'])

    def test_ties_fall_back_to_created_then_id(self):
        """Creation time and then id settle remaining ties."""
        tasks = [
            TimelineTask('Z', created_at=datetime(2026, 1, 1)),
            TimelineTask('Y', created_at=datetime(2026, 1, 2)),
            TimelineTask('B'),
            TimelineTask('A'),
        ]
        self.assertEqual(order_tasks_by_dependency(tasks, []), ['Z', 'Y', 'A', 'B'])

    def test_single_task_is_beginning(self):
        """One task always sits in the beginning phase."""
        placement = get_timeline_placement('T1', [TimelineTask('T1')], [])

        self.assertEqual(placement.phase, TimelinePhase.BEGINNING)
        self.assertEqual(placement.sequence_index, 1)
        self.assertEqual(placement.total_tasks, 1)

    def test_unknown_task_has_no_placement(self):
        """Looking up a task outside the set returns None."""
        self.assertIsNone(get_timeline_placement('T9', self.tasks, CHAIN_EDGES))

    def test_phase_thresholds(self):
        """Ratios of exactly one and two thirds fall in the later bucket."""
        phases = [phase_for_position(i, 4) for i in range(4)]
        self.assertEqual(
            phases,
            [TimelinePhase.BEGINNING, TimelinePhase.MIDDLE, TimelinePhase.END, TimelinePhase.END]
        )

    def test_cyclic_leftovers_are_appended(self):
        """Tasks stuck in a cycle are still placed."""
        tasks = [TimelineTask('A'), TimelineTask('B')]
        self.assertEqual(order_tasks_by_dependency(tasks, [('A', 'B'), ('B', 'A')]), ['A', 'B'])

    def _diamond(self):
        tasks = [
            TimelineTask('A', due_at='2026-03-20T00:00:00Z'),
            TimelineTask('B', due_at='2026-03-10T00:00:00Z'),
            TimelineTask('C', due_at='2026-03-05T00:00:00Z'),
            TimelineTask('D', due_at='2026-03-01T00:00:00Z'),
            TimelineTask('E'),
        ]
        edges = [('B', 'A'), ('C', 'A'), ('D', 'B'), ('D', 'C')]
        return tasks, edges

    def test_diamond_respects_dependencies_over_due_dates(self):
        """An early due date never pulls a task ahead of its prerequisites."""
        tasks, edges = self._diamond()

        self.assertEqual(order_tasks_by_dependency(tasks, edges), ['A', 'C', 'B', 'D', 'E'])

    def test_diamond_phases_are_monotonic(self):
        """Every task sits at or after the phase of what it depends on."""
        tasks, edges = self._diamond()
        placements = compute_phase_map(tasks, edges)
        phase_rank = {TimelinePhase.BEGINNING: 0, TimelinePhase.MIDDLE: 1, TimelinePhase.END: 2}

        for task_id, depends_on in edges:
            self.assertLess(placements[depends_on].sequence_index, placements[task_id].sequence_index)
            self.assertLessEqual(
                phase_rank[placements[depends_on].phase],
                phase_rank[placements[task_id].phase]
            )
        self.assertEqual(placements['A'].phase, TimelinePhase.BEGINNING)
        self.assertEqual(placements['D'].phase, TimelinePhase.END)

    def test_phase_map_is_deterministic(self):
        """Identical input, in any order, gives identical placements."""
        tasks, edges = self._diamond()

        first = compute_phase_map(tasks, edges)
        second = compute_phase_map(tasks, edges)
        shuffled = compute_phase_map(list(reversed(tasks)), edges)

        self.assertEqual(first, second)
        self.assertEqual(first, shuffled)


class DueDatePlacementTests(TestCase):
    """Tests for placing due dates within the project window."""

    def setUp(self):
        self.start = datetime(2026, 1, 1)
        self.deadline = self.start + timedelta(days=30)

    def test_thirds_of_window(self):
        """Due dates map to early, mid and late thirds."""
        cases = {5: DueDatePlacement.EARLY, 15: DueDatePlacement.MID, 25: DueDatePlacement.LATE}
        for days, expected in cases.items():
            due = self.start + timedelta(days=days)
            self.assertEqual(get_due_date_placement(due, self.start, self.deadline), expected)

    def test_outliers_are_clamped(self):
        """Dates outside the window land in the first or last bucket."""
        before = self.start - timedelta(days=10)
        after = self.deadline + timedelta(days=10)

        self.assertEqual(get_due_date_placement(before, self.start, self.deadline), DueDatePlacement.EARLY)
        self.assertEqual(get_due_date_placement(after, self.start, self.deadline), DueDatePlacement.LATE)

    def test_plain_dates_read_as_utc(self):
        """Dates and naive datetimes share the clock of aware UTC values."""
        midnight_utc = to_timestamp('2026-01-01T00:00:00Z')

        self.assertEqual(to_timestamp(date(2026, 1, 1)), midnight_utc)
        self.assertEqual(to_timestamp(datetime(2026, 1, 1)), midnight_utc)
        self.assertEqual(to_timestamp('2026-01-01'), midnight_utc)

    def test_missing_values_are_unscheduled(self):
        """No due date or no deadline means unscheduled."""
        self.assertEqual(
            get_due_date_placement(None, self.start, self.deadline),
            DueDatePlacement.UNSCHEDULED
        )
        self.assertEqual(
            get_due_date_placement(self.start, self.start, None),
            DueDatePlacement.UNSCHEDULED
        )

    def test_accepts_date_strings(self):
        """Plain ISO dates are understood."""
        placement = get_due_date_placement('2026-01-28', date(2026, 1, 1), '2026-01-31')
        self.assertEqual(placement, DueDatePlacement.LATE)


class EffectiveSkillResolverTests(TestCase):
    """Tests for the global/project skill lookup."""

    def setUp(self):
        self.global_levels = [
            MemberSkillLevel('u1', 'python', 2),
            MemberSkillLevel('u1', 'sql', 4),
            MemberSkillLevel('u2', 'python', 5),
        ]
        self.overrides = [
            ProjectSkillOverride('p1', 'u1', 'python', 5),
            ProjectSkillOverride('p2', 'u1', 'sql', 1),
        ]

    def test_override_wins_then_global_then_zero(self):
        """Project overrides beat global levels; unknown skills are 0."""
        levels = resolve_effective_levels(
            'u1', 'p1', ['python', 'sql', 'design'], self.global_levels, self.overrides
        )
        self.assertEqual(levels, {'python': 5, 'sql': 4, 'design': 0})

    def test_other_project_override_ignored(self):
        """Overrides for a different project do not apply."""
        levels = resolve_effective_levels('u1', 'p1', ['sql'], self.global_levels, self.overrides)
        self.assertEqual(levels['sql'], 4)

    def test_member_profiles_sorted_with_load(self):
        """Profiles come back sorted by member with their current load."""
        profiles = resolve_member_profiles(
            'p1', ['u2', 'u1'], ['python'], self.global_levels, self.overrides,
            load_by_member={'u2': 7}
        )

        self.assertEqual([p.user_id for p in profiles], ['u1', 'u2'])
        self.assertEqual(profiles[0].skills, {'python': 5})
        self.assertEqual(profiles[1].current_load, 7)
        self.assertEqual(profiles[0].current_load, 0)


class AssignmentMatcherTests(TestCase):
    """Tests for the deterministic assignment matcher."""

    def test_equal_fit_balances_load(self):
        """With no skill signal, tasks spread across members."""
        tasks = [CandidateTask('A', 5), CandidateTask('B', 5)]
        members = [MemberProfile('u1'), MemberProfile('u2')]

        result = assign_tasks(tasks, members, [])

        self.assertEqual(
            [(a.task_id, a.assignee_user_id) for a in result.assignments],
            [('A', 'u1'), ('B', 'u2')]
        )
        self.assertEqual(dict(result.loads), {'u1': 5, 'u2': 5})

    def test_fit_outranks_load(self):
        """A better skill match wins even with a heavier load."""
        members = [
            MemberProfile('u1', skills={'python': 5}, current_load=20),
            MemberProfile('u2', skills={'python': 1}, current_load=0),
        ]
        requirements = [SkillRequirement('A', 'python', 2)]

        result = assign_tasks([CandidateTask('A', 3)], members, requirements)

        self.assertEqual(result.assignments[0].assignee_user_id, 'u1')

    def test_fit_score_is_weighted_sum(self):
        """Fit multiplies weights by levels; missing skills count zero."""
        member = MemberProfile('u1', skills={'python': 3, 'sql': 2})
        requirements = [
            SkillRequirement('A', 'python', 2),
            SkillRequirement('A', 'sql', 1),
            SkillRequirement('A', 'go', 5),
        ]
        self.assertEqual(fit_score(member, requirements), 8)

    def test_processing_order_prefers_due_then_difficulty(self):
        """Earlier due dates are placed first, then larger tasks."""
        tasks = [
            CandidateTask('late', 8, due_at='2026-05-01T00:00:00Z'),
            CandidateTask('soon', 1, due_at='2026-04-01T00:00:00Z'),
            CandidateTask('big', 8),
            CandidateTask('small', 2),
        ]
        members = [MemberProfile('u1'), MemberProfile('u2')]

        result = assign_tasks(tasks, members, [])

        self.assertEqual(
            [a.task_id for a in result.assignments],
            ['soon', 'late', 'big', 'small']
        )
        self.assertEqual(result.assignments[0].assignee_user_id, 'u1')
        self.assertEqual(result.assignments[1].assignee_user_id, 'u2')

    def test_deterministic_across_input_order(self):
        """Shuffled input yields identical output."""
        tasks = [CandidateTask(f"T{i}", points) for i, points in enumerate((1, 2, 3, 5, 8))]
        members = [MemberProfile('u1'), MemberProfile('u2'), MemberProfile('u3')]

        first = assign_tasks(tasks, members, [])
        second = assign_tasks(list(reversed(tasks)), list(reversed(members)), [])

        self.assertEqual(first, second)

    def test_no_members_leaves_tasks_unassigned(self):
        """Without members every task is reported unassigned."""
        result = assign_tasks([CandidateTask('A', 3), CandidateTask('B', 1)], [], [])

        self.assertEqual(result.assigned_count, 0)
        self.assertEqual(set(result.unassigned_task_ids), {'A', 'B'})

    def test_no_candidates(self):
        """An empty task list is a no-op."""
        result = assign_tasks([], [MemberProfile('u1', current_load=4)], [])

        self.assertEqual(result.assigned_count, 0)
        self.assertEqual(result.to_dict()['loads'], {'u1': 4})

    def test_inputs_not_mutated(self):
        """Member loads are tracked internally."""
        member = MemberProfile('u1')
        assign_tasks([CandidateTask('A', 8)], [member], [])
        self.assertEqual(member.current_load, 0)

    def test_workload_ignores_done_and_unassigned(self):
        """Only open assigned work counts toward load."""
        rows = [
            {'assignee_user_id': 'u1', 'status': 'todo', 'difficulty_points': 3},
            {'assignee_user_id': 'u1', 'status': 'in_progress', 'difficulty_points': 5},
            {'assignee_user_id': 'u1', 'status': 'done', 'difficulty_points': 8},
            {'assignee_user_id': None, 'status': 'todo', 'difficulty_points': 2},
        ]
        self.assertEqual(workload_by_member(rows), {'u1': 8})

    def test_zero_fit_members_stay_eligible(self):
        """When nobody has the required skill, load decides, then member id."""
        tasks = [CandidateTask('A', 3), CandidateTask('B', 3)]
        members = [
            MemberProfile('u1', current_load=3),
            MemberProfile('u2', current_load=0),
        ]
        requirements = [
            SkillRequirement('A', 'rust', 3),
            SkillRequirement('B', 'rust', 3),
        ]

        result = assign_tasks(tasks, members, requirements)

        self.assertEqual(result.assigned_count, 2)
        self.assertEqual(result.unassigned_task_ids, ())
        self.assertEqual(
            [(a.task_id, a.assignee_user_id) for a in result.assignments],
            [('A', 'u2'), ('B', 'u1')]
        )
        self.assertEqual(dict(result.loads), {'u1': 6, 'u2': 3})

    def test_reason_cites_matched_skills(self):
        """A skill-driven pick names the covered skills and levels."""
        members = [MemberProfile('u1', skills={'python': 4}), MemberProfile('u2')]
        requirements = [SkillRequirement('A', 'python', 2)]

        result = assign_tasks([CandidateTask('A', 3)], members, requirements)

        self.assertEqual(
            result.assignments[0].reason,
            "u1 was assigned due to strongest skill coverage in python (4/5)."
        )

    def test_reason_falls_back_to_workload(self):
        """Picks without skill signal are explained by workload balance."""
        members = [MemberProfile('u1')]

        plain = assign_tasks([CandidateTask('A', 3)], members, [])
        unmatched = assign_tasks([CandidateTask('B', 5)], members, [SkillRequirement('B', 'rust', 2)])

        self.assertEqual(plain.assignments[0].reason, "u1 was assigned based on workload balance.")
        self.assertEqual(
            unmatched.assignments[0].reason,
            "u1 was assigned for workload balance on a difficulty 5 task."
        )
        self.assertIn('reason', unmatched.to_dict()['assignments'][0])

    def test_empty_result_serializes(self):
        """A default result renders an empty summary."""
        self.assertEqual(
            AssignmentResult().to_dict(),
            {'assignments': [], 'assigned_count': 0, 'unassigned_task_ids': [], 'loads': {}}
        )


class ReplanPolicyTests(TestCase):
    """Tests for the replan reconciler."""

    def setUp(self):
        self.existing = [
            ExistingTask('T1', 'Draft schema', '', 'todo', 3),
            ExistingTask('T2', 'Build API', '', 'in_progress', 5, assignee_user_id='A'),
        ]

    def _incoming(self, task_id, title='Task', status='todo', assignee=None, **extra):
        return IncomingTask(
            id=task_id, title=title, description='', status=status,
            difficulty_points=3, assignee_user_id=assignee, **extra
        )

    def test_in_progress_assignee_is_protected(self):
        """Edits apply but an in-progress assignee stays put."""
        result = apply_replan_policy(self.existing, [
            self._incoming('T1', title='Draft schema v2'),
            self._incoming('T2', title='Build API', status='in_progress', assignee='B'),
        ])

        upserts = {u.id: u for u in result.upserts}
        self.assertEqual(upserts['T1'].title, 'Draft schema v2')
        self.assertEqual(upserts['T1'].action, UpsertAction.UPDATE)
        self.assertEqual(upserts['T2'].assignee_user_id, 'A')
        self.assertEqual(result.deleted_task_ids, ())
        self.assertEqual(result.protected_task_ids, ('T2',))

    def test_omitted_tasks_are_deleted(self):
        """Existing tasks missing from the payload are deleted."""
        result = apply_replan_policy(self.existing, [self._incoming('T1')])

        self.assertEqual(result.deleted_task_ids, ('T2',))
        self.assertEqual(result.referenced_task_ids, ['T1'])

    def test_in_progress_never_returns_to_todo(self):
        """A todo status for an in-progress task is ignored."""
        result = apply_replan_policy(self.existing, [self._incoming('T2', status='todo')])
        self.assertEqual(result.upserts[0].status, TaskStatus.IN_PROGRESS)

    def test_in_progress_may_finish(self):
        """Moving forward to done is allowed."""
        result = apply_replan_policy(self.existing, [self._incoming('T2', status='done')])
        self.assertEqual(result.upserts[0].status, 'done')

    def test_null_assignee_keeps_stored_assignee(self):
        """Unprotected tasks keep their assignee when none is sent."""
        existing = [ExistingTask('T1', 'Draft', '', 'todo', 3, assignee_user_id='u1')]

        kept = apply_replan_policy(existing, [self._incoming('T1')])
        replaced = apply_replan_policy(existing, [self._incoming('T1', assignee='u2')])

        self.assertEqual(kept.upserts[0].assignee_user_id, 'u1')
        self.assertEqual(replaced.upserts[0].assignee_user_id, 'u2')

    def test_new_and_unknown_ids_are_inserts(self):
        """Tasks without a persisted id become inserts."""
        result = apply_replan_policy(self.existing, [
            self._incoming(None, client_ref='new-1'),
            self._incoming('T9'),
        ])

        self.assertEqual([u.action for u in result.upserts], [UpsertAction.INSERT, UpsertAction.INSERT])
        self.assertEqual(result.upserts[0].reference, 'new-1')
        self.assertEqual(set(result.deleted_task_ids), {'T1', 'T2'})

    def test_every_existing_task_is_accounted_for(self):
        """Each existing id is either updated or deleted, never both."""
        result = apply_replan_policy(self.existing, [self._incoming('T2', status='in_progress')])

        updated = set(result.referenced_task_ids)
        deleted = set(result.deleted_task_ids)
        self.assertEqual(updated | deleted, {'T1', 'T2'})
        self.assertFalse(updated & deleted)

    def test_duplicate_ids_rejected(self):
        """Two incoming tasks with the same id are an error."""
        with self.assertRaises(ValueError):
            apply_replan_policy(self.existing, [self._incoming('T1'), self._incoming('T1')])

    def test_identical_input_gives_identical_result(self):
        """Reconciling the same edit twice yields the same plan."""
        incoming = [
            self._incoming('T2', status='in_progress', assignee='B'),
            self._incoming(None, client_ref='new-1'),
        ]

        first = apply_replan_policy(self.existing, incoming)
        second = apply_replan_policy(list(self.existing), list(incoming))

        self.assertEqual(first, second)
        self.assertEqual(first.to_dict(), second.to_dict())


class EngineAPITests(APITestCase):
    """Tests for the stateless engine endpoints."""

    def setUp(self):
        cache.clear()

    def _post(self, name, data):
        return self.client.post(reverse(name), data=json.dumps(data), content_type='application/json')

    def test_api_info(self):
        """API root lists endpoints and error codes."""
        response = self.client.get(reverse('api-info'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('endpoints', response.data)
        self.assertIn('CYCLE', response.data['dependency_failures'])

    def test_validate_ok(self):
        """A valid chain returns ok."""
        response = self._post('validate-dependencies', {
            'task_ids': ['T1', 'T2'],
            'edges': [{'task_id': 'T2', 'depends_on_task_id': 'T1'}]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['ok'])

    def test_validate_cycle(self):
        """A cycle is a 400 carrying the offending edge."""
        response = self._post('validate-dependencies', {
            'task_ids': ['T1', 'T2'],
            'edges': [
                {'task_id': 'T2', 'depends_on_task_id': 'T1'},
                {'task_id': 'T1', 'depends_on_task_id': 'T2'}
            ]
        })

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], ErrorCode.DEPENDENCY_GRAPH_INVALID.value)
        self.assertEqual(response.data['details']['reason'], 'CYCLE')

    def test_invalid_payload(self):
        """Malformed input is a validation error."""
        response = self._post('validate-dependencies', {'edges': 'nope'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], ErrorCode.VALIDATION_ERROR.value)

    def test_timeline_order(self):
        """Ordering endpoint returns ids and placements."""
        response = self._post('order-timeline', {
            'tasks': [{'id': 'T3'}, {'id': 'T2'}, {'id': 'T1'}],
            'dependencies': [
                {'task_id': 'T2', 'depends_on_task_id': 'T1'},
                {'task_id': 'T3', 'depends_on_task_id': 'T2'}
            ]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['ordered_task_ids'], ['T1', 'T2', 'T3'])
        self.assertEqual(response.data['placements']['T2']['phase'], 'middle')

    def test_effective_skills(self):
        """Skill endpoint merges overrides over globals."""
        response = self._post('effective-skills', {
            'member_id': 'u1',
            'project_id': 'p1',
            'skill_ids': ['python', 'go'],
            'global_levels': [{'member_id': 'u1', 'skill_id': 'python', 'level': 2}],
            'project_overrides': [
                {'project_id': 'p1', 'member_id': 'u1', 'skill_id': 'python', 'level': 4}
            ]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['levels'], {'python': 4, 'go': 0})

    def test_assignment_preview(self):
        """Preview returns assignments without persisting."""
        response = self._post('preview-assignments', {
            'tasks': [{'id': 'A', 'difficulty_points': 5}, {'id': 'B', 'difficulty_points': 5}],
            'members': [{'user_id': 'u1'}, {'user_id': 'u2'}]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['assigned_count'], 2)
        self.assertEqual(response.data['loads'], {'u1': 5, 'u2': 5})

    def test_assignment_preview_rejects_bad_difficulty(self):
        """Difficulty must be on the 1, 2, 3, 5, 8 scale."""
        response = self._post('preview-assignments', {
            'tasks': [{'id': 'A', 'difficulty_points': 4}],
            'members': [{'user_id': 'u1'}]
        })
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_replan_preview(self):
        """Replan preview classifies updates, inserts and deletes."""
        response = self._post('preview-replan', {
            'existing_tasks': [
                {'id': 'T1', 'title': 'First', 'difficulty_points': 3, 'status': 'todo'},
                {'id': 'T2', 'title': 'Second', 'difficulty_points': 3, 'status': 'todo'}
            ],
            'incoming_tasks': [
                {'id': 'T1', 'title': 'First edited', 'difficulty_points': 3, 'status': 'todo'},
                {'client_ref': 'new-1', 'title': 'Third', 'difficulty_points': 1, 'status': 'todo'}
            ]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([u['action'] for u in response.data['upserts']], ['update', 'insert'])
        self.assertEqual(response.data['deleted_task_ids'], ['T2'])

    def test_replan_preview_rejects_duplicate_refs(self):
        """Duplicate incoming ids are a validation error."""
        task = {'id': 'T1', 'title': 'First', 'difficulty_points': 3, 'status': 'todo'}
        response = self._post('preview-replan', {'existing_tasks': [], 'incoming_tasks': [task, task]})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], ErrorCode.VALIDATION_ERROR.value)


class ProjectPlanningAPITests(APITestCase):
    """Tests for planning lifecycle endpoints against persisted projects."""

    def setUp(self):
        cache.clear()
        self.project = Project.objects.create(
            name='Launch',
            deadline=timezone.now() + timedelta(days=30)
        )
        self.python = Skill.objects.create(name='python')

    def _task(self, title, **fields):
        return Task.objects.create(project=self.project, title=title, **fields)

    def _members(self, *user_ids):
        for user_id in user_ids:
            ProjectMember.objects.create(project=self.project, user_id=user_id)

    def _depends(self, task, depends_on):
        TaskDependency.objects.create(task=task, depends_on_task=depends_on)

    def _post(self, name, data=None):
        url = reverse(name, kwargs={'project_id': self.project.pk})
        return self.client.post(url, data=json.dumps(data or {}), content_type='application/json')

    def _set_status(self, planning_status):
        self.project.planning_status = planning_status
        self.project.save()

    # ---------- lock ----------

    def test_lock_valid_plan(self):
        """A draft with a valid graph becomes locked."""
        first = self._task('Design')
        self._depends(self._task('Build'), first)

        response = self._post('lock-plan')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.project.refresh_from_db()
        self.assertEqual(self.project.planning_status, Project.PlanningStatus.LOCKED)

    def test_lock_rejects_cycle(self):
        """A cyclic plan stays in draft."""
        first = self._task('Design')
        second = self._task('Build')
        self._depends(second, first)
        self._depends(first, second)

        response = self._post('lock-plan')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], ErrorCode.DEPENDENCY_GRAPH_INVALID.value)
        self.assertEqual(response.data['details']['reason'], 'CYCLE')
        self.project.refresh_from_db()
        self.assertEqual(self.project.planning_status, Project.PlanningStatus.DRAFT)

    def test_lock_rejects_empty_plan(self):
        """A plan without tasks cannot be locked."""
        response = self._post('lock-plan')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_lock_requires_draft(self):
        """Locking twice is a state conflict."""
        self._task('Design')
        self._set_status(Project.PlanningStatus.LOCKED)

        response = self._post('lock-plan')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['error_code'], ErrorCode.INVALID_STATE.value)

    def test_unknown_project(self):
        """Unknown projects are 404."""
        url = reverse('lock-plan', kwargs={'project_id': uuid.uuid4()})
        response = self.client.post(url, data='{}', content_type='application/json')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    # ---------- assignments ----------

    def test_run_assignments(self):
        """Skill fit picks the specialist; the rest balances load."""
        self._members('u1', 'u2')
        UserSkill.objects.create(user_id='u2', skill=self.python, level=5)
        api = self._task('Build API', difficulty_points=5)
        docs = self._task('Write docs', difficulty_points=2)
        TaskRequiredSkill.objects.create(task=api, skill=self.python, weight=3)
        self._set_status(Project.PlanningStatus.LOCKED)

        response = self._post('run-assignments')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['assigned_count'], 2)
        api.refresh_from_db()
        docs.refresh_from_db()
        self.assertEqual(api.assignee_user_id, 'u2')
        self.assertEqual(docs.assignee_user_id, 'u1')
        self.project.refresh_from_db()
        self.assertEqual(self.project.planning_status, Project.PlanningStatus.ASSIGNED)

    def test_project_override_changes_match(self):
        """A project-scoped level outranks the global one."""
        self._members('u1', 'u2')
        UserSkill.objects.create(user_id='u2', skill=self.python, level=5)
        ProjectMemberSkill.objects.create(project=self.project, user_id='u2', skill=self.python, level=0)
        UserSkill.objects.create(user_id='u1', skill=self.python, level=1)
        api = self._task('Build API', difficulty_points=5)
        TaskRequiredSkill.objects.create(task=api, skill=self.python, weight=3)
        self._set_status(Project.PlanningStatus.LOCKED)

        self._post('run-assignments')

        api.refresh_from_db()
        self.assertEqual(api.assignee_user_id, 'u1')

    def test_run_assignments_without_members(self):
        """No members is a 400 and the plan stays locked."""
        self._task('Build API')
        self._set_status(Project.PlanningStatus.LOCKED)

        response = self._post('run-assignments')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], ErrorCode.NO_MEMBERS.value)
        self.project.refresh_from_db()
        self.assertEqual(self.project.planning_status, Project.PlanningStatus.LOCKED)

    def test_run_assignments_requires_lock(self):
        """Draft plans cannot be assigned."""
        self._members('u1')
        self._task('Build API')

        response = self._post('run-assignments')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_assign_unassigned_counts_existing_load(self):
        """Open work already held by a member counts against them."""
        self._members('u1', 'u2')
        self._task('Ongoing', status='in_progress', difficulty_points=8, assignee_user_id='u1')
        finished = self._task('Finished', status='done', difficulty_points=8, assignee_user_id='u2')
        todo = self._task('New work', difficulty_points=3)
        self._set_status(Project.PlanningStatus.ASSIGNED)

        response = self._post('assign-unassigned')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        todo.refresh_from_db()
        self.assertEqual(todo.assignee_user_id, 'u2')
        finished.refresh_from_db()
        self.assertEqual(finished.assignee_user_id, 'u2')

    def test_assign_unassigned_nothing_to_do(self):
        """With no candidates nothing is assigned."""
        self._task('Held', assignee_user_id='u1')

        response = self._post('assign-unassigned')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['assigned_count'], 0)

    def test_blocked_tasks_are_not_assigned(self):
        """Only todo work is matched."""
        self._members('u1')
        blocked = self._task('Waiting', status='blocked')

        self._post('assign-unassigned')

        blocked.refresh_from_db()
        self.assertIsNone(blocked.assignee_user_id)

    # ---------- replan ----------

    def _replan_fixture(self):
        self._members('u1', 'u2')
        UserSkill.objects.create(user_id='u2', skill=self.python, level=4)
        t1 = self._task('Draft schema', assignee_user_id='u1')
        t2 = self._task('Build API', status='in_progress', assignee_user_id='u1')
        t3 = self._task('Legacy cleanup')
        self._set_status(Project.PlanningStatus.ASSIGNED)
        return t1, t2, t3

    def test_replan(self):
        """Updates, inserts, deletes and protection are applied together."""
        t1, t2, t3 = self._replan_fixture()

        response = self._post('replan-project', {
            'tasks': [
                {'id': str(t1.pk), 'title': 'Draft schema v2', 'difficulty_points': 3, 'status': 'todo'},
                {'id': str(t2.pk), 'title': 'Build API', 'difficulty_points': 3,
                 'status': 'todo', 'assignee_user_id': 'u2'},
                {'client_ref': 'new-1', 'title': 'Write migrations', 'difficulty_points': 2, 'status': 'todo'}
            ],
            'task_skills': [{'task_ref': 'new-1', 'skill_id': str(self.python.pk), 'weight': 2}],
            'task_dependencies': [{'task_ref': 'new-1', 'depends_on_task_ref': str(t1.pk)}]
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['updated_tasks'], 2)
        self.assertEqual(response.data['inserted_tasks'], 1)
        self.assertEqual(response.data['deleted_task_ids'], [str(t3.pk)])
        self.assertEqual(response.data['protected_task_ids'], [str(t2.pk)])

        t1.refresh_from_db()
        t2.refresh_from_db()
        self.assertEqual(t1.title, 'Draft schema v2')
        self.assertEqual(t1.assignee_user_id, 'u1')
        self.assertEqual(t2.assignee_user_id, 'u1')
        self.assertEqual(t2.status, 'in_progress')
        self.assertFalse(Task.objects.filter(pk=t3.pk).exists())

        new_task = Task.objects.get(pk=response.data['task_ids_by_ref']['new-1'])
        self.assertEqual(new_task.assignee_user_id, 'u2')
        self.assertTrue(TaskDependency.objects.filter(task=new_task, depends_on_task=t1).exists())
        self.assertTrue(TaskRequiredSkill.objects.filter(task=new_task, skill=self.python).exists())

    def test_replan_requires_assigned_plan(self):
        """Replanning a draft is a state conflict."""
        t1 = self._task('Draft schema')

        response = self._post('replan-project', {
            'tasks': [{'id': str(t1.pk), 'title': 'Draft schema', 'difficulty_points': 3, 'status': 'todo'}]
        })
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_replan_cycle_changes_nothing(self):
        """A cyclic request is rejected before anything is written."""
        t1, t2, t3 = self._replan_fixture()

        response = self._post('replan-project', {
            'tasks': [
                {'id': str(t1.pk), 'title': 'Renamed', 'difficulty_points': 3, 'status': 'todo'},
                {'id': str(t2.pk), 'title': 'Build API', 'difficulty_points': 3, 'status': 'in_progress'}
            ],
            'task_dependencies': [
                {'task_ref': str(t1.pk), 'depends_on_task_ref': str(t2.pk)},
                {'task_ref': str(t2.pk), 'depends_on_task_ref': str(t1.pk)}
            ]
        })

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['details']['reason'], 'CYCLE')
        self.assertTrue(Task.objects.filter(pk=t3.pk).exists())
        t1.refresh_from_db()
        self.assertEqual(t1.title, 'Draft schema')

    def test_replan_rejects_foreign_task_ids(self):
        """Ids from another project are rejected."""
        self._replan_fixture()
        other = Project.objects.create(name='Other')
        foreign = Task.objects.create(project=other, title='Not ours')

        response = self._post('replan-project', {
            'tasks': [{'id': str(foreign.pk), 'title': 'Not ours', 'difficulty_points': 3, 'status': 'todo'}]
        })
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_replan_rejects_unknown_skill_refs(self):
        """Task skills must point at submitted tasks."""
        t1, _, _ = self._replan_fixture()

        response = self._post('replan-project', {
            'tasks': [{'id': str(t1.pk), 'title': 'Draft schema', 'difficulty_points': 3, 'status': 'todo'}],
            'task_skills': [{'task_ref': 'missing', 'skill_id': str(self.python.pk), 'weight': 1}]
        })
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    # ---------- read models ----------

    def test_timeline(self):
        """Timeline orders by dependency with phases."""
        t1 = self._task('One')
        t2 = self._task('Two', due_at=timezone.now() + timedelta(days=25))
        t3 = self._task('Three')
        self._depends(t2, t1)
        self._depends(t3, t2)

        response = self.client.get(reverse('project-timeline', kwargs={'project_id': self.project.pk}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        tasks = response.data['tasks']
        self.assertEqual([t['id'] for t in tasks], [str(t1.pk), str(t2.pk), str(t3.pk)])
        self.assertEqual([t['phase'] for t in tasks], ['beginning', 'middle', 'end'])
        self.assertEqual(tasks[1]['due_date_placement'], 'late')
        self.assertEqual(tasks[0]['due_date_placement'], 'unscheduled')

    def test_task_placement(self):
        """Single-task placement reports its index and total."""
        t1 = self._task('One')
        t2 = self._task('Two')
        self._depends(t2, t1)

        url = reverse('task-timeline', kwargs={'project_id': self.project.pk, 'task_id': t2.pk})
        response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['sequence_index'], 2)
        self.assertEqual(response.data['total_tasks'], 2)
        self.assertEqual(response.data['phase'], 'end')

    def test_task_placement_unknown_task(self):
        """Unknown tasks are 404."""
        url = reverse('task-timeline', kwargs={'project_id': self.project.pk, 'task_id': uuid.uuid4()})
        self.assertEqual(self.client.get(url).status_code, status.HTTP_404_NOT_FOUND)

    def test_board(self):
        """Board groups tasks by member with an unassigned bucket."""
        self._members('u1', 'u2')
        later = self._task('Later', assignee_user_id='u1', due_at=timezone.now() + timedelta(days=9))
        sooner = self._task('Sooner', assignee_user_id='u1', due_at=timezone.now() + timedelta(days=2))
        loose = self._task('Loose')

        response = self.client.get(reverse('project-board', kwargs={'project_id': self.project.pk}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        columns = {column['user_id']: column for column in response.data['columns']}
        self.assertEqual(set(columns), {'u1', 'u2'})
        self.assertEqual([t['id'] for t in columns['u1']['tasks']], [str(sooner.pk), str(later.pk)])
        self.assertEqual(columns['u2']['tasks'], [])
        self.assertEqual([t['id'] for t in response.data['unassigned']], [str(loose.pk)])
        self.assertIn('phase', response.data['unassigned'][0])


class SettingsTests(TestCase):
    """Tests for environment-driven settings."""

    def test_debug_flag_defaults_off(self):
        """An unset DJANGO_DEBUG leaves debug mode disabled."""
        environ = {key: value for key, value in os.environ.items() if key != 'DJANGO_DEBUG'}
        with mock.patch.dict(os.environ, environ, clear=True):
            self.assertFalse(_env_flag('DJANGO_DEBUG'))

    def test_debug_flag_accepts_truthy_values(self):
        """Common truthy spellings enable the flag."""
        for value in ('1', 'true', 'Yes', ' on '):
            with mock.patch.dict(os.environ, {'DJANGO_DEBUG': value}):
                self.assertTrue(_env_flag('DJANGO_DEBUG'))
