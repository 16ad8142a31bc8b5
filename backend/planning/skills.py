"""
Effective Skill Resolver.

A member's effective level for a skill inside a project is a two-tier lookup:
the project-scoped override wins, then the member's global level, then 0.
Zero only means "no credit toward matching".
"""

from collections import ChainMap
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from .matching import MemberProfile


@dataclass(frozen=True)
class MemberSkillLevel:
    """Global baseline level of a member for one skill."""
    member_id: str
    skill_id: str
    level: int


@dataclass(frozen=True)
class ProjectSkillOverride:
    """Project-scoped level that takes precedence over the global one."""
    project_id: str
    member_id: str
    skill_id: str
    level: int


def _layered_levels(
    member_id: str,
    project_id: str,
    global_levels: Iterable[MemberSkillLevel],
    project_overrides: Iterable[ProjectSkillOverride]
) -> ChainMap:
    baseline = {
        row.skill_id: row.level
        for row in global_levels
        if row.member_id == member_id
    }
    overrides = {
        row.skill_id: row.level
        for row in project_overrides
        if row.member_id == member_id and row.project_id == project_id
    }
    return ChainMap(overrides, baseline)


def resolve_effective_levels(
    member_id: str,
    project_id: str,
    skill_ids: Iterable[str],
    global_levels: Iterable[MemberSkillLevel],
    project_overrides: Iterable[ProjectSkillOverride]
) -> Dict[str, int]:
    """
    Effective level per requested skill id for one member in one project.

    Rows for other members or projects are ignored, so callers may pass the
    rows they fetched for a whole project in one go.
    """
    levels = _layered_levels(member_id, project_id, global_levels, project_overrides)
    return {skill_id: levels.get(skill_id, 0) for skill_id in skill_ids}


def resolve_member_profiles(
    project_id: str,
    member_ids: Iterable[str],
    skill_ids: Iterable[str],
    global_levels: Iterable[MemberSkillLevel],
    project_overrides: Iterable[ProjectSkillOverride],
    load_by_member: Optional[Mapping[str, int]] = None
) -> List[MemberProfile]:
    """Build matcher input for every member, sorted by member id."""
    wanted = list(dict.fromkeys(skill_ids))
    global_rows = list(global_levels)
    override_rows = list(project_overrides)
    loads = load_by_member or {}

    profiles = [
        MemberProfile(
            user_id=member_id,
            skills=resolve_effective_levels(
                member_id, project_id, wanted, global_rows, override_rows
            ),
            current_load=loads.get(member_id, 0)
        )
        for member_id in dict.fromkeys(member_ids)
    ]
    return sorted(profiles, key=lambda profile: profile.user_id)
