"""
Scoped Dataset Resolution - which backend datasets a scope may read and write.

Naming convention:
    {userId}-private    personal memory (conversation summaries, private notes)
    {userId}-profile    team-visible personal info (preferences, skills)
    project-{projectId} project knowledge
    team-shared         canonical team knowledge
    team-proposed       staging area for team knowledge

Privacy gate: {userId}-private is only ever queried in direct (1:1) sessions.
This runs before any search is issued; privacy.py is the second line.
"""

from dataclasses import dataclass
from typing import Optional

from .types import ScopeContext

TEAM_SHARED_DATASET = "team-shared"
TEAM_PROPOSED_DATASET = "team-proposed"
PROJECT_PREFIX = "project-"


@dataclass(frozen=True)
class ResolvedDatasets:
    personal_private: str
    personal_profile: str
    team_shared: str
    team_proposed: str
    project: Optional[str] = None


@dataclass(frozen=True)
class DatasetSource:
    """Which tier a dataset belongs to and whether it's private."""
    dataset_name: str
    tier: str
    is_private: bool


def personal_private_dataset(user_id: str) -> str:
    return f"{user_id}-private"


def personal_profile_dataset(user_id: str) -> str:
    return f"{user_id}-profile"


def project_dataset(project_id: str) -> str:
    return f"{PROJECT_PREFIX}{project_id}"


def resolve_datasets(scope: ScopeContext) -> ResolvedDatasets:
    """All dataset names for a scope."""
    return ResolvedDatasets(
        personal_private=personal_private_dataset(scope.user_id),
        personal_profile=personal_profile_dataset(scope.user_id),
        project=project_dataset(scope.project.id) if scope.project else None,
        team_shared=TEAM_SHARED_DATASET,
        team_proposed=TEAM_PROPOSED_DATASET,
    )


def resolve_recall_datasets(scope: ScopeContext) -> list[str]:
    """
    Datasets to query for recall.

    | Session | Tier     | Datasets                               |
    |---------|----------|----------------------------------------|
    | direct  | personal | private + profile                      |
    | direct  | project  | private + profile + project + team-shared |
    | direct  | team     | private + profile + team-shared        |
    | group   | personal | profile                                |
    | group   | project  | profile + project + team-shared        |
    | group   | team     | profile + team-shared                  |
    """
    datasets = resolve_datasets(scope)
    result = []

    if not scope.is_group_session:
        result.append(datasets.personal_private)

    result.append(datasets.personal_profile)

    if scope.tier == "project" and datasets.project:
        result.append(datasets.project)

    if scope.tier in ("project", "team"):
        result.append(datasets.team_shared)

    return result


def resolve_write_dataset(scope: ScopeContext) -> str:
    """Where new knowledge goes. Team writes are staged, never shared directly."""
    datasets = resolve_datasets(scope)
    if scope.tier == "project":
        return datasets.project or datasets.personal_private
    if scope.tier == "team":
        return datasets.team_proposed
    return datasets.personal_private


def classify_dataset(dataset_name: str, user_id: str) -> DatasetSource:
    """Classify a dataset name. Anything unrecognized is personal and private."""
    if dataset_name == personal_private_dataset(user_id):
        return DatasetSource(dataset_name, "personal", True)
    if dataset_name == personal_profile_dataset(user_id):
        return DatasetSource(dataset_name, "personal", False)
    if dataset_name.startswith(PROJECT_PREFIX):
        return DatasetSource(dataset_name, "project", False)
    if dataset_name in (TEAM_SHARED_DATASET, TEAM_PROPOSED_DATASET):
        return DatasetSource(dataset_name, "team", False)
    return DatasetSource(dataset_name, "personal", True)
