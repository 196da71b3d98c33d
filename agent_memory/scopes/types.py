"""
Scope types - the three knowledge tiers.

Every recall, write and privacy check happens inside one scope:
- personal: one user's own memory
- project:  knowledge shared by a project's members
- team:     canonical team knowledge (writes are staged for review)
"""

from dataclasses import dataclass, field
from typing import Optional

SCOPE_TIERS = ("personal", "project", "team")


@dataclass(frozen=True)
class ProjectRef:
    """A configured project."""
    id: str  # slug, e.g. "webapp"
    name: str
    members: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScopeContext:
    """Resolved scope for the current session."""
    tier: str
    user_id: str
    project: Optional[ProjectRef] = None
    is_group_session: bool = False

    def __post_init__(self):
        if self.tier not in SCOPE_TIERS:
            raise ValueError(f"Unknown scope tier: {self.tier}")


@dataclass
class ScopeConfig:
    """Scope section of the agent config."""
    default_tier: str = "personal"
    projects: list[ProjectRef] = field(default_factory=list)
    team_name: Optional[str] = None
    governance: bool = False  # proposed -> shared review flow

    @classmethod
    def from_dict(cls, data) -> "ScopeConfig":
        if not isinstance(data, dict):
            return cls()

        default_tier = data.get("default_tier", "personal")
        if default_tier not in SCOPE_TIERS:
            default_tier = "personal"

        projects = []
        for raw in data.get("projects") or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            members = raw.get("members") or []
            projects.append(ProjectRef(
                id=str(raw["id"]),
                name=str(raw.get("name") or raw["id"]),
                members=tuple(str(m) for m in members),
            ))

        team = data.get("team") if isinstance(data.get("team"), dict) else {}
        return cls(
            default_tier=default_tier,
            projects=projects,
            team_name=team.get("name"),
            governance=bool(team.get("governance", False)),
        )
