"""
Scope Resolver - derive a ScopeContext for a session.

Priority:
1. Session override (set by /personal, /project, /team style commands)
2. Config default tier
3. "personal"

Overrides live in process memory only; they reset on restart.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .types import ProjectRef, ScopeConfig, ScopeContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopeOverride:
    tier: str
    project_id: Optional[str] = None


_overrides: dict[str, ScopeOverride] = {}


def get_scope_override(session_key: str) -> Optional[ScopeOverride]:
    return _overrides.get(session_key)


def set_scope_override(session_key: str, override: ScopeOverride):
    _overrides[session_key] = override
    logger.info(f"Scope override for {session_key}: {override.tier}")


def clear_scope_override(session_key: str):
    _overrides.pop(session_key, None)


def clear_all_scope_overrides():
    _overrides.clear()


def scope_override_count() -> int:
    return len(_overrides)


def is_group_session(chat_type: Optional[str] = None,
                     session_key: Optional[str] = None) -> bool:
    """Group/channel chats, by chat type or by session key shape."""
    if chat_type in ("group", "channel"):
        return True
    if session_key and (":group:" in session_key or ":channel:" in session_key):
        return True
    return False


def _resolve_user_id(session_key: str, explicit_user_id: Optional[str]) -> str:
    if explicit_user_id:
        return explicit_user_id
    # Session keys are colon-separated; the peer id comes last
    last = session_key.split(":")[-1]
    return last or "unknown"


def find_project_by_name(name: str, scope_config: Optional[ScopeConfig] = None) -> Optional[ProjectRef]:
    """Case-insensitive lookup by project id or display name."""
    if not scope_config or not name.strip():
        return None
    wanted = name.strip().lower()
    for project in scope_config.projects:
        if project.id.lower() == wanted or project.name.lower() == wanted:
            return project
    return None


def list_project_names(scope_config: Optional[ScopeConfig] = None) -> list[str]:
    if not scope_config:
        return []
    return [p.name or p.id for p in scope_config.projects]


def resolve_scope_context(session_key: str,
                          scope_config: Optional[ScopeConfig] = None,
                          chat_type: Optional[str] = None,
                          user_id: Optional[str] = None) -> ScopeContext:
    """Resolve the scope for a session. Group sessions are always flagged."""
    resolved_user = _resolve_user_id(session_key, user_id)
    group = is_group_session(chat_type, session_key)

    override = get_scope_override(session_key)
    if override:
        if override.tier != "project":
            return ScopeContext(tier=override.tier, user_id=resolved_user,
                                is_group_session=group)
        project = None
        if override.project_id and scope_config:
            project = next((p for p in scope_config.projects if p.id == override.project_id), None)
        if project:
            return ScopeContext(tier="project", user_id=resolved_user,
                                project=project, is_group_session=group)
        logger.warning(f"Project override {override.project_id!r} not configured, using default tier")

    default_tier = scope_config.default_tier if scope_config else "personal"
    return ScopeContext(tier=default_tier, user_id=resolved_user, is_group_session=group)
