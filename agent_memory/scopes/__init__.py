"""
Knowledge scopes

Three tiers, like an organisation:
- personal: one user's memory (private part never shown in groups)
- project: shared by a project's members
- team: canonical team knowledge
"""

from .datasets import classify_dataset, resolve_datasets, resolve_recall_datasets, resolve_write_dataset
from .privacy import filter_recall_for_privacy
from .query_router import ScopedQueryResult, ScopedSearchResult, query_scoped_knowledge
from .resolver import (
    ScopeOverride,
    clear_all_scope_overrides,
    clear_scope_override,
    find_project_by_name,
    get_scope_override,
    is_group_session,
    list_project_names,
    resolve_scope_context,
    set_scope_override,
)
from .types import ProjectRef, ScopeConfig, ScopeContext

__all__ = [
    "classify_dataset", "resolve_datasets", "resolve_recall_datasets", "resolve_write_dataset",
    "filter_recall_for_privacy",
    "ScopedQueryResult", "ScopedSearchResult", "query_scoped_knowledge",
    "ScopeOverride", "clear_all_scope_overrides", "clear_scope_override",
    "find_project_by_name", "get_scope_override", "is_group_session",
    "list_project_names", "resolve_scope_context", "set_scope_override",
    "ProjectRef", "ScopeConfig", "ScopeContext",
]
