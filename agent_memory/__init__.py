"""
Scoped agent memory

Decides what stored knowledge a session may see, ranks it by relevance and
freshness, and promotes conversation into durable knowledge over time.

    manager = build_memory_manager()
    scope = resolve_scope_context("telegram:dm:alice", manager.config.scopes)
    memories = await manager.recall("deploy steps", scope)
"""

from dotenv import load_dotenv

from .backend import KnowledgeClient, KnowledgeHttpError
from .config import MemoryConfig, configure_logging, load_memory_config
from .memory.memory_manager import MemoryManager, NoDatasetIndexedError
from .model_router import ModelRouter, ReasoningCaller
from .scheduler import MaintenanceScheduler
from .scopes.knowledge_schema import KnowledgeSchemaError
from .scopes.resolver import resolve_scope_context

__all__ = [
    "build_memory_manager",
    "KnowledgeClient", "KnowledgeHttpError",
    "MemoryConfig", "configure_logging", "load_memory_config",
    "MemoryManager", "NoDatasetIndexedError",
    "ModelRouter", "ReasoningCaller",
    "MaintenanceScheduler",
    "KnowledgeSchemaError",
    "resolve_scope_context",
]


def build_memory_manager(config_path: str = "config/memory.yaml",
                         models_path: str = "config/models.yaml",
                         config: MemoryConfig = None) -> MemoryManager:
    """Wire up a MemoryManager from config files and the environment."""
    load_dotenv()

    config = config or load_memory_config(config_path)
    client = KnowledgeClient(
        base_url=config.base_url,
        api_key=config.api_key,
        timeout=config.request_timeout,
    )
    caller = ReasoningCaller(ModelRouter(models_path))
    return MemoryManager(config, client, caller)
