"""
Memory Manager - the agent-facing memory layer.

Ties together:
- Scoped recall (query router + decay re-ranking + access tracking)
- Store / forget / prune against the knowledge backend
- STM capture on every completed turn
- Background consolidation and reflection
- Workspace memory-file sync

State kept in memory and saved fire-and-forget to the state dir:
activation-index.json, stm-buffer.json, datasets.json, sync-index.json
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import MemoryConfig
from ..scopes.datasets import personal_private_dataset, resolve_recall_datasets, resolve_write_dataset
from ..scopes.knowledge_schema import KnowledgeEntryMetadata, format_knowledge_entry
from ..scopes.query_router import ScopedSearchResult, query_scoped_knowledge
from ..scopes.types import ScopeContext
from .activation import (
    ACTIVATION_INDEX_FILE,
    detect_memory_type,
    identify_prune_candidates,
    load_activation_index,
    record_access,
    register_memory,
    remove_entries,
    summarize_index,
)
from .consolidation import PromotionPipeline, PromotionResult, run_consolidation, run_reflection
from .decay import MEMORY_TYPES
from .persistence import BackgroundSaver, read_json
from .stm_buffer import (
    STM_BUFFER_FILE,
    append_to_stm_buffer,
    extract_conversation_excerpts,
    load_stm_buffer,
)
from .sync import (
    SYNC_INDEX_FILE,
    SyncResult,
    changed_files,
    collect_memory_files,
    load_sync_index,
    register_synced_files,
    sync_files,
)

logger = logging.getLogger(__name__)

DATASETS_FILE = "datasets.json"
FORGET_SEARCH_LIMIT = 5
FORGET_AUTO_DELETE_SCORE = 0.9


class NoDatasetIndexedError(Exception):
    """None of the scope's recall datasets has a backend id yet."""
    pass


@dataclass
class StoreResult:
    memory_id: str
    memory_type: str
    pinned: bool
    dataset_name: str


@dataclass
class ForgetResult:
    action: str  # "deleted", "candidates", "not_found"
    memory_id: Optional[str] = None
    candidates: list[ScopedSearchResult] = field(default_factory=list)


@dataclass
class PruneResult:
    candidates: list[str]
    removed: int = 0
    dry_run: bool = False


def load_dataset_registry(path: Path) -> dict[str, str]:
    data = read_json(path)
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, str) and v}


class MemoryManager:
    """
    Scoped agent memory.

    Args:
        config: MemoryConfig
        client: knowledge backend client (add, update, delete, search, cognify)
        caller: reasoning caller for consolidation/reflection
        saver: background saver (one is created if not given)
    """

    def __init__(self, config: MemoryConfig, client, caller,
                 saver: Optional[BackgroundSaver] = None):
        self.config = config
        self.client = client
        self.saver = saver or BackgroundSaver()

        state_dir = Path(config.state_dir)
        self.index_path = state_dir / ACTIVATION_INDEX_FILE
        self.buffer_path = state_dir / STM_BUFFER_FILE
        self.datasets_path = state_dir / DATASETS_FILE
        self.sync_index_path = state_dir / SYNC_INDEX_FILE

        self.activation_index = load_activation_index(self.index_path)
        self.stm_buffer = load_stm_buffer(self.buffer_path)
        self.dataset_ids = load_dataset_registry(self.datasets_path)
        self.sync_index = load_sync_index(self.sync_index_path)

        self.consolidation = PromotionPipeline(
            "consolidation", caller, client,
            timeout=config.consolidation_timeout,
            auto_cognify=config.auto_cognify,
            id_prefix="consolidated",
        )
        self.reflection = PromotionPipeline(
            "reflection", caller, client,
            timeout=config.reflection_timeout,
            auto_cognify=config.auto_cognify,
            allow_pinned=False,
        )
        self._background: set[asyncio.Task] = set()

        logger.info(f"Memory loaded: {len(self.activation_index)} tracked memories, "
                    f"{len(self.stm_buffer.entries)} STM entries, "
                    f"{len(self.dataset_ids)} known datasets")

    @property
    def owner_dataset(self) -> str:
        """Where consolidation, reflection and file sync write."""
        return personal_private_dataset(self.config.user_id)

    # ============== STATE ==============

    def _save_index(self):
        self.saver.schedule(self.index_path, self.activation_index.to_dict())

    def _save_buffer(self):
        self.saver.schedule(self.buffer_path, self.stm_buffer.to_dict())

    def _save_datasets(self):
        self.saver.schedule(self.datasets_path, dict(self.dataset_ids))

    def _save_sync_index(self):
        self.saver.schedule(self.sync_index_path, self.sync_index.to_dict())

    def _remember_dataset(self, dataset_name: str, dataset_id: Optional[str]):
        if dataset_id and self.dataset_ids.get(dataset_name) != dataset_id:
            self.dataset_ids[dataset_name] = dataset_id
            self._save_datasets()

    async def flush(self):
        """Wait for background jobs and pending saves."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.saver.flush()

    async def close(self):
        await self.flush()
        await self.client.close()

    # ============== RECALL ==============

    def _memory_type_of(self, memory_id: str) -> Optional[str]:
        entry = self.activation_index.get(memory_id)
        return entry.memory_type if entry else None

    async def recall(self, query: str, scope: ScopeContext,
                     limit: Optional[int] = None,
                     memory_type: Optional[str] = None) -> list[ScopedSearchResult]:
        """
        Search every dataset the scope can see, ranked by relevance and recency.

        Raises NoDatasetIndexedError when nothing has been written yet for
        any of the scope's datasets.
        """
        if not any(self.dataset_ids.get(name) for name in resolve_recall_datasets(scope)):
            raise NoDatasetIndexedError(f"No dataset indexed yet for {scope.tier} scope")

        max_results = limit or self.config.max_results
        routed = await query_scoped_knowledge(
            query=query,
            scope=scope,
            executor=self.client,
            dataset_id_map=self.dataset_ids,
            search_type=self.config.search_type,
            top_k=max_results * 2,
            max_results=max_results * 2 if memory_type else max_results,
            min_score=self.config.min_score,
            timeout=self.config.recall_timeout,
            activation_index=self.activation_index,
            type_weights=self.config.type_weights,
            decay_rate=self.config.decay_rate,
        )

        results = routed.results
        if memory_type:
            results = [r for r in results if self._memory_type_of(r.id) == memory_type]
        results = results[:max_results]

        for r in results:
            record_access(self.activation_index, r.id, self._memory_type_of(r.id))
        if results:
            self._save_index()

        logger.info(f"Recall for {scope.tier} scope: {len(results)} results "
                    f"from {routed.datasets_queried} datasets ({routed.total_before_filter} raw)")
        return results

    async def recall_context(self, query: str, scope: ScopeContext) -> Optional[str]:
        """
        Auto-recall before a turn: memories formatted for the prompt, or None.

        Failures are logged; a broken backend never blocks the turn.
        """
        if not self.config.auto_recall or not query.strip():
            return None
        try:
            results = await self.recall(query, scope)
        except NoDatasetIndexedError:
            return None
        except Exception as e:
            logger.warning(f"Auto-recall failed: {e}")
            return None
        if not results:
            return None

        lines = [
            f"- [{r.source_tier}] {r.text} ({r.combined_score * 100:.0f}%)"
            for r in results
        ]
        return "<relevant_memories>\n" + "\n".join(lines) + "\n</relevant_memories>"

    # ============== STORE / FORGET ==============

    async def store(self, text: str, scope: ScopeContext,
                    memory_type: Optional[str] = None,
                    pinned: Optional[bool] = None,
                    label: Optional[str] = None,
                    metadata=None) -> StoreResult:
        """
        Store a memory in the scope's write dataset.

        `metadata` (KnowledgeEntryMetadata or dict) turns the text into a
        structured knowledge entry. Backend errors propagate.
        """
        if memory_type is not None and memory_type not in MEMORY_TYPES:
            raise ValueError(f"Unknown memory type: {memory_type}")

        if metadata is not None:
            if not isinstance(metadata, KnowledgeEntryMetadata):
                metadata = KnowledgeEntryMetadata.from_dict(metadata)
            text = format_knowledge_entry(metadata, text)
            label = label or metadata.title

        resolved_type = memory_type or detect_memory_type(text)
        dataset_name = resolve_write_dataset(scope)

        response = await self.client.add(
            data=text,
            dataset_name=dataset_name,
            dataset_id=self.dataset_ids.get(dataset_name),
        )
        self._remember_dataset(dataset_name, response.dataset_id)

        memory_id = response.data_id or f"agent-{int(time.time() * 1000)}"
        entry = register_memory(
            self.activation_index, memory_id, resolved_type,
            pinned=pinned, label=label, dataset_name=dataset_name,
        )
        self._save_index()

        dataset_id = self.dataset_ids.get(dataset_name)
        if self.config.auto_cognify and dataset_id:
            try:
                await self.client.cognify([dataset_id])
            except Exception as e:
                logger.warning(f"Cognify after store failed: {e}")

        logger.info(f"Stored [{resolved_type}] memory {memory_id} in {dataset_name}")
        return StoreResult(memory_id=memory_id, memory_type=resolved_type,
                           pinned=entry.pinned, dataset_name=dataset_name)

    async def _delete_remote(self, memory_id: str, dataset_name: Optional[str]):
        """Best-effort backend delete; local cleanup never waits on it."""
        dataset_id = self.dataset_ids.get(dataset_name) if dataset_name else None
        if not dataset_id:
            return
        try:
            await self.client.delete(memory_id, dataset_id)
        except Exception as e:
            logger.warning(f"Backend delete of {memory_id} failed: {e}")

    async def forget(self, memory_id: Optional[str] = None,
                     query: Optional[str] = None,
                     scope: Optional[ScopeContext] = None) -> ForgetResult:
        """
        Forget by id, or by query.

        A query deletes only when there is exactly one match scoring above
        0.9; otherwise the matches come back as candidates.
        """
        if memory_id:
            entry = self.activation_index.get(memory_id)
            if entry and entry.dataset_name:
                dataset_name = entry.dataset_name
            elif scope:
                dataset_name = resolve_write_dataset(scope)
            else:
                dataset_name = self.owner_dataset
            await self._delete_remote(memory_id, dataset_name)
            remove_entries(self.activation_index, [memory_id])
            self._save_index()
            logger.info(f"Forgot memory {memory_id}")
            return ForgetResult(action="deleted", memory_id=memory_id)

        if not query:
            raise ValueError("Provide memory_id or query")

        scope = scope or ScopeContext(tier="personal", user_id=self.config.user_id)
        routed = await query_scoped_knowledge(
            query=query,
            scope=scope,
            executor=self.client,
            dataset_id_map=self.dataset_ids,
            search_type=self.config.search_type,
            top_k=FORGET_SEARCH_LIMIT,
            max_results=FORGET_SEARCH_LIMIT,
            min_score=0.0,
            timeout=self.config.recall_timeout,
        )
        matches = routed.results
        if not matches:
            return ForgetResult(action="not_found")

        if len(matches) == 1 and matches[0].score > FORGET_AUTO_DELETE_SCORE:
            match = matches[0]
            await self._delete_remote(match.id, match.source_dataset)
            remove_entries(self.activation_index, [match.id])
            self._save_index()
            logger.info(f"Forgot memory {match.id} (matched query)")
            return ForgetResult(action="deleted", memory_id=match.id)

        return ForgetResult(action="candidates", candidates=matches)

    # ============== PRUNING ==============

    async def prune(self, threshold: Optional[float] = None, dry_run: bool = False) -> PruneResult:
        """Remove memories whose decay score fell below the threshold."""
        threshold = self.config.prune_threshold if threshold is None else threshold
        candidates = identify_prune_candidates(
            self.activation_index, threshold, datetime.now(timezone.utc),
            self.config.type_weights, self.config.decay_rate,
        )
        if dry_run or not candidates:
            return PruneResult(candidates=candidates, dry_run=dry_run)

        for memory_id in candidates:
            entry = self.activation_index.get(memory_id)
            await self._delete_remote(memory_id, entry.dataset_name if entry else self.owner_dataset)

        remove_entries(self.activation_index, candidates)
        self._save_index()
        logger.info(f"Pruned {len(candidates)} dormant memories (threshold {threshold})")
        return PruneResult(candidates=candidates, removed=len(candidates))

    # ============== CONSOLIDATION / REFLECTION ==============

    async def consolidate(self, force: bool = False) -> Optional[PromotionResult]:
        """Promote STM to long-term memory once the turn threshold is reached."""
        if not force:
            if not self.config.consolidation_enabled:
                return None
            if self.stm_buffer.turns_since_consolidation < self.config.consolidation_threshold:
                return None

        dataset_name = self.owner_dataset
        result = await run_consolidation(
            self.consolidation, self.stm_buffer, self.activation_index,
            dataset_name, self.dataset_ids.get(dataset_name),
            self.config.stm_max_age_days,
        )
        if result is not None:
            self._remember_dataset(dataset_name, result.dataset_id)
            self._save_buffer()
            if result.stored:
                self._save_index()
        return result

    async def reflect(self, force: bool = False) -> Optional[PromotionResult]:
        """Generate meta-insights over the whole activation index."""
        if not force:
            if not self.config.reflection_enabled:
                return None
            if self.stm_buffer.turns_since_reflection < self.config.reflection_threshold:
                return None

        dataset_name = self.owner_dataset
        result = await run_reflection(
            self.reflection, self.stm_buffer, self.activation_index,
            dataset_name, self.dataset_ids.get(dataset_name),
            self.config.type_weights, self.config.decay_rate,
        )
        if result is not None:
            self._remember_dataset(dataset_name, result.dataset_id)
            self._save_buffer()
            if result.stored:
                self._save_index()
        return result

    async def _promote_in_background(self):
        try:
            await self.consolidate()
            await self.reflect()
        except Exception as e:
            logger.error(f"Background consolidation failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ============== FILE SYNC ==============

    async def sync_workspace(self, workspace_dir=None, only_changed: bool = False) -> SyncResult:
        """Sync workspace memory files into the owner's private dataset."""
        workspace_dir = workspace_dir or self.config.workspace_dir
        if workspace_dir is None:
            return SyncResult()

        files = collect_memory_files(workspace_dir)
        if only_changed:
            files = changed_files(files, self.sync_index)
        if not files:
            return SyncResult()

        dataset_name = self.owner_dataset
        result = await sync_files(
            self.client, files, self.sync_index, dataset_name,
            self.dataset_ids.get(dataset_name), self.config.auto_cognify,
        )
        self._remember_dataset(dataset_name, result.dataset_id)
        self._save_sync_index()

        if register_synced_files(self.activation_index, files, self.sync_index, dataset_name):
            self._save_index()

        logger.info(f"File sync: {result.added} added, {result.updated} updated, "
                    f"{result.skipped} skipped, {result.errors} errors")
        return result

    # ============== TURN HOOK ==============

    async def on_turn_end(self, messages: list, session_key: Optional[str] = None,
                          success: bool = True) -> Optional[asyncio.Task]:
        """
        Call after every agent turn.

        Syncs changed memory files, auto-prunes, captures the turn into STM
        and kicks off consolidation/reflection in the background. Returns the
        background task when one was started.
        """
        if not success:
            return None

        if self.config.auto_index:
            try:
                await self.sync_workspace(only_changed=True)
            except Exception as e:
                logger.warning(f"Post-turn sync failed: {e}")

        if self.config.auto_prune:
            try:
                await self.prune()
            except Exception as e:
                logger.warning(f"Auto-prune failed: {e}")

        if not (self.config.consolidation_enabled or self.config.reflection_enabled):
            return None

        user_excerpts, assistant_excerpts = extract_conversation_excerpts(messages)
        if not user_excerpts and not assistant_excerpts:
            return None

        append_to_stm_buffer(self.stm_buffer, user_excerpts, assistant_excerpts, session_key)
        self._save_buffer()

        consolidation_due = (
            self.config.consolidation_enabled
            and self.stm_buffer.turns_since_consolidation >= self.config.consolidation_threshold
        )
        reflection_due = (
            self.config.reflection_enabled
            and self.stm_buffer.turns_since_reflection >= self.config.reflection_threshold
        )
        if not (consolidation_due or reflection_due):
            return None
        if self.consolidation.in_flight or self.reflection.in_flight:
            logger.info("Promotion already in flight, skipping trigger")
            return None
        return self._spawn(self._promote_in_background())

    # ============== STATUS ==============

    def activation_status(self) -> dict:
        summary = summarize_index(
            self.activation_index, datetime.now(timezone.utc),
            self.config.type_weights, self.config.decay_rate,
        )
        summary["pinned"] = sum(1 for e in self.activation_index.entries.values() if e.pinned)
        return summary

    def stm_status(self) -> dict:
        buffer = self.stm_buffer
        return {
            "entries": len(buffer.entries),
            "unconsolidated": len(buffer.unconsolidated()),
            "turns_since_consolidation": buffer.turns_since_consolidation,
            "turns_since_reflection": buffer.turns_since_reflection,
            "consolidation_threshold": self.config.consolidation_threshold,
            "reflection_threshold": self.config.reflection_threshold,
            "last_consolidated_at": buffer.last_consolidated_at,
            "last_reflected_at": buffer.last_reflected_at,
        }
