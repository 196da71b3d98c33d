"""
Scope-Aware Query Router

Fans a query out to every dataset the scope may read, one concurrent search
per dataset, then:
1. Merges and de-duplicates by text (highest score wins)
2. Annotates each result with its source dataset and tier
3. Applies the privacy filter and the min score
4. Re-ranks by score blended with the activation decay score
5. Truncates to max_results

A dataset that errors or times out contributes nothing; the others still
answer.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Protocol

from ..backend import SearchResult
from ..memory.activation import ActivationIndex
from ..memory.decay import compute_decay_score
from .datasets import classify_dataset, resolve_recall_datasets
from .privacy import filter_recall_for_privacy
from .types import ScopeContext

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 30.0
UNTRACKED_DECAY = 0.5


class SearchExecutor(Protocol):
    async def search(self, query_text: str, search_type: str,
                     dataset_ids: list[str], top_k: int) -> list[SearchResult]: ...


@dataclass
class ScopedSearchResult:
    id: str
    text: str
    score: float
    source_dataset: str
    source_tier: str
    metadata: dict = field(default_factory=dict)
    combined_score: float = 0.0


@dataclass
class ScopedQueryResult:
    results: list[ScopedSearchResult]
    datasets_queried: int
    total_before_filter: int


def combine_scores(raw_score: float, decay: Optional[float]) -> float:
    """raw * (0.6 + 0.4 * min(decay, 1)). Untracked -> 0.5, immune -> 1."""
    if decay is None:
        decay = UNTRACKED_DECAY
    elif not math.isfinite(decay):
        decay = 1.0
    return raw_score * (0.6 + 0.4 * min(decay, 1.0))


async def _search_dataset(executor: SearchExecutor, query: str, search_type: str,
                          name: str, dataset_id: str, top_k: int,
                          per_dataset_timeout: Optional[float]) -> list[tuple[str, SearchResult]]:
    try:
        call = executor.search(
            query_text=query, search_type=search_type,
            dataset_ids=[dataset_id], top_k=top_k,
        )
        if per_dataset_timeout is not None:
            results = await asyncio.wait_for(call, per_dataset_timeout)
        else:
            results = await call
    except asyncio.TimeoutError:
        logger.warning(f"Search of {name} timed out")
        return []
    except Exception as e:
        logger.warning(f"Search of {name} failed: {e}")
        return []
    return [(name, r) for r in results]


async def query_scoped_knowledge(query: str, scope: ScopeContext,
                                 executor: SearchExecutor,
                                 dataset_id_map: dict[str, str],
                                 search_type: str, top_k: int,
                                 max_results: int, min_score: float,
                                 timeout: float = DEFAULT_QUERY_TIMEOUT,
                                 per_dataset_timeout: Optional[float] = None,
                                 activation_index: Optional[ActivationIndex] = None,
                                 type_weights: Optional[dict] = None,
                                 decay_rate: Optional[float] = None) -> ScopedQueryResult:
    """Run a scoped query across all recall datasets the scope can see."""
    queries = [
        (name, dataset_id_map[name])
        for name in resolve_recall_datasets(scope)
        if dataset_id_map.get(name)
    ]
    if not queries:
        return ScopedQueryResult(results=[], datasets_queried=0, total_before_filter=0)

    tasks = [
        asyncio.create_task(_search_dataset(
            executor, query, search_type, name, dataset_id, top_k, per_dataset_timeout
        ))
        for name, dataset_id in queries
    ]
    done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        logger.warning(f"Scoped query timed out after {timeout}s, "
                       f"{len(pending)} of {len(tasks)} dataset searches cancelled")
        await asyncio.gather(*pending, return_exceptions=True)

    # Keep dataset order stable regardless of completion order
    merged = []
    for task in tasks:
        if task in done:
            merged.extend(task.result())
    total_before_filter = len(merged)

    best: dict[str, tuple[str, SearchResult]] = {}
    for name, result in merged:
        current = best.get(result.text)
        if current is None or result.score > current[1].score:
            best[result.text] = (name, result)

    annotated = [
        ScopedSearchResult(
            id=result.id,
            text=result.text,
            score=result.score,
            metadata=result.metadata,
            source_dataset=name,
            source_tier=classify_dataset(name, scope.user_id).tier,
        )
        for name, result in best.values()
    ]

    visible = filter_recall_for_privacy(annotated, scope)
    visible = [r for r in visible if r.score >= min_score]

    now = datetime.now(timezone.utc)
    for result in visible:
        decay = None
        if activation_index is not None:
            entry = activation_index.get(result.id)
            if entry is not None:
                decay = compute_decay_score(entry, now, type_weights, decay_rate)
        result.combined_score = combine_scores(result.score, decay)

    visible.sort(key=lambda r: r.combined_score, reverse=True)

    return ScopedQueryResult(
        results=visible[:max_results],
        datasets_queried=len(queries),
        total_before_filter=total_before_filter,
    )
