"""
Privacy filter - post-retrieval disclosure policy.

Second line of defense after resolve_recall_datasets(). If a result slips
through dataset selection, this catches it:
- Direct sessions: everything passes (dataset selection already applied)
- Group sessions: personal private content is never shown; results whose
  source dataset can't be determined are dropped
"""

import logging
from typing import Optional

from .datasets import classify_dataset
from .types import ScopeContext

logger = logging.getLogger(__name__)


def filter_recall_for_privacy(results: list, scope: ScopeContext,
                              source_datasets: Optional[dict[str, str]] = None) -> list:
    """
    Drop results the current session must not see.

    Args:
        results: search results; an explicit `source_dataset` attribute wins
        scope: current session scope
        source_datasets: result id -> dataset name, for unannotated results
    """
    if not scope.is_group_session:
        return results

    kept = []
    for result in results:
        dataset_name = getattr(result, "source_dataset", None)
        if not dataset_name and source_datasets:
            dataset_name = source_datasets.get(result.id)

        if not dataset_name:
            continue

        if not classify_dataset(dataset_name, scope.user_id).is_private:
            kept.append(result)

    dropped = len(results) - len(kept)
    if dropped:
        logger.debug(f"Privacy filter dropped {dropped} result(s) in group session")
    return kept
