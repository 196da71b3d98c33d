"""
Activation Index - per-memory access tracking.

The knowledge backend holds the text; this index holds when each memory was
created, when it was last recalled, how often, and what kind of memory it is.
Recall ranking and pruning both read from it.

Lifecycle:
- register_memory(): a memory was stored (consolidation, agent store, file sync)
- record_access(): a memory came back from a recall
- remove_entries(): a memory was pruned or forgotten

Persisted as JSON: {"version": 1, "entries": {memoryId: {...}}}
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .decay import (
    DECAY_TIERS,
    MEMORY_TYPES,
    classify_decay_tier,
    compute_decay_score,
    parse_timestamp,
)
from .persistence import read_json, write_json

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
ACTIVATION_INDEX_FILE = "activation-index.json"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ActivationEntry:
    """Access metadata for one backend memory."""
    memory_id: str
    memory_type: str  # episodic, semantic, procedural, vault
    created_at: str
    last_accessed_at: str
    access_count: int = 0
    pinned: bool = False
    label: Optional[str] = None
    dataset_name: Optional[str] = None  # provenance

    def to_dict(self) -> dict:
        data = {
            "memoryId": self.memory_id,
            "memoryType": self.memory_type,
            "createdAt": self.created_at,
            "lastAccessedAt": self.last_accessed_at,
            "accessCount": self.access_count,
            "pinned": self.pinned,
        }
        if self.label is not None:
            data["label"] = self.label
        if self.dataset_name is not None:
            data["datasetName"] = self.dataset_name
        return data

    @classmethod
    def from_dict(cls, memory_id: str, data: dict) -> Optional["ActivationEntry"]:
        """Build an entry from persisted JSON. Returns None if unusable."""
        if not isinstance(data, dict):
            return None

        memory_type = data.get("memoryType")
        if memory_type not in MEMORY_TYPES:
            memory_type = "semantic"

        now = utc_now_iso()
        created_at = _valid_timestamp(data.get("createdAt")) or now
        last_accessed = _valid_timestamp(data.get("lastAccessedAt")) or created_at

        access_count = data.get("accessCount", 0)
        if not isinstance(access_count, int) or isinstance(access_count, bool) or access_count < 0:
            access_count = 0

        label = data.get("label")
        dataset_name = data.get("datasetName")
        return cls(
            memory_id=memory_id,
            memory_type=memory_type,
            created_at=created_at,
            last_accessed_at=last_accessed,
            access_count=access_count,
            pinned=data.get("pinned") is True,
            label=label if isinstance(label, str) else None,
            dataset_name=dataset_name if isinstance(dataset_name, str) else None,
        )


def _valid_timestamp(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    try:
        parse_timestamp(value)
    except ValueError:
        return None
    return value


@dataclass
class ActivationIndex:
    """memoryId -> ActivationEntry. Unique keys, no ordering guarantee."""
    entries: dict[str, ActivationEntry] = field(default_factory=dict)
    version: int = INDEX_VERSION

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self.entries

    def get(self, memory_id: str) -> Optional[ActivationEntry]:
        return self.entries.get(memory_id)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "entries": {mid: e.to_dict() for mid, e in self.entries.items()},
        }

    @classmethod
    def from_dict(cls, data) -> "ActivationIndex":
        """Normalize a persisted index. Malformed shapes become an empty index."""
        index = cls()
        if not isinstance(data, dict):
            return index
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, dict):
            return index
        for memory_id, raw in raw_entries.items():
            entry = ActivationEntry.from_dict(str(memory_id), raw)
            if entry is not None:
                index.entries[entry.memory_id] = entry
            else:
                logger.warning(f"Dropping malformed activation entry: {memory_id}")
        return index


# ============== PERSISTENCE ==============

def load_activation_index(path: Path) -> ActivationIndex:
    """Load the index from disk. Missing file -> empty index."""
    return ActivationIndex.from_dict(read_json(path))


def save_activation_index(index: ActivationIndex, path: Path):
    write_json(path, index.to_dict())


# ============== ACTIVATION TRACKING ==============

def record_access(index: ActivationIndex, memory_id: str,
                  memory_type: Optional[str] = None):
    """Record a recall hit. Creates the entry (count=1) if it's unknown."""
    now = utc_now_iso()
    existing = index.entries.get(memory_id)
    if existing:
        existing.last_accessed_at = now
        existing.access_count += 1
        return

    index.entries[memory_id] = ActivationEntry(
        memory_id=memory_id,
        memory_type=memory_type or "semantic",
        created_at=now,
        last_accessed_at=now,
        access_count=1,
        pinned=False,
    )


def register_memory(index: ActivationIndex, memory_id: str, memory_type: str,
                    pinned: Optional[bool] = None, label: Optional[str] = None,
                    dataset_name: Optional[str] = None) -> ActivationEntry:
    """Register a freshly stored memory. Overwrites any previous entry."""
    now = utc_now_iso()
    entry = ActivationEntry(
        memory_id=memory_id,
        memory_type=memory_type,
        created_at=now,
        last_accessed_at=now,
        access_count=0,
        pinned=(memory_type == "vault") if pinned is None else pinned,
        label=label,
        dataset_name=dataset_name,
    )
    index.entries[memory_id] = entry
    return entry


def remove_entries(index: ActivationIndex, memory_ids):
    """Hard delete. Unknown ids are ignored."""
    for memory_id in memory_ids:
        index.entries.pop(memory_id, None)


# ============== TYPE DETECTION ==============

PROCEDURAL_PATTERN = re.compile(
    r"\b(step \d|run |execute |install |how to |workflow|procedure|recipe|command|script)\b",
    re.IGNORECASE,
)
EPISODIC_PATTERN = re.compile(
    r"\b(happened|occurred|decided|meeting|yesterday|today|on \d{4}|event|session|discussed|agreed)\b",
    re.IGNORECASE,
)


def detect_memory_type(text: str, metadata: Optional[dict] = None) -> str:
    """
    Guess the memory type from its text.

    - vault: metadata flags pinned or vault
    - procedural: steps, commands, workflows, instructions
    - episodic: dates, events, decisions, meetings
    - semantic: everything else (facts, concepts)
    """
    if metadata and (metadata.get("pinned") is True or metadata.get("vault") is True):
        return "vault"
    if PROCEDURAL_PATTERN.search(text):
        return "procedural"
    if EPISODIC_PATTERN.search(text):
        return "episodic"
    return "semantic"


# ============== PRUNING & STATS ==============

def identify_prune_candidates(index: ActivationIndex, prune_threshold: float,
                              now: datetime, type_weights: Optional[dict] = None,
                              decay_rate: Optional[float] = None) -> list[str]:
    """Ids scoring below the threshold. Pinned and vault entries are never candidates."""
    candidates = []
    for memory_id, entry in index.entries.items():
        if entry.pinned or entry.memory_type == "vault":
            continue
        score = compute_decay_score(entry, now, type_weights, decay_rate)
        if score < prune_threshold:
            candidates.append(memory_id)
    return candidates


def summarize_index(index: ActivationIndex, now: datetime,
                    type_weights: Optional[dict] = None,
                    decay_rate: Optional[float] = None) -> dict:
    """Type and tier histograms over the whole index."""
    types = {t: 0 for t in MEMORY_TYPES}
    tiers = {t: 0 for t in DECAY_TIERS}
    for entry in index.entries.values():
        types[entry.memory_type] = types.get(entry.memory_type, 0) + 1
        tier = classify_decay_tier(compute_decay_score(entry, now, type_weights, decay_rate))
        tiers[tier] += 1
    return {"total": len(index.entries), "by_type": types, "by_tier": tiers}


def recent_labeled_entries(index: ActivationIndex, limit: int = 20) -> list[ActivationEntry]:
    """Most recently accessed entries that carry a label."""
    labeled = [e for e in index.entries.values() if e.label]
    labeled.sort(key=lambda e: parse_timestamp(e.last_accessed_at).timestamp(), reverse=True)
    return labeled[:limit]
