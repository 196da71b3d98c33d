"""
Consolidation & Reflection - promote short-term memory to long-term memory.

Both jobs share one pipeline:
    prompt -> reasoning call -> lenient JSON parse -> backend add (per item)
    -> register in activation index -> optional cognify

Consolidation feeds it the unconsolidated STM entries; reflection feeds it a
summary of the whole activation index. The pipeline carries an in-flight
guard: a trigger that arrives while a run is going is skipped, not queued.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .activation import (
    ActivationIndex,
    detect_memory_type,
    recent_labeled_entries,
    register_memory,
    summarize_index,
)
from .decay import MEMORY_TYPES
from .stm_buffer import StmBuffer, StmEntry, evict_old_entries, mark_consolidated

logger = logging.getLogger(__name__)

# One lone entry with fewer excerpts than this isn't worth a model call
MIN_SINGLE_ENTRY_EXCERPTS = 3
REFLECTION_LABEL_LIMIT = 20

CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


@dataclass
class ConsolidatedMemory:
    text: str
    memory_type: str
    label: Optional[str] = None
    pinned: Optional[bool] = None


@dataclass
class PromotionResult:
    stored: int = 0
    dataset_id: Optional[str] = None
    reasoning_failed: bool = False  # no text came back from the model
    skipped: bool = False


# ============== PROMPTS ==============

def build_consolidation_prompt(entries: list[StmEntry]) -> str:
    sections = []
    for entry in entries:
        user_text = "User: " + "\n".join(entry.user_excerpts) if entry.user_excerpts else ""
        assistant_text = (
            "Assistant: " + "\n".join(entry.assistant_excerpts) if entry.assistant_excerpts else ""
        )
        sections.append(f"### Session at {entry.timestamp}\n{user_text}\n{assistant_text}")
    conversations = "\n\n".join(sections)

    return f"""You are a memory consolidation system. Review these conversation excerpts from recent agent sessions and extract durable knowledge.

## Recent Conversations

{conversations}

## Instructions

Extract key information worth remembering long-term. For each piece of knowledge, classify it:
- "semantic": Facts, concepts, preferences, technical knowledge
- "episodic": Decisions made, events that occurred, meeting outcomes
- "procedural": Steps, commands, workflows, how-to instructions
- "vault": Critical information that should never be forgotten (use sparingly)

Deduplicate: if multiple conversations cover the same topic, merge into one consolidated memory.
Skip trivial greetings, small talk, and information that's only relevant in the moment.

Return a JSON array (no markdown fences):
[
  {{ "text": "...", "memoryType": "semantic|episodic|procedural|vault", "label": "short label" }}
]

If nothing is worth consolidating, return an empty array: []"""


def build_reflection_prompt(index: ActivationIndex,
                            type_weights: Optional[dict] = None,
                            decay_rate: Optional[float] = None,
                            now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    summary = summarize_index(index, now, type_weights, decay_rate)
    types = summary["by_type"]
    tiers = summary["by_tier"]

    labels = "\n".join(
        f"- [{e.memory_type}] {e.label}"
        for e in recent_labeled_entries(index, REFLECTION_LABEL_LIMIT)
    )

    return f"""You are a memory reflection system. Review this agent's memory landscape and generate meta-insights.

## Memory Landscape

Total memories: {summary["total"]}
By type: episodic={types["episodic"]}, semantic={types["semantic"]}, procedural={types["procedural"]}, vault={types["vault"]}
By tier: active={tiers["active"]}, fading={tiers["fading"]}, dormant={tiers["dormant"]}, archived={tiers["archived"]}

## Recent Memory Labels
{labels or "(none)"}

## Instructions

Analyze the memory landscape and generate insights:
1. Identify patterns across memories (recurring topics, user preferences)
2. Flag potential contradictions (conflicting information)
3. Note gaps (areas where more knowledge would be helpful)
4. Suggest meta-insights that connect disparate memories

Return a JSON array (no markdown fences):
[
  {{ "text": "...", "memoryType": "semantic", "label": "short label" }}
]

If no meaningful insights emerge, return an empty array: []"""


# ============== PARSING ==============

def strip_code_fences(text: str) -> str:
    trimmed = text.strip()
    match = CODE_FENCE_PATTERN.match(trimmed)
    if match:
        return (match.group(1) or "").strip()
    return trimmed


def parse_consolidated_memories(raw: str) -> list[ConsolidatedMemory]:
    """
    Parse model output into memories. Never raises.

    Malformed JSON or a non-array gives []. Items without non-empty text are
    dropped; an unknown memoryType is re-detected from the text.
    """
    try:
        parsed = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError):
        logger.warning("Reasoning output was not valid JSON")
        return []
    if not isinstance(parsed, list):
        return []

    memories = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        text = item.get("text")
        if not isinstance(text, str) or not text:
            continue
        memory_type = item.get("memoryType")
        if memory_type not in MEMORY_TYPES:
            memory_type = detect_memory_type(text)
        label = item.get("label")
        memories.append(ConsolidatedMemory(
            text=text,
            memory_type=memory_type,
            label=label if isinstance(label, str) else None,
            pinned=True if item.get("pinned") is True else None,
        ))
    return memories


# ============== PIPELINE ==============

class PromotionPipeline:
    """
    Reasoning call -> backend writes -> activation index.

    Args:
        name: "consolidation" or "reflection" (also the fallback id prefix)
        caller: object with `async call(prompt, timeout, task_type) -> str | None`
        client: knowledge backend client (add, cognify)
        timeout: reasoning call timeout in seconds
        allow_pinned: honour `pinned` flags in model output (vault memories stay pinned either way)
    """

    def __init__(self, name: str, caller, client, timeout: float,
                 auto_cognify: bool = True, allow_pinned: bool = True,
                 id_prefix: Optional[str] = None):
        self.name = name
        self.caller = caller
        self.client = client
        self.timeout = timeout
        self.auto_cognify = auto_cognify
        self.allow_pinned = allow_pinned
        self.id_prefix = id_prefix or name
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run(self, prompt: str, activation_index: ActivationIndex,
                  dataset_name: str, dataset_id: Optional[str] = None) -> Optional[PromotionResult]:
        """Run once. Returns None when another run is already in flight."""
        if self._in_flight:
            logger.info(f"{self.name} already running, skipping trigger")
            return None

        self._in_flight = True
        try:
            return await self._run(prompt, activation_index, dataset_name, dataset_id)
        finally:
            self._in_flight = False

    async def _run(self, prompt, activation_index, dataset_name, dataset_id) -> PromotionResult:
        raw = await self.caller.call(prompt, self.timeout, self.name)
        if not raw:
            logger.warning(f"{self.name}: reasoning call returned nothing")
            return PromotionResult(dataset_id=dataset_id, reasoning_failed=True)

        memories = parse_consolidated_memories(raw)
        result = PromotionResult(dataset_id=dataset_id)
        if not memories:
            logger.info(f"{self.name}: nothing worth storing")
            return result

        for memory in memories:
            try:
                response = await self.client.add(
                    data=memory.text,
                    dataset_name=dataset_name,
                    dataset_id=result.dataset_id,
                )
            except Exception as e:
                logger.warning(f"{self.name}: failed to store memory: {e}")
                continue

            if response.dataset_id:
                result.dataset_id = response.dataset_id

            memory_id = response.data_id or f"{self.id_prefix}-{int(time.time() * 1000)}-{result.stored}"
            register_memory(
                activation_index, memory_id, memory.memory_type,
                pinned=memory.pinned if self.allow_pinned else None,
                label=memory.label,
                dataset_name=dataset_name,
            )
            result.stored += 1

        if self.auto_cognify and result.dataset_id and result.stored:
            try:
                await self.client.cognify([result.dataset_id])
            except Exception as e:
                logger.warning(f"{self.name}: cognify failed: {e}")

        logger.info(f"{self.name}: stored {result.stored}/{len(memories)} memories in {dataset_name}")
        return result


# ============== JOBS ==============

def should_skip_consolidation(entries: list[StmEntry]) -> bool:
    if not entries:
        return True
    total = sum(e.excerpt_count for e in entries)
    return len(entries) == 1 and total < MIN_SINGLE_ENTRY_EXCERPTS


async def run_consolidation(pipeline: PromotionPipeline, buffer: StmBuffer,
                            activation_index: ActivationIndex, dataset_name: str,
                            dataset_id: Optional[str] = None,
                            stm_max_age_days: float = 7) -> Optional[PromotionResult]:
    """
    Consolidate all unconsolidated STM entries.

    A failed reasoning call leaves the entries unconsolidated and restarts
    the turn counter, so the next attempt waits another threshold window.
    Any parsed answer (even an empty one) marks the batch consolidated.
    """
    entries = buffer.unconsolidated()
    if should_skip_consolidation(entries):
        return PromotionResult(dataset_id=dataset_id, skipped=True)

    result = await pipeline.run(
        build_consolidation_prompt(entries), activation_index, dataset_name, dataset_id
    )
    if result is None:
        return None

    if result.reasoning_failed:
        buffer.turns_since_consolidation = 0
        return result

    mark_consolidated(buffer, [e.id for e in entries])
    evict_old_entries(buffer, stm_max_age_days)
    return result


async def run_reflection(pipeline: PromotionPipeline, buffer: StmBuffer,
                         activation_index: ActivationIndex, dataset_name: str,
                         dataset_id: Optional[str] = None,
                         type_weights: Optional[dict] = None,
                         decay_rate: Optional[float] = None) -> Optional[PromotionResult]:
    """Reflect over the activation index. Counter and timestamp always reset."""
    prompt = build_reflection_prompt(activation_index, type_weights, decay_rate)
    result = await pipeline.run(prompt, activation_index, dataset_name, dataset_id)
    if result is None:
        return None

    buffer.last_reflected_at = datetime.now(timezone.utc).isoformat()
    buffer.turns_since_reflection = 0
    return result
