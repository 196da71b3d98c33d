"""
Agent memory internals

- Decay: how fast an unused memory fades, by type
- ActivationIndex: access tracking for every stored memory
- StmBuffer: recent turns waiting for consolidation
- PromotionPipeline: STM -> long-term memory, and reflection

MemoryManager (memory_manager.py) orchestrates all of it.
"""

from .activation import ActivationEntry, ActivationIndex, detect_memory_type, record_access, register_memory
from .consolidation import PromotionPipeline, PromotionResult, run_consolidation, run_reflection
from .decay import classify_decay_tier, compute_decay_score
from .persistence import BackgroundSaver
from .stm_buffer import StmBuffer, StmEntry

__all__ = [
    "ActivationEntry", "ActivationIndex",
    "detect_memory_type", "record_access", "register_memory",
    "PromotionPipeline", "PromotionResult", "run_consolidation", "run_reflection",
    "classify_decay_tier", "compute_decay_score",
    "BackgroundSaver",
    "StmBuffer", "StmEntry",
]
