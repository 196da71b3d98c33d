"""
Decay Scoring - how fresh and important a memory still is.

Score = e^(-lambda * days_since_access) * log2(access_count + 1) * type_weight

- Repeated recall raises the score logarithmically (a burst can't dominate)
- Time since last recall lowers it exponentially (smooth, bounded recency)
- Pinned and vault memories never fade (score is infinite)

Scores map onto four tiers:
- active:   >= 0.5
- fading:   >= 0.2
- dormant:  >= 0.05
- archived: everything below
"""

import math
from datetime import datetime, timezone
from typing import Optional

MEMORY_TYPES = ("episodic", "semantic", "procedural", "vault")
DECAY_TIERS = ("active", "fading", "dormant", "archived")

DEFAULT_TYPE_WEIGHTS = {
    "episodic": 0.8,
    "semantic": 1.2,
    "procedural": 1.0,
    "vault": math.inf,
}

DEFAULT_DECAY_RATE = 0.03

# Tier floors, highest first
TIER_THRESHOLDS = (
    ("active", 0.5),
    ("fading", 0.2),
    ("dormant", 0.05),
)

SECONDS_PER_DAY = 86_400


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing 'Z'."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def days_between(earlier: str, now: datetime) -> float:
    """Days elapsed from an ISO timestamp to `now` (negative if in the future)."""
    then = as_utc(parse_timestamp(earlier))
    return (as_utc(now) - then).total_seconds() / SECONDS_PER_DAY


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def merge_type_weights(type_weights: Optional[dict] = None) -> dict[str, float]:
    """Overlay caller weights onto the defaults."""
    weights = dict(DEFAULT_TYPE_WEIGHTS)
    if type_weights:
        weights.update(type_weights)
    return weights


def compute_decay_score(entry, now: datetime,
                        type_weights: Optional[dict] = None,
                        decay_rate: Optional[float] = None) -> float:
    """
    Compute the decay score for an activation entry.

    Returns math.inf for pinned or vault entries (immune to decay).
    """
    if entry.pinned or entry.memory_type == "vault":
        return math.inf

    weights = merge_type_weights(type_weights)
    rate = DEFAULT_DECAY_RATE if decay_rate is None else decay_rate
    days = max(0.0, days_between(entry.last_accessed_at, now))

    return (
        math.exp(-rate * days)
        * math.log2(entry.access_count + 1)
        * weights.get(entry.memory_type, 1.0)
    )


def classify_decay_tier(score: float) -> str:
    """Bucket a decay score into active / fading / dormant / archived."""
    if not math.isfinite(score):
        return "active"
    for tier, floor in TIER_THRESHOLDS:
        if score >= floor:
            return tier
    return "archived"
