"""
STM Buffer - short-term memory awaiting consolidation.

Every completed agent turn drops its user/assistant excerpts in here. The
consolidation pipeline later promotes them to long-term memory and marks
them consolidated.

Eviction rule: consolidated entries older than the max age go away;
unconsolidated entries stay no matter how old they are.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .decay import as_utc, parse_timestamp
from .persistence import read_json, write_json

logger = logging.getLogger(__name__)

BUFFER_VERSION = 1
STM_BUFFER_FILE = "stm-buffer.json"

MIN_EXCERPT_LENGTH = 5


@dataclass
class StmEntry:
    """One turn's worth of conversation excerpts."""
    id: str
    timestamp: str
    user_excerpts: list[str] = field(default_factory=list)
    assistant_excerpts: list[str] = field(default_factory=list)
    session_key: Optional[str] = None
    consolidated: bool = False

    @property
    def excerpt_count(self) -> int:
        return len(self.user_excerpts) + len(self.assistant_excerpts)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": self.timestamp,
            "userExcerpts": list(self.user_excerpts),
            "assistantExcerpts": list(self.assistant_excerpts),
            "consolidated": self.consolidated,
        }
        if self.session_key is not None:
            data["sessionKey"] = self.session_key
        return data

    @classmethod
    def from_dict(cls, data) -> Optional["StmEntry"]:
        if not isinstance(data, dict):
            return None
        entry_id = data.get("id")
        timestamp = data.get("timestamp")
        if not isinstance(entry_id, str) or not isinstance(timestamp, str):
            return None
        try:
            parse_timestamp(timestamp)
        except ValueError:
            return None
        session_key = data.get("sessionKey")
        return cls(
            id=entry_id,
            timestamp=timestamp,
            user_excerpts=_string_list(data.get("userExcerpts")),
            assistant_excerpts=_string_list(data.get("assistantExcerpts")),
            session_key=session_key if isinstance(session_key, str) else None,
            consolidated=data.get("consolidated") is True,
        )


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]


def _non_negative_int(value) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return 0


@dataclass
class StmBuffer:
    entries: list[StmEntry] = field(default_factory=list)
    turns_since_consolidation: int = 0
    turns_since_reflection: int = 0
    last_consolidated_at: Optional[str] = None
    last_reflected_at: Optional[str] = None
    version: int = BUFFER_VERSION

    def unconsolidated(self) -> list[StmEntry]:
        return [e for e in self.entries if not e.consolidated]

    def to_dict(self) -> dict:
        data = {
            "version": self.version,
            "entries": [e.to_dict() for e in self.entries],
            "turnsSinceConsolidation": self.turns_since_consolidation,
            "turnsSinceReflection": self.turns_since_reflection,
        }
        if self.last_consolidated_at:
            data["lastConsolidatedAt"] = self.last_consolidated_at
        if self.last_reflected_at:
            data["lastReflectedAt"] = self.last_reflected_at
        return data

    @classmethod
    def from_dict(cls, data) -> "StmBuffer":
        """Normalize a persisted buffer. Malformed shapes become an empty buffer."""
        buffer = cls()
        if not isinstance(data, dict):
            return buffer
        raw_entries = data.get("entries")
        if isinstance(raw_entries, list):
            for raw in raw_entries:
                entry = StmEntry.from_dict(raw)
                if entry is None:
                    logger.warning("Dropping malformed STM entry")
                    continue
                buffer.entries.append(entry)
        buffer.turns_since_consolidation = _non_negative_int(data.get("turnsSinceConsolidation"))
        buffer.turns_since_reflection = _non_negative_int(data.get("turnsSinceReflection"))
        for key, attr in (("lastConsolidatedAt", "last_consolidated_at"),
                          ("lastReflectedAt", "last_reflected_at")):
            value = data.get(key)
            if isinstance(value, str):
                setattr(buffer, attr, value)
        return buffer


# ============== PERSISTENCE ==============

def load_stm_buffer(path: Path) -> StmBuffer:
    """Load the buffer from disk. Missing file -> empty buffer."""
    return StmBuffer.from_dict(read_json(path))


def save_stm_buffer(buffer: StmBuffer, path: Path):
    write_json(path, buffer.to_dict())


# ============== MESSAGE EXTRACTION ==============

def _extract_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block["text"] for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "\n".join(parts)
    return ""


def extract_conversation_excerpts(messages: list, max_messages: int = 20) -> tuple[list[str], list[str]]:
    """
    Pull user and assistant text out of a turn's message list.

    Tool calls and tool results are skipped. Returns
    (user_excerpts, assistant_excerpts), each capped at max_messages.
    """
    user_excerpts = []
    assistant_excerpts = []

    for msg in messages[-(max_messages * 2):]:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role not in ("user", "assistant"):
            continue
        text = _extract_text(msg.get("content"))
        if not text or len(text) <= MIN_EXCERPT_LENGTH:
            continue
        if role == "user":
            user_excerpts.append(text)
        else:
            assistant_excerpts.append(text)

    return user_excerpts[-max_messages:], assistant_excerpts[-max_messages:]


# ============== BUFFER OPERATIONS ==============

def new_entry_id() -> str:
    return f"stm-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def append_to_stm_buffer(buffer: StmBuffer, user_excerpts: list[str],
                         assistant_excerpts: list[str],
                         session_key: Optional[str] = None) -> StmEntry:
    """Append a new entry and bump both turn counters."""
    entry = StmEntry(
        id=new_entry_id(),
        timestamp=datetime.now(timezone.utc).isoformat(),
        user_excerpts=list(user_excerpts),
        assistant_excerpts=list(assistant_excerpts),
        session_key=session_key,
    )
    buffer.entries.append(entry)
    buffer.turns_since_consolidation += 1
    buffer.turns_since_reflection += 1
    return entry


def mark_consolidated(buffer: StmBuffer, entry_ids):
    ids = set(entry_ids)
    for entry in buffer.entries:
        if entry.id in ids:
            entry.consolidated = True
    buffer.last_consolidated_at = datetime.now(timezone.utc).isoformat()
    buffer.turns_since_consolidation = 0


def evict_old_entries(buffer: StmBuffer, max_age_days: float,
                      now: Optional[datetime] = None) -> int:
    """Drop consolidated entries older than max_age_days. Returns how many went."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=max_age_days)

    def keep(entry: StmEntry) -> bool:
        if not entry.consolidated:
            return True
        return as_utc(parse_timestamp(entry.timestamp)) > as_utc(cutoff)

    before = len(buffer.entries)
    buffer.entries = [e for e in buffer.entries if keep(e)]
    evicted = before - len(buffer.entries)
    if evicted:
        logger.info(f"Evicted {evicted} consolidated STM entries older than {max_age_days} days")
    return evicted
