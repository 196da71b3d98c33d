"""
Knowledge Entry Schema - structured knowledge stored across scopes.

Entries are rendered to plain text before they go to the backend, with a
small header the agent can read back on recall.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .types import SCOPE_TIERS

KNOWLEDGE_TYPE_LABELS = {
    "adr": "Architecture Decision Record",
    "runbook": "Runbook",
    "bug_pattern": "Bug Pattern",
    "convention": "Convention",
    "contract": "API Contract",
    "reference": "Cross-Scope Reference",
}

CONFIDENCE_LEVELS = ("established", "provisional", "experimental")

MAX_TITLE_LENGTH = 200
MAX_SUMMARY_LENGTH = 2000


class KnowledgeSchemaError(Exception):
    """Knowledge entry metadata failed validation."""
    pass


@dataclass
class KnowledgeEntryMetadata:
    type: str
    title: str
    summary: str
    scope: str
    project: Optional[str] = None
    author: Optional[str] = None
    confidence: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    source_ref: Optional[str] = None  # PR number, task id, file path...
    supersedes_entry_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> "KnowledgeEntryMetadata":
        """Build from a loose dict (tool arguments). Raises KnowledgeSchemaError."""
        if not isinstance(data, dict):
            raise KnowledgeSchemaError("Knowledge metadata must be a mapping")
        missing = [k for k in ("type", "title", "summary", "scope") if not data.get(k)]
        if missing:
            raise KnowledgeSchemaError(f"Missing knowledge fields: {', '.join(missing)}")

        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise KnowledgeSchemaError("tags must be a list")

        kwargs = {
            "type": data["type"],
            "title": data["title"],
            "summary": data["summary"],
            "scope": data["scope"],
            "project": data.get("project"),
            "author": data.get("author"),
            "confidence": data.get("confidence"),
            "tags": [str(t) for t in tags],
            "source_ref": data.get("source_ref"),
            "supersedes_entry_id": data.get("supersedes_entry_id"),
        }
        if data.get("created_at"):
            kwargs["created_at"] = data["created_at"]
        entry = cls(**kwargs)
        validate_knowledge_entry(entry)
        return entry


def validate_knowledge_entry(entry: KnowledgeEntryMetadata):
    """Raise KnowledgeSchemaError on the first violated constraint."""
    if entry.type not in KNOWLEDGE_TYPE_LABELS:
        raise KnowledgeSchemaError(f"Unknown knowledge type: {entry.type}")
    if entry.scope not in SCOPE_TIERS:
        raise KnowledgeSchemaError(f"Unknown scope: {entry.scope}")
    if not entry.title.strip():
        raise KnowledgeSchemaError("title must not be empty")
    if len(entry.title) > MAX_TITLE_LENGTH:
        raise KnowledgeSchemaError(f"title exceeds {MAX_TITLE_LENGTH} characters")
    if len(entry.summary) > MAX_SUMMARY_LENGTH:
        raise KnowledgeSchemaError(f"summary exceeds {MAX_SUMMARY_LENGTH} characters")
    if entry.confidence is not None and entry.confidence not in CONFIDENCE_LEVELS:
        raise KnowledgeSchemaError(f"Unknown confidence level: {entry.confidence}")
    if entry.scope == "project" and not entry.project:
        raise KnowledgeSchemaError("project scope requires a project id")


def format_knowledge_entry(entry: KnowledgeEntryMetadata, body: str = "") -> str:
    """
    Render an entry as backend text:

        [Runbook] Restart the ingest worker
        Scope: project (webapp) | Confidence: established | Tags: ops, ingest
        Source: PR #412

        <summary>

        <body>
    """
    validate_knowledge_entry(entry)

    lines = [f"[{KNOWLEDGE_TYPE_LABELS[entry.type]}] {entry.title.strip()}"]

    meta = [f"Scope: {entry.scope}" + (f" ({entry.project})" if entry.project else "")]
    if entry.confidence:
        meta.append(f"Confidence: {entry.confidence}")
    if entry.tags:
        meta.append(f"Tags: {', '.join(entry.tags)}")
    if entry.author:
        meta.append(f"Author: {entry.author}")
    lines.append(" | ".join(meta))

    if entry.source_ref:
        lines.append(f"Source: {entry.source_ref}")
    if entry.supersedes_entry_id:
        lines.append(f"Supersedes: {entry.supersedes_entry_id}")
    lines.append(f"Created: {entry.created_at}")

    text = "\n".join(lines) + "\n\n" + entry.summary.strip()
    if body.strip():
        text += "\n\n" + body.strip()
    return text
