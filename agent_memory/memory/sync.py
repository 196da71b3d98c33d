"""
Memory file sync - push workspace memory files to the knowledge backend.

Looks for MEMORY.md, memory.md and anything under memory/ (markdown only).
Each file is hashed; unchanged files are skipped, changed files are updated
in place, new files are added. A stale data id (404/409 on update) falls
back to a fresh add.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..backend import KnowledgeHttpError
from .activation import ActivationIndex, detect_memory_type, register_memory
from .persistence import read_json, write_json

logger = logging.getLogger(__name__)

SYNC_INDEX_FILE = "sync-index.json"
MEMORY_FILE_PATTERNS = ("MEMORY.md", "memory.md", "memory")
MAX_SCAN_DEPTH = 50
RECOVERABLE_UPDATE_STATUSES = (404, 409)


@dataclass
class MemoryFile:
    path: str       # relative to workspace, e.g. "memory/tools.md"
    abs_path: Path
    content: str
    hash: str


@dataclass
class SyncEntry:
    hash: str
    data_id: Optional[str] = None


@dataclass
class SyncIndex:
    entries: dict[str, SyncEntry] = field(default_factory=dict)
    dataset_id: Optional[str] = None
    dataset_name: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "entries": {
                path: {"hash": e.hash, **({"dataId": e.data_id} if e.data_id else {})}
                for path, e in self.entries.items()
            }
        }
        if self.dataset_id:
            data["datasetId"] = self.dataset_id
        if self.dataset_name:
            data["datasetName"] = self.dataset_name
        return data

    @classmethod
    def from_dict(cls, data) -> "SyncIndex":
        index = cls()
        if not isinstance(data, dict):
            return index
        raw_entries = data.get("entries")
        if isinstance(raw_entries, dict):
            for path, raw in raw_entries.items():
                if not isinstance(raw, dict) or not isinstance(raw.get("hash"), str):
                    continue
                data_id = raw.get("dataId")
                index.entries[path] = SyncEntry(
                    hash=raw["hash"],
                    data_id=data_id if isinstance(data_id, str) else None,
                )
        if isinstance(data.get("datasetId"), str):
            index.dataset_id = data["datasetId"]
        if isinstance(data.get("datasetName"), str):
            index.dataset_name = data["datasetName"]
        return index


@dataclass
class SyncResult:
    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    dataset_id: Optional[str] = None


def load_sync_index(path: Path) -> SyncIndex:
    return SyncIndex.from_dict(read_json(path))


def save_sync_index(index: SyncIndex, path: Path):
    write_json(path, index.to_dict())


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ============== COLLECTION ==============

def _read_memory_file(path: Path, workspace: Path) -> MemoryFile:
    content = path.read_text(encoding="utf-8")
    return MemoryFile(
        path=os.path.relpath(path, workspace),
        abs_path=path,
        content=content,
        hash=hash_text(content),
    )


def _scan_dir(directory: Path, workspace: Path, seen: set, depth: int = 0) -> list[MemoryFile]:
    if depth >= MAX_SCAN_DEPTH:
        return []
    real_dir = directory.resolve()
    if real_dir in seen:
        return []
    seen.add(real_dir)

    files = []
    for child in sorted(directory.iterdir()):
        if child.is_dir():
            files.extend(_scan_dir(child, workspace, seen, depth + 1))
        elif child.is_file() and child.name.endswith(".md"):
            real_file = child.resolve()
            if real_file in seen:
                continue
            seen.add(real_file)
            files.append(_read_memory_file(child, workspace))
    return files


def collect_memory_files(workspace_dir) -> list[MemoryFile]:
    """All memory files under a workspace. Symlink loops and duplicates are skipped."""
    workspace = Path(workspace_dir)
    files = []
    seen = set()

    for pattern in MEMORY_FILE_PATTERNS:
        target = workspace / pattern
        if target.is_file() and target.name.endswith(".md"):
            real = target.resolve()
            if real in seen:
                continue
            seen.add(real)
            files.append(_read_memory_file(target, workspace))
        elif target.is_dir():
            files.extend(_scan_dir(target, workspace, seen))

    return files


def changed_files(files: list[MemoryFile], sync_index: SyncIndex) -> list[MemoryFile]:
    changed = []
    for f in files:
        existing = sync_index.entries.get(f.path)
        if existing is None or existing.hash != f.hash:
            changed.append(f)
    return changed


# ============== SYNC ==============

def _render(file: MemoryFile) -> str:
    metadata = json.dumps({"path": file.path, "source": "memory"})
    return f"# {file.path}\n\n{file.content}\n\n---\nMetadata: {metadata}"


async def sync_files(client, files: list[MemoryFile], sync_index: SyncIndex,
                     dataset_name: str, dataset_id: Optional[str] = None,
                     auto_cognify: bool = True) -> SyncResult:
    """
    Sync files into one dataset. Mutates sync_index; the caller persists it.

    Returns counts plus the dataset id the backend ended up using.
    """
    result = SyncResult(dataset_id=dataset_id or sync_index.dataset_id)
    needs_cognify = False

    for file in files:
        existing = sync_index.entries.get(file.path)
        if existing and existing.hash == file.hash:
            result.skipped += 1
            continue

        data = _render(file)
        try:
            if existing and existing.data_id and result.dataset_id:
                try:
                    await client.update(existing.data_id, result.dataset_id, data)
                    sync_index.entries[file.path] = SyncEntry(hash=file.hash, data_id=existing.data_id)
                    result.updated += 1
                    needs_cognify = True
                    logger.info(f"Updated {file.path}")
                    continue
                except KnowledgeHttpError as e:
                    if e.status not in RECOVERABLE_UPDATE_STATUSES:
                        raise
                    logger.info(f"Update failed for {file.path} ({e.status}), falling back to add")

            response = await client.add(data=data, dataset_name=dataset_name,
                                        dataset_id=result.dataset_id)
            if response.dataset_id:
                result.dataset_id = response.dataset_id
            sync_index.entries[file.path] = SyncEntry(hash=file.hash, data_id=response.data_id)
            result.added += 1
            needs_cognify = True
            logger.info(f"Added {file.path}")
        except Exception as e:
            result.errors += 1
            logger.warning(f"Failed to sync {file.path}: {e}")

    sync_index.dataset_id = result.dataset_id
    sync_index.dataset_name = dataset_name

    if needs_cognify and auto_cognify and result.dataset_id:
        try:
            await client.cognify([result.dataset_id])
        except Exception as e:
            logger.warning(f"Cognify after sync failed: {e}")

    return result


def register_synced_files(index: ActivationIndex, files: list[MemoryFile],
                          sync_index: SyncIndex, dataset_name: str) -> int:
    """Register newly synced files in the activation index by detected type."""
    registered = 0
    for file in files:
        entry = sync_index.entries.get(file.path)
        if entry and entry.data_id and entry.data_id not in index:
            register_memory(index, entry.data_id, detect_memory_type(file.content),
                            label=file.path, dataset_name=dataset_name)
            registered += 1
    return registered
