"""
State persistence - JSON files written off the hot path.

The in-memory Activation Index and STM Buffer are authoritative for the life
of the process. Disk copies are a best-effort side channel:
- schedule() never blocks and never raises
- writes for the same file are coalesced; only the newest snapshot lands
- failures are logged, the next schedule() retries with fresh state

Known limitation: last writer wins. One writer process per state directory.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


def read_json(path: Path):
    """Read a JSON file. Missing or unparseable files return None."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Ignoring corrupt state file {path}: {e}")
        return None


def write_json(path: Path, data):
    """Atomically replace `path` with pretty-printed JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class BackgroundSaver:
    """Fire-and-forget JSON saves, one writer task per file."""

    def __init__(self, writer: Callable = write_json):
        self._writer = writer
        self._pending: dict[Path, object] = {}
        self._tasks: dict[Path, asyncio.Task] = {}

    def schedule(self, path: Path, snapshot):
        """
        Queue a snapshot for writing.

        `snapshot` must already be a detached copy (e.g. index.to_dict()),
        so later in-memory mutations can't leak into an in-flight write.
        Outside a running event loop the write happens inline.
        """
        path = Path(path)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_now(path, snapshot)
            return

        self._pending[path] = snapshot
        task = self._tasks.get(path)
        if task is None or task.done():
            self._tasks[path] = loop.create_task(self._drain(path))

    async def _drain(self, path: Path):
        while path in self._pending:
            snapshot = self._pending.pop(path)
            try:
                await asyncio.to_thread(self._writer, path, snapshot)
            except Exception as e:
                logger.warning(f"Failed to save {path.name}: {e}")

    def _write_now(self, path: Path, snapshot):
        try:
            self._writer(path, snapshot)
        except Exception as e:
            logger.warning(f"Failed to save {path.name}: {e}")

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def flush(self):
        """Wait for every queued write. Call on shutdown."""
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
