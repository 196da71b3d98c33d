"""Pytest configuration and fixtures for agent memory tests."""

import pytest

from agent_memory.backend import AddResult, KnowledgeHttpError, SearchResult
from agent_memory.config import MemoryConfig
from agent_memory.memory.memory_manager import MemoryManager
from agent_memory.scopes.resolver import clear_all_scope_overrides


class FakeBackend:
    """In-memory stand-in for the knowledge backend client."""

    def __init__(self):
        self.added = []        # (data, dataset_name, dataset_id)
        self.updated = []      # (data_id, dataset_id, data)
        self.deleted = []      # (data_id, dataset_id)
        self.cognified = []    # dataset id lists
        self.searches = []     # (query, dataset_ids, top_k)
        self.search_results: dict[str, list[SearchResult]] = {}
        self.fail_add = False
        self.fail_delete = False
        self.update_status = None  # raise KnowledgeHttpError with this status on update
        self._next_id = 0

    def dataset_id_for(self, dataset_name: str) -> str:
        return f"ds-{dataset_name}"

    async def add(self, data, dataset_name, dataset_id=None):
        if self.fail_add:
            raise KnowledgeHttpError("add failed (500)", 500)
        self._next_id += 1
        self.added.append((data, dataset_name, dataset_id))
        return AddResult(
            dataset_id=dataset_id or self.dataset_id_for(dataset_name),
            dataset_name=dataset_name,
            data_id=f"data-{self._next_id}",
        )

    async def update(self, data_id, dataset_id, data):
        if self.update_status:
            raise KnowledgeHttpError(f"update failed ({self.update_status})", self.update_status)
        self.updated.append((data_id, dataset_id, data))
        return AddResult(dataset_id=dataset_id, dataset_name="", data_id=data_id)

    async def delete(self, data_id, dataset_id):
        if self.fail_delete:
            raise KnowledgeHttpError("delete failed (405)", 405)
        self.deleted.append((data_id, dataset_id))

    async def search(self, query_text, search_type, dataset_ids, top_k, timeout=None):
        self.searches.append((query_text, list(dataset_ids), top_k))
        results = []
        for dataset_id in dataset_ids:
            results.extend(self.search_results.get(dataset_id, []))
        return results

    async def cognify(self, dataset_ids=None):
        self.cognified.append(list(dataset_ids or []))
        return {"status": "ok"}

    async def close(self):
        pass


class FakeCaller:
    """Reasoning caller that returns a canned answer."""

    def __init__(self, response=None):
        self.response = response
        self.prompts = []

    async def call(self, prompt, timeout, task_type="consolidation"):
        self.prompts.append((task_type, prompt))
        return self.response


@pytest.fixture(autouse=True)
def _reset_scope_overrides():
    """Scope overrides are process-global; keep tests independent."""
    clear_all_scope_overrides()
    yield
    clear_all_scope_overrides()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def caller():
    return FakeCaller()


@pytest.fixture
def memory_config(tmp_path):
    """Config with an isolated state dir and no workspace sync."""
    return MemoryConfig(state_dir=tmp_path / "state", auto_index=False)


@pytest.fixture
def manager(memory_config, backend, caller):
    return MemoryManager(memory_config, backend, caller)
