"""Tests for workspace memory-file sync."""

import json

import pytest

from agent_memory.memory.activation import ActivationIndex
from agent_memory.memory.sync import (
    SyncEntry,
    SyncIndex,
    changed_files,
    collect_memory_files,
    load_sync_index,
    register_synced_files,
    save_sync_index,
    sync_files,
)

from conftest import FakeBackend


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    (root / "memory" / "sub").mkdir(parents=True)
    (root / "MEMORY.md").write_text("# Main memory\nAlice prefers tea.")
    (root / "memory" / "tools.md").write_text("Run make deploy to ship.")
    (root / "memory" / "sub" / "deep.md").write_text("Deep notes.")
    (root / "memory" / "scratch.txt").write_text("not markdown")
    (root / "README.md").write_text("not a memory file")
    return root


class TestCollect:

    def test_finds_markdown_memory_files(self, workspace):
        files = collect_memory_files(workspace)
        assert [f.path for f in files] == ["MEMORY.md", "memory/sub/deep.md", "memory/tools.md"]
        assert files[0].content.startswith("# Main memory")
        assert len(files[0].hash) == 64

    def test_symlink_loop_is_safe(self, workspace):
        (workspace / "memory" / "sub" / "loop").symlink_to(workspace / "memory", target_is_directory=True)
        files = collect_memory_files(workspace)
        assert len(files) == 3

    def test_empty_workspace(self, tmp_path):
        assert collect_memory_files(tmp_path) == []

    def test_changed_files(self, workspace):
        files = collect_memory_files(workspace)
        index = SyncIndex()
        assert changed_files(files, index) == files


class TestSyncFiles:

    @pytest.mark.asyncio
    async def test_first_sync_adds_everything(self, workspace):
        backend, index = FakeBackend(), SyncIndex()
        files = collect_memory_files(workspace)

        result = await sync_files(backend, files, index, "owner-private")

        assert (result.added, result.updated, result.skipped, result.errors) == (3, 0, 0, 0)
        assert result.dataset_id == "ds-owner-private"
        assert index.dataset_id == "ds-owner-private"
        assert index.entries["MEMORY.md"].data_id == "data-1"
        assert backend.cognified == [["ds-owner-private"]]
        rendered = backend.added[0][0]
        assert rendered.startswith("# MEMORY.md\n\n# Main memory")
        assert '"path": "MEMORY.md"' in rendered

    @pytest.mark.asyncio
    async def test_unchanged_files_skipped(self, workspace):
        backend, index = FakeBackend(), SyncIndex()
        await sync_files(backend, collect_memory_files(workspace), index, "owner-private")

        result = await sync_files(backend, collect_memory_files(workspace), index, "owner-private")

        assert result.skipped == 3
        assert len(backend.added) == 3
        assert len(backend.cognified) == 1

    @pytest.mark.asyncio
    async def test_changed_file_updated_in_place(self, workspace):
        backend, index = FakeBackend(), SyncIndex()
        await sync_files(backend, collect_memory_files(workspace), index, "owner-private")
        (workspace / "memory" / "tools.md").write_text("Run make release to ship.")

        result = await sync_files(backend, collect_memory_files(workspace), index, "owner-private")

        assert result.updated == 1
        assert result.skipped == 2
        data_id, dataset_id, data = backend.updated[0]
        assert data_id == index.entries["memory/tools.md"].data_id
        assert dataset_id == "ds-owner-private"
        assert "make release" in data

    @pytest.mark.asyncio
    async def test_stale_data_id_falls_back_to_add(self, workspace):
        backend, index = FakeBackend(), SyncIndex()
        await sync_files(backend, collect_memory_files(workspace), index, "owner-private")
        (workspace / "MEMORY.md").write_text("Alice now prefers coffee.")
        backend.update_status = 404

        result = await sync_files(backend, collect_memory_files(workspace), index, "owner-private")

        assert result.added == 1
        assert result.errors == 0
        assert index.entries["MEMORY.md"].data_id == "data-4"

    @pytest.mark.asyncio
    async def test_other_update_errors_counted(self, workspace):
        backend, index = FakeBackend(), SyncIndex()
        await sync_files(backend, collect_memory_files(workspace), index, "owner-private")
        (workspace / "MEMORY.md").write_text("Alice now prefers coffee.")
        backend.update_status = 500

        result = await sync_files(backend, collect_memory_files(workspace), index, "owner-private")

        assert result.errors == 1
        assert len(backend.added) == 3


class TestSyncIndex:

    def test_round_trip_uses_camel_case(self, tmp_path):
        index = SyncIndex(dataset_id="ds-1", dataset_name="owner-private")
        index.entries["MEMORY.md"] = SyncEntry(hash="abc", data_id="d-1")
        path = tmp_path / "sync-index.json"
        save_sync_index(index, path)

        raw = json.loads(path.read_text())
        assert raw["datasetId"] == "ds-1"
        assert raw["entries"]["MEMORY.md"] == {"hash": "abc", "dataId": "d-1"}
        assert load_sync_index(path).entries["MEMORY.md"].data_id == "d-1"

    def test_malformed_entries_dropped(self):
        index = SyncIndex.from_dict({"entries": {"a.md": {"hash": 3}, "b.md": "junk", "c.md": {"hash": "h"}}})
        assert list(index.entries) == ["c.md"]


class TestRegisterSyncedFiles:

    @pytest.mark.asyncio
    async def test_registers_once(self, workspace):
        backend, sync_index, index = FakeBackend(), SyncIndex(), ActivationIndex()
        files = collect_memory_files(workspace)
        await sync_files(backend, files, sync_index, "owner-private")

        assert register_synced_files(index, files, sync_index, "owner-private") == 3
        assert register_synced_files(index, files, sync_index, "owner-private") == 0
        entry = index.get(sync_index.entries["memory/tools.md"].data_id)
        assert entry.memory_type == "procedural"
        assert entry.label == "memory/tools.md"


@pytest.mark.asyncio
async def test_manager_sync_workspace(manager, backend, workspace):
    result = await manager.sync_workspace(workspace)
    assert result.added == 3
    assert manager.dataset_ids["owner-private"] == "ds-owner-private"
    assert len(manager.activation_index) == 3

    again = await manager.sync_workspace(workspace, only_changed=True)
    assert (again.added, again.updated, again.skipped) == (0, 0, 0)
