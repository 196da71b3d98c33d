"""Tests for consolidation, reflection and the promotion pipeline."""

import asyncio
import json

import pytest

from agent_memory.memory.activation import ActivationIndex, register_memory
from agent_memory.memory.consolidation import (
    PromotionPipeline,
    build_consolidation_prompt,
    build_reflection_prompt,
    parse_consolidated_memories,
    run_consolidation,
    run_reflection,
    strip_code_fences,
)
from agent_memory.memory.stm_buffer import StmBuffer, append_to_stm_buffer

from conftest import FakeBackend, FakeCaller

ANSWER = json.dumps([
    {"text": "Alice prefers Postgres over MySQL", "memoryType": "semantic", "label": "db preference"},
    {"text": "Run make deploy to ship", "memoryType": "nonsense", "label": "deploy"},
    {"text": "", "memoryType": "semantic"},
    {"memoryType": "episodic"},
    "not an object",
    {"text": "Production DB password lives in the vault", "memoryType": "vault", "pinned": True},
])


def buffer_with_turns(n=2):
    buffer = StmBuffer()
    for i in range(n):
        append_to_stm_buffer(buffer, [f"user message {i}"], [f"assistant reply {i}"])
    return buffer


def pipeline(caller, backend, name="consolidation", **kwargs):
    return PromotionPipeline(name, caller, backend, timeout=5, **kwargs)


class TestParsing:

    def test_strip_code_fences(self):
        assert strip_code_fences("```json\n[1]\n```") == "[1]"
        assert strip_code_fences("```JSON\n[]```") == "[]"
        assert strip_code_fences("```\n[2]\n```") == "[2]"
        assert strip_code_fences("  [3]  ") == "[3]"

    def test_lenient_parse(self):
        memories = parse_consolidated_memories(ANSWER)
        assert [m.text for m in memories] == [
            "Alice prefers Postgres over MySQL",
            "Run make deploy to ship",
            "Production DB password lives in the vault",
        ]
        assert memories[0].label == "db preference"
        assert memories[1].memory_type == "procedural"  # re-detected
        assert memories[2].pinned is True
        assert memories[0].pinned is None

    def test_fenced_answer(self):
        memories = parse_consolidated_memories(f"```json\n{ANSWER}\n```")
        assert len(memories) == 3

    @pytest.mark.parametrize("raw", ["not json", "{\"text\": \"object\"}", "null", ""])
    def test_garbage_gives_nothing(self, raw):
        assert parse_consolidated_memories(raw) == []


class TestPrompts:

    def test_consolidation_prompt_sections(self):
        buffer = buffer_with_turns(2)
        prompt = build_consolidation_prompt(buffer.entries)
        assert prompt.count("### Session at ") == 2
        assert "User: user message 0" in prompt
        assert "Assistant: assistant reply 1" in prompt
        assert "Return a JSON array" in prompt

    def test_reflection_prompt_landscape(self):
        index = ActivationIndex()
        register_memory(index, "a", "semantic", label="db preference")
        register_memory(index, "b", "vault")
        prompt = build_reflection_prompt(index)
        assert "Total memories: 2" in prompt
        assert "vault=1" in prompt
        assert "- [semantic] db preference" in prompt

    def test_reflection_prompt_without_labels(self):
        assert "(none)" in build_reflection_prompt(ActivationIndex())


class TestRunConsolidation:

    @pytest.mark.asyncio
    async def test_stores_and_marks(self):
        backend, caller = FakeBackend(), FakeCaller(ANSWER)
        buffer, index = buffer_with_turns(2), ActivationIndex()

        result = await run_consolidation(pipeline(caller, backend), buffer, index, "owner-private")

        assert result.stored == 3
        assert result.dataset_id == "ds-owner-private"
        assert len(backend.added) == 3
        # first write has no id; later writes carry the id forward
        assert backend.added[0][2] is None
        assert backend.added[1][2] == "ds-owner-private"
        assert backend.cognified == [["ds-owner-private"]]
        assert all(e.consolidated for e in buffer.entries)
        assert buffer.turns_since_consolidation == 0
        assert index.get("data-3").pinned is True
        assert index.get("data-1").dataset_name == "owner-private"

    @pytest.mark.asyncio
    async def test_single_thin_entry_skipped(self):
        backend, caller = FakeBackend(), FakeCaller(ANSWER)
        buffer = StmBuffer()
        append_to_stm_buffer(buffer, ["just one message"], [])

        result = await run_consolidation(pipeline(caller, backend), buffer, ActivationIndex(), "owner-private")

        assert result.skipped is True
        assert caller.prompts == []
        assert buffer.entries[0].consolidated is False

    @pytest.mark.asyncio
    async def test_empty_answer_still_marks(self):
        backend, caller = FakeBackend(), FakeCaller("[]")
        buffer = buffer_with_turns(2)

        result = await run_consolidation(pipeline(caller, backend), buffer, ActivationIndex(), "owner-private")

        assert result.stored == 0
        assert backend.added == []
        assert backend.cognified == []
        assert all(e.consolidated for e in buffer.entries)

    @pytest.mark.asyncio
    async def test_malformed_answer_still_marks(self):
        backend, caller = FakeBackend(), FakeCaller("I could not find anything, sorry!")
        buffer = buffer_with_turns(2)
        await run_consolidation(pipeline(caller, backend), buffer, ActivationIndex(), "owner-private")
        assert all(e.consolidated for e in buffer.entries)

    @pytest.mark.asyncio
    async def test_failed_call_keeps_entries(self):
        backend, caller = FakeBackend(), FakeCaller(None)
        buffer = buffer_with_turns(3)

        result = await run_consolidation(pipeline(caller, backend), buffer, ActivationIndex(), "owner-private")

        assert result.reasoning_failed is True
        assert not any(e.consolidated for e in buffer.entries)
        assert buffer.turns_since_consolidation == 0
        assert buffer.last_consolidated_at is None

    @pytest.mark.asyncio
    async def test_failed_writes_are_skipped(self):
        backend, caller = FakeBackend(), FakeCaller(ANSWER)
        backend.fail_add = True
        buffer, index = buffer_with_turns(2), ActivationIndex()

        result = await run_consolidation(pipeline(caller, backend), buffer, index, "owner-private")

        assert result.stored == 0
        assert len(index) == 0
        assert all(e.consolidated for e in buffer.entries)

    @pytest.mark.asyncio
    async def test_missing_data_id_gets_fallback(self):
        class NoIdBackend(FakeBackend):
            async def add(self, data, dataset_name, dataset_id=None):
                result = await super().add(data, dataset_name, dataset_id)
                result.data_id = None
                return result

        caller = FakeCaller(json.dumps([{"text": "a fact worth keeping"}]))
        index = ActivationIndex()
        await run_consolidation(
            pipeline(caller, NoIdBackend(), id_prefix="consolidated"),
            buffer_with_turns(2), index, "owner-private",
        )
        [memory_id] = list(index.entries)
        assert memory_id.startswith("consolidated-")

    @pytest.mark.asyncio
    async def test_in_flight_trigger_skipped(self):
        release = asyncio.Event()

        class SlowCaller(FakeCaller):
            async def call(self, prompt, timeout, task_type="consolidation"):
                await release.wait()
                return "[]"

        shared = pipeline(SlowCaller(), FakeBackend())
        buffer = buffer_with_turns(2)
        first = asyncio.create_task(run_consolidation(shared, buffer, ActivationIndex(), "owner-private"))
        await asyncio.sleep(0)
        assert shared.in_flight

        second = await run_consolidation(shared, buffer, ActivationIndex(), "owner-private")
        assert second is None

        release.set()
        result = await first
        assert result.stored == 0
        assert not shared.in_flight


class TestRunReflection:

    @pytest.mark.asyncio
    async def test_insights_never_pinned(self):
        backend = FakeBackend()
        caller = FakeCaller(json.dumps([
            {"text": "User keeps asking about deploys", "memoryType": "semantic", "pinned": True},
        ]))
        buffer, index = buffer_with_turns(1), ActivationIndex()
        buffer.turns_since_reflection = 60

        result = await run_reflection(
            pipeline(caller, backend, name="reflection", allow_pinned=False),
            buffer, index, "owner-private",
        )

        assert result.stored == 1
        assert index.get("data-1").pinned is False
        assert buffer.turns_since_reflection == 0
        assert buffer.last_reflected_at is not None
        assert caller.prompts[0][0] == "reflection"

    @pytest.mark.asyncio
    async def test_vault_insights_stay_pinned(self):
        backend = FakeBackend()
        caller = FakeCaller(json.dumps([
            {"text": "Deploy key rotates monthly, stored in the vault", "memoryType": "vault"},
            {"text": "User prefers short answers", "memoryType": "semantic", "pinned": True},
        ]))
        buffer, index = buffer_with_turns(1), ActivationIndex()
        buffer.turns_since_reflection = 60

        result = await run_reflection(
            pipeline(caller, backend, name="reflection", allow_pinned=False),
            buffer, index, "owner-private",
        )

        assert result.stored == 2
        assert index.get("data-1").pinned is True
        assert index.get("data-2").pinned is False

    @pytest.mark.asyncio
    async def test_counter_reset_even_on_failure(self):
        buffer = buffer_with_turns(1)
        buffer.turns_since_reflection = 60
        result = await run_reflection(
            pipeline(FakeCaller(None), FakeBackend(), name="reflection"),
            buffer, ActivationIndex(), "owner-private",
        )
        assert result.reasoning_failed is True
        assert buffer.turns_since_reflection == 0
        assert buffer.last_reflected_at is not None
