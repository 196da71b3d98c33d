"""Tests for model routing and the reasoning caller."""

import asyncio
import logging
from pathlib import Path

import pytest
import yaml

from agent_memory.model_router import ModelConfig, ModelRouter, ModelTier, ReasoningCaller


@pytest.fixture(autouse=True)
def _no_api_keys(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def model(tier, name, cost_in=0, cost_out=0):
    return ModelConfig(provider="anthropic", name=name, tier=tier,
                       cost_in=cost_in, cost_out=cost_out)


class TestModelRouter:

    def test_defaults_without_config(self, tmp_path):
        router = ModelRouter(str(tmp_path / "missing.yaml"))
        assert set(router.models) == {ModelTier.CHEAP, ModelTier.MID}
        assert router.select_model("consolidation").tier == ModelTier.CHEAP
        assert router.select_model("reflection").tier == ModelTier.MID
        assert router.select_model("something-else").tier == ModelTier.CHEAP

    def test_escalation(self, tmp_path):
        router = ModelRouter(str(tmp_path / "missing.yaml"))
        cheap = router.select_model("consolidation")
        assert router.escalate(cheap).tier == ModelTier.MID
        assert router.escalate(router.models[ModelTier.MID]) is None

    def test_yaml_config(self, tmp_path):
        path = tmp_path / "models.yaml"
        path.write_text(yaml.safe_dump({
            "default_tier": "mid",
            "models": {
                "mid": {"provider": "openai", "name": "gpt-4o"},
                "premium": {"provider": "anthropic", "name": "claude-opus-4", "cost_per_1m_input": 15.0},
            },
            "task_routing": {"reflection": "premium"},
        }))
        router = ModelRouter(str(path))

        assert router.select_model("reflection").name == "claude-opus-4"
        # consolidation routes to CHEAP, which isn't configured: cheapest available wins
        assert router.select_model("consolidation").name == "gpt-4o"
        assert router.select_model("other").name == "gpt-4o"
        assert router.models[ModelTier.MID].cost_in == 0
        assert router.models[ModelTier.PREMIUM].cost_in == 15.0
        assert router.escalate(router.models[ModelTier.MID]).tier == ModelTier.PREMIUM

    def test_shipped_models_config(self):
        router = ModelRouter(str(Path(__file__).parent.parent / "config" / "models.yaml"))
        assert router.select_model("consolidation").provider == "anthropic"

    def test_estimate_cost(self):
        haiku = model(ModelTier.CHEAP, "haiku", cost_in=0.80, cost_out=4.00)
        assert haiku.estimate_cost({"input_tokens": 1_000_000, "output_tokens": 500_000}) == pytest.approx(2.80)
        assert haiku.estimate_cost({"input_tokens": 1000}) == pytest.approx(0.0008)
        assert haiku.estimate_cost(None) == 0.0

    @pytest.mark.asyncio
    async def test_invoke_without_key_raises(self, tmp_path):
        router = ModelRouter(str(tmp_path / "missing.yaml"))
        with pytest.raises(RuntimeError):
            await router.invoke(router.select_model("consolidation"), [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_unknown_provider(self, tmp_path):
        router = ModelRouter(str(tmp_path / "missing.yaml"))
        odd = ModelConfig(provider="carrier-pigeon", name="coo", tier=ModelTier.CHEAP,
                          cost_in=0, cost_out=0)
        with pytest.raises(ValueError):
            await router.invoke(odd, [])


class ScriptedRouter:
    """Router double: each model name maps to an answer, an exception or a delay."""

    def __init__(self, script, models=None):
        self.script = script
        self.models = models or [model(ModelTier.CHEAP, "cheap"), model(ModelTier.MID, "mid")]
        self.invoked = []

    def select_model(self, task_type):
        return self.models[0]

    def escalate(self, current):
        index = self.models.index(current)
        return self.models[index + 1] if index + 1 < len(self.models) else None

    async def invoke(self, model, messages, max_tokens=4096):
        self.invoked.append(model.name)
        outcome = self.script[model.name]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, float):
            await asyncio.sleep(outcome)
            return {"content": "too late"}
        return {"content": outcome}


class TestReasoningCaller:

    @pytest.mark.asyncio
    async def test_first_model_answers(self):
        router = ScriptedRouter({"cheap": "  [] \n", "mid": "unused"})
        assert await ReasoningCaller(router).call("prompt", timeout=1) == "[]"
        assert router.invoked == ["cheap"]

    @pytest.mark.asyncio
    async def test_escalates_on_error(self):
        router = ScriptedRouter({"cheap": RuntimeError("overloaded"), "mid": "answer"})
        assert await ReasoningCaller(router).call("prompt", timeout=1) == "answer"
        assert router.invoked == ["cheap", "mid"]

    @pytest.mark.asyncio
    async def test_escalates_on_timeout(self):
        router = ScriptedRouter({"cheap": 5.0, "mid": "answer"})
        assert await ReasoningCaller(router).call("prompt", timeout=0.05) == "answer"

    @pytest.mark.asyncio
    async def test_escalates_on_empty_answer(self):
        router = ScriptedRouter({"cheap": "   ", "mid": "answer"})
        assert await ReasoningCaller(router).call("prompt", timeout=1) == "answer"

    @pytest.mark.asyncio
    async def test_all_failures_give_none(self):
        router = ScriptedRouter({"cheap": RuntimeError("down"), "mid": ""})
        assert await ReasoningCaller(router).call("prompt", timeout=1) is None

    @pytest.mark.asyncio
    async def test_no_model_gives_none(self):
        class EmptyRouter(ScriptedRouter):
            def select_model(self, task_type):
                raise RuntimeError("No models configured")

        assert await ReasoningCaller(EmptyRouter({})).call("prompt", timeout=1) is None

    @pytest.mark.asyncio
    async def test_logs_call_cost(self, caplog):
        class MeteredRouter(ScriptedRouter):
            async def invoke(self, model, messages, max_tokens=4096):
                return {"content": "[]", "usage": {"input_tokens": 2_000_000, "output_tokens": 0}}

        router = MeteredRouter({}, models=[model(ModelTier.CHEAP, "haiku", cost_in=0.80, cost_out=4.00)])
        with caplog.at_level(logging.INFO, logger="agent_memory.model_router"):
            assert await ReasoningCaller(router).call("prompt", timeout=1, task_type="reflection") == "[]"
        assert "reflection call to haiku: $1.6000" in caplog.text
