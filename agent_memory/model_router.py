"""
Model routing for the memory layer's reasoning calls.

Consolidation and reflection each map to a tier; a failed call escalates
once to the next tier up.

Routing: Haiku (consolidation) -> Sonnet (reflection) -> Opus (fallback)
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import anthropic
import openai
import yaml

logger = logging.getLogger(__name__)

DEFAULT_MODELS_PATH = "config/models.yaml"


class ModelTier(Enum):
    CHEAP = "cheap"        # Haiku, ~$0.80/M input
    MID = "mid"            # Sonnet, ~$3/M input
    PREMIUM = "premium"    # Opus, ~$15/M input


@dataclass
class ModelConfig:
    provider: str    # "anthropic", "openai"
    name: str        # Model identifier
    tier: ModelTier
    cost_in: float   # Per 1M input tokens
    cost_out: float  # Per 1M output tokens

    def estimate_cost(self, usage: Optional[dict]) -> float:
        """Dollar cost of one call from its token usage."""
        if not usage:
            return 0.0
        input_tokens = usage.get("input_tokens") or 0
        output_tokens = usage.get("output_tokens") or 0
        return (input_tokens * self.cost_in + output_tokens * self.cost_out) / 1_000_000


class ModelRouter:

    # Escalation chain: try cheaper models first
    ESCALATION_ORDER = [ModelTier.CHEAP, ModelTier.MID, ModelTier.PREMIUM]

    DEFAULT_TASK_ROUTING = {
        "consolidation": ModelTier.CHEAP,
        "reflection": ModelTier.MID,
    }

    def __init__(self, config_path: str = DEFAULT_MODELS_PATH):
        self.models: dict[ModelTier, ModelConfig] = {}
        self.task_routing: dict[str, ModelTier] = dict(self.DEFAULT_TASK_ROUTING)
        self.default_tier = ModelTier.CHEAP

        self._anthropic = None
        self._openai = None

        self._load_config(config_path)
        self._init_clients()

    def _load_config(self, config_path: str):
        """Load model routing configuration from YAML."""
        path = Path(config_path)
        if not path.exists():
            logger.warning(f"Config not found at {config_path}, using defaults")
            self._load_defaults()
            return

        with open(path) as f:
            config = yaml.safe_load(f) or {}

        for tier_name, model_def in config.get("models", {}).items():
            tier = ModelTier(tier_name)
            self.models[tier] = ModelConfig(
                provider=model_def["provider"],
                name=model_def["name"],
                tier=tier,
                cost_in=model_def.get("cost_per_1m_input", 0),
                cost_out=model_def.get("cost_per_1m_output", 0),
            )

        for task, tier_name in config.get("task_routing", {}).items():
            self.task_routing[task] = ModelTier(tier_name)

        self.default_tier = ModelTier(config.get("default_tier", "cheap"))

        if not self.models:
            self._load_defaults()

    def _load_defaults(self):
        """Fallback defaults if no config file."""
        self.models = {
            ModelTier.CHEAP: ModelConfig(
                provider="anthropic",
                name="claude-3-5-haiku-20241022",
                tier=ModelTier.CHEAP,
                cost_in=0.80, cost_out=4.00,
            ),
            ModelTier.MID: ModelConfig(
                provider="anthropic",
                name="claude-sonnet-4-20250514",
                tier=ModelTier.MID,
                cost_in=3.00, cost_out=15.00,
            ),
        }

    def _init_clients(self):
        """Initialize API clients from environment variables."""
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if api_key:
            self._anthropic = anthropic.AsyncAnthropic(api_key=api_key)

        openai_key = os.environ.get("OPENAI_API_KEY")
        if openai_key:
            self._openai = openai.AsyncOpenAI(api_key=openai_key)

    def select_model(self, task_type: str) -> ModelConfig:
        """Select the appropriate model for a task type."""
        tier = self.task_routing.get(task_type, self.default_tier)
        model = self.models.get(tier)
        if model is None:
            # Fall back to cheapest available
            for t in self.ESCALATION_ORDER:
                if t in self.models:
                    return self.models[t]
            raise RuntimeError("No models configured")
        return model

    def escalate(self, current_model: ModelConfig) -> Optional[ModelConfig]:
        """Get the next model up in the escalation chain."""
        current_idx = self.ESCALATION_ORDER.index(current_model.tier)
        for tier in self.ESCALATION_ORDER[current_idx + 1:]:
            if tier in self.models:
                return self.models[tier]
        return None  # No higher model available

    async def invoke(self, model: ModelConfig, messages: list[dict],
                     max_tokens: int = 4096) -> dict:
        """
        Invoke a model and return the response.

        Args:
            model: The model configuration to use
            messages: List of message dicts with 'role' and 'content'
            max_tokens: Maximum tokens in response

        Returns:
            dict with 'content', 'usage', 'model', 'stop_reason' keys
        """
        if model.provider == "anthropic":
            return await self._invoke_anthropic(model, messages, max_tokens)
        elif model.provider == "openai":
            return await self._invoke_openai(model, messages, max_tokens)
        else:
            raise ValueError(f"Unknown provider: {model.provider}")

    async def _invoke_anthropic(self, model: ModelConfig, messages: list[dict],
                                max_tokens: int) -> dict:
        """Call Anthropic API."""
        if not self._anthropic:
            raise RuntimeError("Anthropic API key not configured")

        # Separate system messages from conversation
        system_parts = []
        conversation = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                conversation.append(msg)

        kwargs = {
            "model": model.name,
            "max_tokens": max_tokens,
            "messages": conversation,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        response = await self._anthropic.messages.create(**kwargs)

        text_content = "".join(
            block.text for block in response.content if block.type == "text"
        )

        return {
            "content": text_content,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            "model": model.name,
            "stop_reason": response.stop_reason,
        }

    async def _invoke_openai(self, model: ModelConfig, messages: list[dict],
                             max_tokens: int) -> dict:
        """Call OpenAI API."""
        if not self._openai:
            raise RuntimeError("OpenAI API key not configured")

        response = await self._openai.chat.completions.create(
            model=model.name,
            messages=messages,
            max_tokens=max_tokens,
        )
        choice = response.choices[0]

        return {
            "content": choice.message.content or "",
            "usage": {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            },
            "model": model.name,
            "stop_reason": choice.finish_reason,
        }


class ReasoningCaller:
    """
    One-shot text completion for the memory pipelines.

    Never raises: any failure, timeout or empty answer comes back as None.
    """

    def __init__(self, router: ModelRouter, max_tokens: int = 4096):
        self.router = router
        self.max_tokens = max_tokens

    async def call(self, prompt: str, timeout: float, task_type: str = "consolidation") -> Optional[str]:
        try:
            model = self.router.select_model(task_type)
        except RuntimeError as e:
            logger.error(f"No model for {task_type}: {e}")
            return None

        messages = [{"role": "user", "content": prompt}]
        attempts = [model]
        escalated = self.router.escalate(model)
        if escalated:
            attempts.append(escalated)

        for attempt in attempts:
            try:
                response = await asyncio.wait_for(
                    self.router.invoke(attempt, messages, max_tokens=self.max_tokens),
                    timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"{task_type} call to {attempt.name} timed out after {timeout}s")
                continue
            except Exception as e:
                logger.warning(f"{task_type} call to {attempt.name} failed: {e}")
                continue

            cost = attempt.estimate_cost(response.get("usage"))
            logger.info(f"{task_type} call to {attempt.name}: ${cost:.4f}")

            text = (response.get("content") or "").strip()
            if text:
                return text
            logger.warning(f"{task_type} call to {attempt.name} returned no text")

        return None
