"""
Immutable model catalog.

Maps model identifiers to typed display and routing metadata. The table is
built once from the built-in entries plus any ``models`` section in
config.yaml and is read-only afterwards.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .models import ProviderType

PROVIDER_ENDPOINTS: Mapping[ProviderType, str] = MappingProxyType({
    ProviderType.OPENAI: "openai-chat-stream",
    ProviderType.ANTHROPIC: "claude-chat-stream",
    ProviderType.GEMINI: "gemini-chat-stream",
    ProviderType.DEEPSEEK: "deepseek-chat-stream",
    ProviderType.PERPLEXITY: "perplexity-chat-stream",
    ProviderType.OPENROUTER: "openrouter-chat-stream",
})

PROVIDER_COLORS: Mapping[ProviderType, str] = MappingProxyType({
    ProviderType.OPENAI: "openai",
    ProviderType.ANTHROPIC: "claude",
    ProviderType.GEMINI: "gemini",
    ProviderType.DEEPSEEK: "deepseek",
    ProviderType.PERPLEXITY: "perplexity",
    ProviderType.OPENROUTER: "openrouter",
})


@dataclass(frozen=True)
class ModelInfo:
    """Display and routing metadata for one model."""
    model_id: str
    display_name: str
    provider: ProviderType
    icon: str = "cpu"
    color: str = "openrouter"
    description: str = ""

    @property
    def endpoint(self) -> str:
        return PROVIDER_ENDPOINTS[self.provider]


def detect_provider(model: str) -> ProviderType:
    """Route a model identifier to the proxy that serves it."""
    name = model.lower()

    if (
        name.startswith("openai/")
        or "gpt" in name
        or "chatgpt" in name
        or name.startswith(("o1", "o3-", "o4-"))
    ):
        return ProviderType.OPENAI
    if name.startswith("google/") or "gemini" in name:
        return ProviderType.GEMINI
    if name.startswith("deepseek/") or "deepseek" in name:
        return ProviderType.DEEPSEEK
    if name.startswith("anthropic/") or "claude" in name:
        return ProviderType.ANTHROPIC
    if name.startswith("perplexity/") or "sonar" in name:
        return ProviderType.PERPLEXITY
    # Meta, Mistral, Cohere, xAI and anything unknown go through OpenRouter
    return ProviderType.OPENROUTER


def _entry(
    model_id: str, name: str, provider: ProviderType, icon: str, description: str
) -> ModelInfo:
    return ModelInfo(
        model_id=model_id,
        display_name=name,
        provider=provider,
        icon=icon,
        color=PROVIDER_COLORS[provider],
        description=description,
    )


DEFAULT_MODELS: tuple[ModelInfo, ...] = (
    _entry("gpt-5-2025-08-07", "GPT-5", ProviderType.OPENAI, "sparkles",
           "GPT-5 flagship"),
    _entry("gpt-5-mini-2025-08-07", "GPT-5 Mini", ProviderType.OPENAI, "zap",
           "Fast and economical GPT-5"),
    _entry("gpt-5-nano-2025-08-07", "GPT-5 Nano", ProviderType.OPENAI, "zap",
           "Lowest-latency GPT-5"),
    _entry("gpt-4.1-2025-04-14", "GPT-4.1", ProviderType.OPENAI, "sparkles",
           "GPT-4.1"),
    _entry("gpt-4o", "GPT-4o", ProviderType.OPENAI, "sparkles", "GPT-4 Omni"),
    _entry("gpt-4o-mini", "GPT-4o Mini", ProviderType.OPENAI, "zap",
           "Economical GPT-4o"),
    _entry("gpt-4-turbo", "GPT-4 Turbo", ProviderType.OPENAI, "zap", "GPT-4 Turbo"),
    _entry("o3-2025-04-16", "o3", ProviderType.OPENAI, "cpu", "Reasoning model"),
    _entry("o4-mini-2025-04-16", "o4 Mini", ProviderType.OPENAI, "cpu",
           "Small reasoning model"),
    _entry("o1-mini", "o1 Mini", ProviderType.OPENAI, "cpu", "Small reasoning model"),
    _entry("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet",
           ProviderType.ANTHROPIC, "sparkles", "Anthropic flagship"),
    _entry("anthropic/claude-3-5-haiku-20241022", "Claude 3.5 Haiku",
           ProviderType.ANTHROPIC, "zap", "Fast Claude"),
    _entry("anthropic/claude-3-sonnet", "Claude 3 Sonnet",
           ProviderType.ANTHROPIC, "sparkles", "Claude 3 Sonnet"),
    _entry("gemini-1.5-pro", "Gemini 1.5 Pro", ProviderType.GEMINI, "sparkles",
           "Google long-context model"),
    _entry("gemini-1.5-flash", "Gemini 1.5 Flash", ProviderType.GEMINI, "zap",
           "Fast Gemini"),
    _entry("deepseek-chat", "DeepSeek Chat", ProviderType.DEEPSEEK, "cpu",
           "DeepSeek general chat"),
    _entry("deepseek-coder", "DeepSeek Coder", ProviderType.DEEPSEEK, "code",
           "DeepSeek code model"),
    _entry("sonar", "Perplexity Sonar", ProviderType.PERPLEXITY, "globe",
           "Search-grounded answers"),
    _entry("meta-llama/llama-3.3-70b-instruct", "Llama 3.3 70B",
           ProviderType.OPENROUTER, "cpu", "Meta open model via OpenRouter"),
    _entry("x-ai/grok-2-1212", "Grok 2", ProviderType.OPENROUTER, "zap",
           "xAI via OpenRouter"),
)


class ModelCatalog(Mapping[str, ModelInfo]):
    """Read-only lookup table keyed by model identifier."""

    def __init__(self, entries: tuple[ModelInfo, ...] | list[ModelInfo] = DEFAULT_MODELS):
        self._models: Mapping[str, ModelInfo] = MappingProxyType(
            {entry.model_id: entry for entry in entries}
        )

    @classmethod
    def from_config(cls, models_config: list[dict[str, Any]]) -> ModelCatalog:
        """Built-in entries overlaid with the ``models`` config section."""
        merged = {entry.model_id: entry for entry in DEFAULT_MODELS}
        for item in models_config:
            if "id" not in item:
                raise ValueError("models entries must define an 'id'")
            model_id = item["id"]
            provider = (
                ProviderType(item["provider"])
                if "provider" in item
                else detect_provider(model_id)
            )
            merged[model_id] = ModelInfo(
                model_id=model_id,
                display_name=item.get("name", model_id),
                provider=provider,
                icon=item.get("icon", "cpu"),
                color=item.get("color", PROVIDER_COLORS[provider]),
                description=item.get("description", ""),
            )
        return cls(tuple(merged.values()))

    def __getitem__(self, model_id: str) -> ModelInfo:
        return self._models[model_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def get_info(self, model_id: str) -> ModelInfo:
        """Catalog entry, or a synthesized one routed by detect_provider."""
        if model_id in self._models:
            return self._models[model_id]
        provider = detect_provider(model_id)
        return ModelInfo(
            model_id=model_id,
            display_name=model_id,
            provider=provider,
            color=PROVIDER_COLORS[provider],
        )

    def endpoint_for(self, model_id: str) -> str:
        return self.get_info(model_id).endpoint

    def by_provider(self, provider: ProviderType) -> list[ModelInfo]:
        return [m for m in self._models.values() if m.provider == provider]
