"""
Upstream provider adapters.

Each adapter turns a proxy request into the provider's HTTP contract and
knows how to read the provider's answer back. Streaming deltas from every
provider are re-framed as OpenAI-shape ``choices[0].delta.content`` events
by the relay in ``chatrelay.proxy.app``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from chatrelay.config import Configuration
from chatrelay.llm.models import ProviderType
from chatrelay.llm.streaming.parser import extract_content

from .schemas import ProxyChatRequest

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


@dataclass(frozen=True)
class UpstreamCall:
    """Fully resolved upstream HTTP request."""
    url: str
    model: str
    headers: dict[str, str] = field(default_factory=dict)
    json: dict[str, Any] = field(default_factory=dict)


def _first_object(items: Any) -> dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _join_text(parts: Iterable[Any]) -> str:
    return "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )

class ProviderAdapter(ABC):
    provider: ProviderType
    function_name: str
    default_model: str
    vendor_prefixes: tuple[str, ...] = ()

    def __init__(self, base_url: str, api_key_env: str | list[str]):
        self.base_url = base_url.rstrip("/")
        self.api_key_env = api_key_env

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def display_key_env(self) -> str:
        if isinstance(self.api_key_env, str):
            return self.api_key_env
        return self.api_key_env[0]

    def resolve_model(self, model: str | None) -> str:
        """Model id the upstream understands."""
        if not model:
            return self.default_model
        for prefix in self.vendor_prefixes:
            if model.startswith(prefix):
                return model[len(prefix):]
        return model

    @abstractmethod
    def build_call(self, body: ProxyChatRequest, api_key: str) -> UpstreamCall:
        ...

    def extract_delta(self, data: dict[str, Any]) -> str | None:
        """Text delta from one upstream stream event."""
        return extract_content(data)

    def extract_text(self, data: dict[str, Any]) -> str:
        """Full text from a non-streaming upstream answer."""
        choice = _first_object(data.get("choices"))
        message = choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""


class OpenAICompatibleAdapter(ProviderAdapter):
    """Providers exposing ``POST /chat/completions`` with bearer auth."""

    def headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def payload(self, body: ProxyChatRequest, model: str) -> dict[str, Any]:
        return {
            "model": model,
            "messages": body.plain_messages(),
            "temperature": (
                body.temperature
                if body.temperature is not None
                else DEFAULT_TEMPERATURE
            ),
            "max_tokens": body.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": body.stream,
        }

    def build_call(self, body: ProxyChatRequest, api_key: str) -> UpstreamCall:
        model = self.resolve_model(body.model)
        return UpstreamCall(
            url=f"{self.base_url}/chat/completions",
            model=model,
            headers=self.headers(api_key),
            json=self.payload(body, model),
        )


class OpenAIAdapter(OpenAICompatibleAdapter):
    provider = ProviderType.OPENAI
    function_name = "openai-chat-stream"
    default_model = "gpt-4o"
    vendor_prefixes = ("openai/",)

    # Reasoning-era models take max_completion_tokens and a fixed temperature
    NEW_MODEL_PREFIXES = ("gpt-4.1", "o1", "o3-", "o4-")

    def resolve_model(self, model: str | None) -> str:
        resolved = super().resolve_model(model)
        if resolved.startswith("gpt-5"):
            if "mini" in resolved or "nano" in resolved:
                return "gpt-4o-mini"
            return "gpt-4o"
        return resolved

    def payload(self, body: ProxyChatRequest, model: str) -> dict[str, Any]:
        if not model.startswith(self.NEW_MODEL_PREFIXES):
            return super().payload(body, model)

        payload: dict[str, Any] = {
            "model": model,
            "messages": body.plain_messages(),
            "stream": body.stream,
        }
        if cap := body.max_completion_tokens or body.max_tokens:
            payload["max_completion_tokens"] = cap
        return payload


class DeepSeekAdapter(OpenAICompatibleAdapter):
    provider = ProviderType.DEEPSEEK
    function_name = "deepseek-chat-stream"
    default_model = "deepseek-chat"
    vendor_prefixes = ("deepseek/",)

    VALID_MODELS = ("deepseek-chat", "deepseek-coder", "deepseek-reasoner")

    def resolve_model(self, model: str | None) -> str:
        resolved = super().resolve_model(model)
        return resolved if resolved in self.VALID_MODELS else self.default_model


class PerplexityAdapter(OpenAICompatibleAdapter):
    provider = ProviderType.PERPLEXITY
    function_name = "perplexity-chat-stream"
    default_model = "sonar"
    vendor_prefixes = ("perplexity/",)


class OpenRouterAdapter(OpenAICompatibleAdapter):
    provider = ProviderType.OPENROUTER
    function_name = "openrouter-chat-stream"
    default_model = "openai/gpt-4o-mini"

    def __init__(
        self,
        base_url: str,
        api_key_env: str | list[str],
        app_name: str = "",
        app_url: str = "",
    ):
        super().__init__(base_url, api_key_env)
        self.app_name = app_name
        self.app_url = app_url

    def headers(self, api_key: str) -> dict[str, str]:
        headers = super().headers(api_key)
        if self.app_url:
            headers["HTTP-Referer"] = self.app_url
        if self.app_name:
            headers["X-Title"] = self.app_name
        return headers


class AnthropicAdapter(ProviderAdapter):
    provider = ProviderType.ANTHROPIC
    function_name = "claude-chat-stream"
    default_model = "claude-3-5-sonnet-20241022"
    vendor_prefixes = ("anthropic/",)
    API_VERSION = "2023-06-01"

    def build_call(self, body: ProxyChatRequest, api_key: str) -> UpstreamCall:
        model = self.resolve_model(body.model)
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump() for m in body.conversation()],
            "temperature": (
                body.temperature
                if body.temperature is not None
                else DEFAULT_TEMPERATURE
            ),
            "max_tokens": body.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": body.stream,
        }
        if system := body.system_prompt():
            payload["system"] = system

        return UpstreamCall(
            url=f"{self.base_url}/messages",
            model=model,
            headers={
                "x-api-key": api_key,
                "anthropic-version": self.API_VERSION,
                "Content-Type": "application/json",
            },
            json=payload,
        )

    def extract_text(self, data: dict[str, Any]) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            return ""
        return _join_text(
            block for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )


class GeminiAdapter(ProviderAdapter):
    provider = ProviderType.GEMINI
    function_name = "gemini-chat-stream"
    default_model = "gemini-1.5-flash"
    vendor_prefixes = ("google/",)

    VALID_MODELS = ("gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro")

    def resolve_model(self, model: str | None) -> str:
        resolved = super().resolve_model(model)
        return resolved if resolved in self.VALID_MODELS else self.default_model

    def build_call(self, body: ProxyChatRequest, api_key: str) -> UpstreamCall:
        model = self.resolve_model(body.model)
        payload: dict[str, Any] = {
            "contents": [
                {
                    "role": "user" if m.role == "user" else "model",
                    "parts": [{"text": m.content}],
                }
                for m in body.conversation()
            ],
            "generationConfig": {
                "temperature": (
                    body.temperature
                    if body.temperature is not None
                    else DEFAULT_TEMPERATURE
                ),
                "maxOutputTokens": body.max_tokens or DEFAULT_MAX_TOKENS,
            },
        }
        if system := body.system_prompt():
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        action = "streamGenerateContent?alt=sse" if body.stream else "generateContent"
        return UpstreamCall(
            url=f"{self.base_url}/models/{model}:{action}",
            model=model,
            headers={
                "x-goog-api-key": api_key,
                "Content-Type": "application/json",
            },
            json=payload,
        )

    def extract_text(self, data: dict[str, Any]) -> str:
        content = _first_object(data.get("candidates")).get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return ""
        return _join_text(parts)


ADAPTER_TYPES: tuple[type[ProviderAdapter], ...] = (
    OpenAIAdapter,
    AnthropicAdapter,
    GeminiAdapter,
    DeepSeekAdapter,
    PerplexityAdapter,
    OpenRouterAdapter,
)


def build_adapters(config: Configuration) -> dict[str, ProviderAdapter]:
    """Adapters keyed by proxy function name, for every configured provider."""
    proxy_config = config.get_proxy_config()
    configured = proxy_config.get("providers", {})

    adapters: dict[str, ProviderAdapter] = {}
    for adapter_type in ADAPTER_TYPES:
        name = adapter_type.provider.value
        if name not in configured:
            continue
        provider_config = config.get_provider_config(name)
        if adapter_type is OpenRouterAdapter:
            adapter: ProviderAdapter = OpenRouterAdapter(
                provider_config["base_url"],
                provider_config["api_key_env"],
                app_name=proxy_config["app_name"],
                app_url=proxy_config["app_url"],
            )
        else:
            adapter = adapter_type(
                provider_config["base_url"], provider_config["api_key_env"]
            )
        adapters[adapter.function_name] = adapter
    return adapters
