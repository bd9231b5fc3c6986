"""
Core dataclasses for proxied chat completions.

This module provides the request/response shapes shared by the client,
the streaming service and the proxy handlers:
- Provider and role enums
- Message structures
- Stream request and result models
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

MAX_TEMPERATURE = 2.0


class ProviderType(Enum):
    """Supported upstream providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    PERPLEXITY = "perplexity"
    OPENROUTER = "openrouter"


class MessageRole(Enum):
    """OpenAI-compatible message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    """OpenAI-compatible message structure."""
    role: MessageRole
    content: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(role=MessageRole(data["role"]), content=str(data["content"]))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class StreamRequest:
    """One chat-completion call, built fresh per request and never persisted."""
    messages: tuple[ChatMessage, ...]
    model: str
    temperature: float = 0.7
    max_tokens: int = 2000
    stream: bool = True
    endpoint: str | None = None

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("messages must contain at least one message")
        if not self.model:
            raise ValueError("model must be a non-empty identifier")
        if not 0.0 <= self.temperature <= MAX_TEMPERATURE:
            raise ValueError(
                f"temperature must be within [0, {MAX_TEMPERATURE}], "
                f"got {self.temperature}"
            )
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be at least 1")

    @classmethod
    def build(
        cls,
        messages: list[dict[str, Any]] | list[ChatMessage],
        model: str,
        **kwargs: Any,
    ) -> StreamRequest:
        """Build a request from plain ``{role, content}`` dicts or messages."""
        converted = tuple(
            m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m)
            for m in messages
        )
        return cls(messages=converted, model=model, **kwargs)

    def with_model(self, model: str) -> StreamRequest:
        """Same history and parameters aimed at another model."""
        return replace(self, model=model, endpoint=None)

    def to_payload(self) -> dict[str, Any]:
        """Proxy wire body."""
        return {
            "messages": [m.to_dict() for m in self.messages],
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            # Newer OpenAI models reject max_tokens
            "max_completion_tokens": self.max_tokens,
            "stream": self.stream,
        }


@dataclass(frozen=True)
class StreamResult:
    """Accumulated text of a finished call and the model that produced it."""
    text: str
    model: str
    fallback_used: bool = False
    chunk_count: int = 0
    finish_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
