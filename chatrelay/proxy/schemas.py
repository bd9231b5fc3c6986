from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]


class ProxyMessage(BaseModel):
    role: Role
    content: str


class ProxyChatRequest(BaseModel):
    """Body accepted by every ``*-chat-stream`` function."""
    messages: list[ProxyMessage] = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    max_completion_tokens: int | None = Field(default=None, ge=1)
    stream: bool = True

    def system_prompt(self) -> str | None:
        return next((m.content for m in self.messages if m.role == "system"), None)

    def conversation(self) -> list[ProxyMessage]:
        return [m for m in self.messages if m.role != "system"]

    def plain_messages(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]
