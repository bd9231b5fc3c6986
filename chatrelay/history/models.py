# chatrelay/history/models.py
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from chatrelay.llm.models import ChatMessage, MessageRole

Role = Literal["system", "user", "assistant"]


class MessageRecord(BaseModel):
    """
    One stored conversation message.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str
    role: Role
    content: str
    model: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=MessageRole(self.role), content=self.content)
