"""Conversation history interface consumed by streaming sessions."""

from __future__ import annotations

from .models import MessageRecord
from .repositories.base import ConversationRepository
from .repositories.memory_repo import InMemoryConversationRepo

__all__ = ["ConversationRepository", "InMemoryConversationRepo", "MessageRecord"]
