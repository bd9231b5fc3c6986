# chatrelay/history/repositories/base.py
from __future__ import annotations

from typing import Protocol

from chatrelay.history.models import MessageRecord


class ConversationRepository(Protocol):
    """
    Interface for storing and retrieving conversation messages.
    """

    async def add_message(self, record: MessageRecord) -> None:
        """
        Append one message to its conversation.
        """
        ...

    async def get_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[MessageRecord]:
        """
        Return messages for a conversation ordered by creation timestamp.
        If limit is provided, only the most recent `limit` messages are returned.
        """
        ...

    async def list_conversations(self) -> list[str]:
        """
        Return a list of all conversation IDs.
        """
        ...
