# chatrelay/history/repositories/memory_repo.py
from __future__ import annotations

import asyncio
from collections import defaultdict

import structlog

from chatrelay.history.models import MessageRecord

logger = structlog.get_logger(__name__)


class InMemoryConversationRepo:
    """
    Process-local conversation store.

    Nothing is persisted; contents are lost when the process exits.
    """

    def __init__(self) -> None:
        self._messages: dict[str, list[MessageRecord]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add_message(self, record: MessageRecord) -> None:
        async with self._lock:
            self._messages[record.conversation_id].append(record)
        logger.debug(
            "Stored message",
            conversation_id=record.conversation_id,
            role=record.role,
        )

    async def get_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[MessageRecord]:
        async with self._lock:
            # sorted() is stable, so equal timestamps keep insertion order
            messages = sorted(
                self._messages.get(conversation_id, []),
                key=lambda record: record.created_at,
            )
        if limit is not None:
            if limit <= 0:
                return []
            messages = messages[-limit:]
        return messages

    async def list_conversations(self) -> list[str]:
        async with self._lock:
            return list(self._messages.keys())
