"""
Conversation-scoped streaming state.

A StreamingSession keeps the observable state a chat front end renders while
a reply is produced: whether it is still generating, the text so far, the
model that is answering, and the terminal error if the call failed.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from chatrelay.history import ConversationRepository, InMemoryConversationRepo, MessageRecord
from chatrelay.llm.exceptions import LLMError
from chatrelay.llm.fallback import FailureInfo, classify_failure
from chatrelay.llm.models import StreamResult
from chatrelay.logging_utils import ContextualLogger
from chatrelay.streaming_service import StreamHandle, StreamingService


class SessionStatus(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    FALLBACK = "fallback"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


GENERATING = (SessionStatus.STREAMING, SessionStatus.FALLBACK)


class StreamingSession:
    """
    Drives one conversation through a StreamingService.

    Sessions may share a service. Since the service runs one call at a time,
    a session whose reply is superseded by another session ends CANCELLED.
    """

    def __init__(
        self,
        service: StreamingService,
        repository: ConversationRepository | None = None,
        conversation_id: str | None = None,
        model: str | None = None,
        history_limit: int | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.service = service
        self.repository = repository or InMemoryConversationRepo()
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self.default_model = model
        self.history_limit = history_limit
        self.system_prompt = system_prompt

        self.status = SessionStatus.IDLE
        self.text = ""
        self.model: str | None = None
        self.error: LLMError | None = None
        self.failure: FailureInfo | None = None
        self._handle: StreamHandle | None = None
        self._log = ContextualLogger(
            {"conversation_id": self.conversation_id}, name=__name__
        )

    @property
    def is_generating(self) -> bool:
        return self.status in GENERATING

    @property
    def has_failed(self) -> bool:
        return self.status == SessionStatus.FAILED

    @property
    def error_message(self) -> str | None:
        """What to show the user in place of a failed reply."""
        if self.failure is None:
            return None
        return self.failure.user_message()

    async def send(
        self, content: str, model: str | None = None, **overrides: Any
    ) -> StreamHandle:
        """Store the user message and stream the assistant reply."""
        await self.repository.add_message(
            MessageRecord(
                conversation_id=self.conversation_id, role="user", content=content
            )
        )
        history = await self.repository.get_messages(
            self.conversation_id, limit=self.history_limit
        )
        messages = [record.to_chat_message().to_dict() for record in history]
        if self.system_prompt:
            messages.insert(0, {"role": "system", "content": self.system_prompt})

        request = self.service.build_request(
            messages, model or self.default_model, **overrides
        )

        # Our own reply in flight is replaced, not reported as superseded
        self._handle = None
        self.status = SessionStatus.STREAMING
        self.text = ""
        self.model = request.model
        self.error = None
        self.failure = None

        handle = self.service.stream_with_fallback(
            request,
            on_chunk=self._on_chunk,
            on_complete=self._on_complete,
            on_error=self._on_error,
            on_fallback=self._on_fallback,
        )
        handle.add_cancel_callback(self._on_cancelled)
        self._handle = handle
        self._log.info("Reply started", model=request.model, history=len(history))
        return self._handle

    async def wait(self) -> StreamResult | None:
        if self._handle is None:
            return None
        return await self._handle.wait()

    def stop(self) -> None:
        """Cancel the in-flight reply."""
        if self._handle is not None:
            self._handle.cancel()
        if self.is_generating:
            self.status = SessionStatus.CANCELLED
        self.text = ""

    def _on_chunk(self, fragment: str) -> None:
        self.text += fragment

    def _on_fallback(self, fallback_model: str, error: LLMError) -> None:
        # Primary output is void once we switch models
        self.text = ""
        self.model = fallback_model
        self.status = SessionStatus.FALLBACK
        self._log.warning(
            "Switching to fallback model",
            fallback_model=fallback_model,
            error_message=str(error),
        )

    async def _on_complete(self, full_text: str, model: str) -> None:
        self.text = full_text
        self.model = model
        self.status = SessionStatus.COMPLETE
        await self.repository.add_message(
            MessageRecord(
                conversation_id=self.conversation_id,
                role="assistant",
                content=full_text,
                model=model,
            )
        )

    def _on_error(self, error: LLMError) -> None:
        self.text = ""
        self.error = error
        self.failure = classify_failure(error)
        self.status = SessionStatus.FAILED

    def _on_cancelled(self, handle: StreamHandle) -> None:
        # Also fires when another caller of the shared service starts a call
        if handle is not self._handle or not self.is_generating:
            return
        self.text = ""
        self.status = SessionStatus.CANCELLED
        self._log.info("Reply cancelled", generation=handle.generation)
