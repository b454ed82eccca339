"""Conversation persistence: a fire-and-forget message sink."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from writer_gateway.types import Role

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationSink(Protocol):
    """Anything that can store one message of a conversation."""

    async def persist_message(self, conversation_id: str, role: Role, content: str) -> str:
        """Store the message and return its id."""
        ...


@dataclass(frozen=True)
class StoredMessage:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime


@dataclass
class Conversation:
    id: str
    title: str = ""
    messages: list[StoredMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryConversationStore:
    """Process-local conversation store.

    Conversations are created on first write when they do not exist yet.
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}

    def create(self, title: str = "", conversation_id: str | None = None) -> Conversation:
        conversation = Conversation(id=conversation_id or uuid.uuid4().hex, title=title)
        self._conversations[conversation.id] = conversation
        return conversation

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def delete(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None

    def messages(self, conversation_id: str) -> list[StoredMessage]:
        conversation = self._conversations.get(conversation_id)
        return list(conversation.messages) if conversation else []

    async def persist_message(self, conversation_id: str, role: Role, content: str) -> str:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            conversation = self.create(conversation_id=conversation_id)
        message = StoredMessage(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
        )
        conversation.messages.append(message)
        return message.id


class BackgroundPersister:
    """Hands messages to a sink without blocking the response path.

    Each write runs in its own task; failures are logged and never reach the
    caller. ``drain()`` waits for outstanding writes (used on shutdown).
    """

    def __init__(self, sink: ConversationSink) -> None:
        self._sink = sink
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, conversation_id: str, role: Role, content: str) -> None:
        task = asyncio.create_task(self._persist(conversation_id, role, content))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, conversation_id: str, role: Role, content: str) -> None:
        try:
            message_id = await self._sink.persist_message(conversation_id, role, content)
        except Exception as exc:
            logger.error(
                "message_persist_failed",
                extra={"conversation_id": conversation_id, "role": role, "error": str(exc)},
            )
            return
        logger.debug(
            "message_persisted",
            extra={"conversation_id": conversation_id, "role": role, "message_id": message_id},
        )

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
