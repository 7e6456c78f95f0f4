"""
Injectable storage for conversation buffers.

The debouncer only talks to this interface, so a single-instance
deployment can keep buffers in memory while a multi-instance deployment
backs them with a shared store. Flush tokens stored here are the
cross-process source of truth; timers stay local to each process.
"""

import logging
from typing import Optional, Protocol

from src.schemas.conversation_schema import ConversationBuffer

logger = logging.getLogger(__name__)


class BufferStore(Protocol):
    """Async get/set/delete over buffers keyed by conversation id."""

    async def get(self, conversation_id: str) -> Optional[ConversationBuffer]: ...

    async def set(self, conversation_id: str, buffer: ConversationBuffer) -> None: ...

    async def delete(self, conversation_id: str) -> None: ...

    async def items(self) -> list[tuple[str, ConversationBuffer]]: ...


class InMemoryBufferStore:
    """Process-local buffer table. The default for single-instance deployments."""

    def __init__(self) -> None:
        self._buffers: dict[str, ConversationBuffer] = {}

    async def get(self, conversation_id: str) -> Optional[ConversationBuffer]:
        return self._buffers.get(conversation_id)

    async def set(self, conversation_id: str, buffer: ConversationBuffer) -> None:
        self._buffers[conversation_id] = buffer

    async def delete(self, conversation_id: str) -> None:
        if self._buffers.pop(conversation_id, None) is not None:
            logger.debug("Buffer deleted for %s", conversation_id)

    async def items(self) -> list[tuple[str, ConversationBuffer]]:
        return list(self._buffers.items())

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._buffers
