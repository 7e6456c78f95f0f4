from src.conversation.buffer_store import BufferStore, InMemoryBufferStore
from src.conversation.debouncer import DebounceStats, MessageDebouncer
from src.conversation.duplicate_detector import DuplicateDetector
from src.conversation.state_machine import (
    BufferState,
    BufferStateMachine,
    BufferTrigger,
    InvalidTransitionError,
)

__all__ = [
    "MessageDebouncer",
    "DebounceStats",
    "DuplicateDetector",
    "BufferStore",
    "InMemoryBufferStore",
    "BufferStateMachine",
    "BufferState",
    "BufferTrigger",
    "InvalidTransitionError",
]
