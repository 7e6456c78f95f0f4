"""Conversation ID logging context for tracing chat bursts across modules.

Provides a conversation-aware logger that attaches the conversation id to
every log record, so a single customer's burst can be followed from the
webhook through the debouncer to the flush handler.

Usage:
    from src.logging_context import get_conversation_logger, set_conversation_id

    set_conversation_id("fb:1234567890")
    logger = get_conversation_logger(__name__)
    logger.info("Flushing buffer")  # record.conversation_id == "fb:1234567890"
"""

import logging
from contextvars import ContextVar, Token

_conversation_id: ContextVar[str] = ContextVar("conversation_id", default="NO_CONVERSATION")


def set_conversation_id(conversation_id: str) -> Token:
    """Set the conversation ID for the current async context."""
    return _conversation_id.set(conversation_id)


def reset_conversation_id(token: Token) -> None:
    """Restore the conversation ID that was active before ``set_conversation_id``."""
    _conversation_id.reset(token)


def get_conversation_id() -> str:
    """Retrieve the current conversation ID."""
    return _conversation_id.get()


class ConversationIdFilter(logging.Filter):
    """Injects conversation_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.conversation_id = _conversation_id.get()  # type: ignore[attr-defined]
        return True


def get_conversation_logger(name: str) -> logging.Logger:
    """Return a logger with the ConversationIdFilter attached.

    The filter adds ``conversation_id`` to each record so formatters can
    include ``%(conversation_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, ConversationIdFilter) for f in logger.filters):
        logger.addFilter(ConversationIdFilter())
    return logger
