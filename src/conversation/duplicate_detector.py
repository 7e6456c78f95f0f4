"""
Redelivery guard for inbound webhook messages.

Messaging platforms retry webhooks, so the same message id can arrive more
than once. The detector remembers recently buffered ids and lets the
debouncer drop repeats before they reach a burst.
"""

import logging
from typing import Optional

from src.config import settings

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Bounded, insertion-ordered set of message ids already accepted."""

    def __init__(self, max_size: Optional[int] = None) -> None:
        self.max_size = settings.messaging.max_processed_message_ids if max_size is None else max_size
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        # dict keeps insertion order, so the oldest ids are trimmed first
        self._seen: dict[str, None] = {}

    def is_duplicate(self, message_id: Optional[str]) -> bool:
        """True if ``message_id`` was already added. Does not record it."""
        if not message_id:
            return False
        if message_id in self._seen:
            logger.debug("Duplicate message %s dropped (cache size %d)", message_id, len(self._seen))
            return True
        return False

    def add(self, message_id: Optional[str]) -> None:
        if not message_id:
            return
        self._seen[message_id] = None
        if len(self._seen) > self.max_size:
            self._trim()

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen

    def _trim(self) -> None:
        oldest = list(self._seen)[: len(self._seen) - self.max_size]
        for message_id in oldest:
            del self._seen[message_id]
        logger.debug("Trimmed %d old ids from duplicate cache", len(oldest))
