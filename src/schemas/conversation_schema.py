"""Per-conversation buffering state for inbound chat bursts."""

import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ConversationBuffer:
    """
    Pending burst for one conversation.

    Created on the first message of a burst and deleted by the flush whose
    token still matches ``active_flush_token``. Only the debouncer mutates it.
    """
    conversation_id: str
    last_message_text: str = ""
    message_texts: list[str] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    message_count: int = 0
    last_activity: float = field(default_factory=time.time)
    active_flush_token: Optional[str] = None

    def add_message(self, text: str, image_url: Optional[str] = None) -> None:
        """Record one inbound message. Image-only and blank messages still count."""
        cleaned = text.strip()
        if cleaned:
            self.message_texts.append(cleaned)
            self.last_message_text = cleaned
        if image_url:
            self.image_urls.append(image_url)
        self.message_count += 1
        self.last_activity = time.time()

    def start_new_burst(self) -> None:
        """Forget what the in-flight flush already took; keep the token and activity."""
        self.message_texts = []
        self.image_urls = []
        self.last_message_text = ""
        self.message_count = 0

    def combined_text(self, mode: str = "latest") -> str:
        """Text handed to the flush handler: the latest message, or all joined by spaces."""
        if mode == "concatenate":
            return " ".join(self.message_texts)
        return self.last_message_text


@dataclass(frozen=True)
class BurstDetails:
    """What a flush carried besides its text, for handlers that opt in."""
    message_count: int
    image_urls: tuple[str, ...] = ()
