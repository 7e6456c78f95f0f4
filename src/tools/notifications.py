"""
Booking notifications.

In production the sink would push to the staff dashboard over a socket and
to the customer's messaging channel. Publishing is best-effort: the booking
is already committed by the time an event is published.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class BookingEventType(str, Enum):
    CREATED = "appointment:created"
    UPDATED = "appointment:updated"
    CANCELED = "appointment:canceled"


@dataclass(frozen=True)
class BookingEvent:
    event_type: BookingEventType
    appointment_id: str
    staff_id: Optional[str]
    location_id: str
    start: datetime
    end: datetime
    customer_id: Optional[str] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSink(Protocol):
    async def publish(self, event: BookingEvent) -> None: ...


class InMemoryNotificationSink:
    """Collects published events. Used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[BookingEvent] = []

    async def publish(self, event: BookingEvent) -> None:
        self.events.append(event)
        logger.debug("Published %s for %s", event.event_type.value, event.appointment_id)

    def of_type(self, event_type: BookingEventType) -> list[BookingEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def reset(self) -> None:
        self.events.clear()
