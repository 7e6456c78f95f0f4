from src.scheduling.intervals import Interval
from src.scheduling.overlap_guard import OverlapGuard
from src.scheduling.results import (
    Accepted,
    Conflict,
    Rejected,
    RejectionReason,
    ReservationToken,
    Slot,
)
from src.scheduling.slot_engine import SlotEngine, SlotSequence
from src.schemas.scheduling_schema import InvariantViolationError

__all__ = [
    "SlotEngine",
    "SlotSequence",
    "OverlapGuard",
    "Interval",
    "Slot",
    "Accepted",
    "Rejected",
    "RejectionReason",
    "Conflict",
    "ReservationToken",
    "InvariantViolationError",
]
