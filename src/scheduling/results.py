"""Tagged outcomes returned by the scheduling core.

Business-rule failures are values, not exceptions, so callers can render a
specific message and retry with different parameters.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from src.schemas.scheduling_schema import ResourceClaim


class RejectionReason(str, Enum):
    """Why a slot could not be offered or booked."""
    OUTSIDE_WORKING_HOURS = "OUTSIDE_WORKING_HOURS"
    STAFF_NOT_PERMITTED = "STAFF_NOT_PERMITTED"
    TIME_CONFLICT = "TIME_CONFLICT"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    INVALID_DURATION = "INVALID_DURATION"
    NO_ELIGIBLE_STAFF = "NO_ELIGIBLE_STAFF"
    BREAK_CONFLICT = "BREAK_CONFLICT"
    STAFF_TIME_OFF = "STAFF_TIME_OFF"
    SLOT_HELD = "SLOT_HELD"


@dataclass(frozen=True)
class Slot:
    """A bookable candidate produced by enumeration."""
    staff_id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Conflict:
    """Why a reservation could not be made, with the blocking record for messaging."""
    reason: RejectionReason
    message: str
    appointment_id: Optional[str] = None
    hold_id: Optional[str] = None
    resource_type_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    accepted: bool = field(default=False, init=False)


@dataclass(frozen=True)
class ReservationToken:
    """Proof that a reservation passed the overlap check against a snapshot."""
    token: str
    staff_id: Optional[str]
    start: datetime
    end: datetime
    resource_claims: tuple[ResourceClaim, ...] = ()
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Accepted:
    staff_id: str
    start: datetime
    end: datetime
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str
    staff_id: Optional[str] = None
    conflict: Optional[Conflict] = None
    accepted: bool = field(default=False, init=False)
