"""Roster, service, and appointment records consumed by the scheduling core."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.config import settings
from src.utils import ensure_utc, parse_clock, to_utc_minutes


class InvariantViolationError(Exception):
    """Raised when the calling layer hands the core a malformed snapshot.

    This signals a bug upstream, not a business-rule rejection.
    ``RosterSnapshot.from_records`` (and so ``RosterRepository.build_snapshot``)
    converts pydantic validation failures into this class; records built
    directly from their constructors raise pydantic's ``ValidationError``.
    """

    code = "INVARIANT_VIOLATION"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    NO_SHOW = "no_show"


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class BreakWindow(_Record):
    """A pause inside a working interval. Minutes since local midnight."""

    start_time: int
    end_time: int

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> int:
        return parse_clock(value)

    @model_validator(mode="after")
    def _check_order(self) -> "BreakWindow":
        if self.start_time >= self.end_time:
            raise ValueError("break start_time must be before end_time")
        return self


class WorkInterval(_Record):
    """Recurring weekly availability. Weekday 0 = Sunday."""

    weekday: int = Field(ge=0, le=6)
    start_time: int
    end_time: int
    location_id: Optional[str] = None
    break_windows: tuple[BreakWindow, ...] = ()

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> int:
        return parse_clock(value)

    @model_validator(mode="after")
    def _check_order(self) -> "WorkInterval":
        if self.start_time >= self.end_time:
            raise ValueError("work interval start_time must be before end_time")
        return self

    def applies_to(self, weekday: int, location_id: str) -> bool:
        return self.weekday == weekday and self.location_id in (None, location_id)


class StaffAvailability(_Record):
    """One staff member's roster entry."""

    staff_id: str
    work_intervals: tuple[WorkInterval, ...] = ()
    location_ids: frozenset[str] = frozenset()
    permitted_category_ids: frozenset[str] = frozenset()

    def works_at(self, location_id: str) -> bool:
        return location_id in self.location_ids

    def is_permitted(self, category_id: str) -> bool:
        """An empty permission set means the staff member can serve everything."""
        return not self.permitted_category_ids or category_id in self.permitted_category_ids

    def intervals_for(self, weekday: int, location_id: str) -> list[WorkInterval]:
        return [i for i in self.work_intervals if i.applies_to(weekday, location_id)]


class RequiredResource(_Record):
    resource_type_id: str
    quantity: int = Field(default=1, ge=1)
    duration_minutes: int = 0


class ResourceClaim(_Record):
    """Resource units consumed for the whole interval of an appointment or hold."""

    resource_type_id: str
    quantity: int = Field(default=1, ge=1)


class ServiceItem(_Record):
    """A bookable service variant (e.g. Full Groom, size L, long coat)."""

    service_item_id: str
    service_category_id: str
    duration_minutes: Optional[int] = None
    price: float = Field(default=0.0, ge=0)
    size: str = "all"
    coat_type: str = "all"
    label: Optional[str] = None
    active: bool = True
    required_resources: tuple[RequiredResource, ...] = ()

    @property
    def resolved_duration_minutes(self) -> int:
        """Direct duration, else the serial sum of required-resource durations."""
        if self.duration_minutes is not None:
            return self.duration_minutes
        return sum(r.duration_minutes for r in self.required_resources)

    def resource_claims(self) -> tuple[ResourceClaim, ...]:
        return tuple(
            ResourceClaim(resource_type_id=r.resource_type_id, quantity=r.quantity)
            for r in self.required_resources
        )


class _TimedRecord(_Record):
    start: datetime
    end: datetime

    @field_validator("start", "end", mode="after")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_order(self) -> "_TimedRecord":
        if self.end <= self.start:
            raise ValueError(f"{type(self).__name__} end must be after start")
        return self

    @property
    def start_minute(self) -> int:
        return to_utc_minutes(self.start)

    @property
    def end_minute(self) -> int:
        return to_utc_minutes(self.end)


class Appointment(_TimedRecord):
    appointment_id: str
    staff_id: Optional[str] = None
    location_id: str
    service_item_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    resource_claims: tuple[ResourceClaim, ...] = ()


class TimeOff(_TimedRecord):
    staff_id: str
    reason: Optional[str] = None


class Resource(_Record):
    resource_id: str
    resource_type_id: str
    location_id: str
    capacity: int = Field(default=1, ge=0)
    active: bool = True


class BookingHold(_TimedRecord):
    """Short-lived tentative claim placed while a booking is being confirmed."""

    hold_id: str
    staff_id: Optional[str] = None
    location_id: str
    customer_id: Optional[str] = None
    resource_claims: tuple[ResourceClaim, ...] = ()
    expires_at: datetime
    created_by: str = Field(default="web", pattern="^(web|operator|assistant)$")

    @field_validator("expires_at", mode="after")
    @classmethod
    def _expiry_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def is_active(self, as_of: datetime) -> bool:
        return self.expires_at > ensure_utc(as_of)


class SlotRequest(_Record):
    """One booking attempt. ``staff_id=None`` means any eligible staff."""

    staff_id: Optional[str] = None
    location_id: str
    service_item_id: str
    desired_date: date
    desired_start_time: int

    @field_validator("desired_start_time", mode="before")
    @classmethod
    def _parse_clock(cls, value: Any) -> int:
        return parse_clock(value)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RosterSnapshot(_Record):
    """Point-in-time roster and appointment state for one scheduling decision."""

    timezone: str = settings.scheduling.default_timezone
    staff: tuple[StaffAvailability, ...] = ()
    appointments: tuple[Appointment, ...] = ()
    service_items: tuple[ServiceItem, ...] = ()
    resources: tuple[Resource, ...] = ()
    time_off: tuple[TimeOff, ...] = ()
    holds: tuple[BookingHold, ...] = ()
    company_work_hours: tuple[WorkInterval, ...] = ()
    as_of: datetime = Field(default_factory=_utc_now)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value!r}") from None
        return value

    @field_validator("as_of", mode="after")
    @classmethod
    def _as_of_to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_records(cls, **records: Any) -> "RosterSnapshot":
        """Build a snapshot from plain dicts, failing fast on malformed input."""
        try:
            return cls.model_validate(records)
        except ValidationError as exc:
            raise InvariantViolationError(f"Malformed roster snapshot: {exc}") from exc

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def find_staff(self, staff_id: str) -> Optional[StaffAvailability]:
        for member in self.staff:
            if member.staff_id == staff_id:
                return member
        return None

    def get_service_item(self, service_item_id: str) -> ServiceItem:
        for item in self.service_items:
            if item.service_item_id == service_item_id:
                return item
        raise InvariantViolationError(
            f"Service item {service_item_id!r} is not part of the snapshot"
        )

    def capacity_for(self, resource_type_id: str, location_id: str) -> int:
        return sum(
            r.capacity
            for r in self.resources
            if r.active and r.resource_type_id == resource_type_id and r.location_id == location_id
        )

    def with_appointment(self, appointment: Appointment) -> "RosterSnapshot":
        """Return a copy with ``appointment`` added (or replaced by id)."""
        kept = tuple(
            a for a in self.appointments if a.appointment_id != appointment.appointment_id
        )
        return self.model_copy(update={"appointments": kept + (appointment,)})

    def with_hold(self, hold: BookingHold) -> "RosterSnapshot":
        kept = tuple(h for h in self.holds if h.hold_id != hold.hold_id)
        return self.model_copy(update={"holds": kept + (hold,)})
