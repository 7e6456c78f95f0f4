"""Shared test fixtures and helpers."""

from datetime import date, datetime, timezone
from typing import Optional

import pytest

from src.conversation.state_machine import BufferStateMachine
from src.scheduling.overlap_guard import OverlapGuard
from src.scheduling.slot_engine import SlotEngine
from src.schemas.scheduling_schema import (
    Appointment,
    AppointmentStatus,
    RequiredResource,
    Resource,
    ResourceClaim,
    RosterSnapshot,
    ServiceItem,
    SlotRequest,
    StaffAvailability,
    WorkInterval,
)

MONDAY = date(2025, 3, 17)
TUESDAY = date(2025, 3, 18)
LOCATION = "loc-1"
AS_OF = datetime(2025, 3, 16, 12, 0, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    """UTC datetime on ``day``; snapshots in tests default to the UTC timezone."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def make_staff(
    staff_id: str = "jane",
    weekday: int = 1,
    start: str = "09:00",
    end: str = "17:00",
    locations: tuple[str, ...] = (LOCATION,),
    categories: tuple[str, ...] = (),
    breaks: tuple[tuple[str, str], ...] = (),
) -> StaffAvailability:
    """Staff member with a single weekly interval (weekday 1 = Monday)."""
    return StaffAvailability(
        staff_id=staff_id,
        work_intervals=(
            WorkInterval(
                weekday=weekday,
                start_time=start,
                end_time=end,
                break_windows=tuple({"start_time": s, "end_time": e} for s, e in breaks),
            ),
        ),
        location_ids=frozenset(locations),
        permitted_category_ids=frozenset(categories),
    )


def make_appointment(
    appointment_id: str,
    start: datetime,
    end: datetime,
    staff_id: Optional[str] = "jane",
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    claims: tuple[ResourceClaim, ...] = (),
    location_id: str = LOCATION,
) -> Appointment:
    return Appointment(
        appointment_id=appointment_id,
        staff_id=staff_id,
        location_id=location_id,
        start=start,
        end=end,
        status=status,
        resource_claims=claims,
    )


def make_request(
    start_time: str,
    service_item_id: str = "full-groom",
    staff_id: Optional[str] = "jane",
    day: date = MONDAY,
    location_id: str = LOCATION,
) -> SlotRequest:
    return SlotRequest(
        staff_id=staff_id,
        location_id=location_id,
        service_item_id=service_item_id,
        desired_date=day,
        desired_start_time=start_time,
    )


def make_snapshot(**overrides) -> RosterSnapshot:
    """Jane at loc-1, Monday 09:00-17:00, with the standard service items."""
    fields = dict(
        timezone="UTC",
        staff=(make_staff(),),
        service_items=(FULL_GROOM, NAIL_TRIM, BATH, ZERO_DURATION),
        resources=(BATH_TUB,),
        as_of=AS_OF,
    )
    fields.update(overrides)
    return RosterSnapshot(**fields)


FULL_GROOM = ServiceItem(
    service_item_id="full-groom",
    service_category_id="full_groom",
    duration_minutes=60,
    price=85.0,
)
NAIL_TRIM = ServiceItem(
    service_item_id="nail-trim",
    service_category_id="nail_trim",
    duration_minutes=15,
    price=20.0,
)
BATH = ServiceItem(
    service_item_id="bath",
    service_category_id="bath_brush",
    required_resources=(RequiredResource(resource_type_id="bath-tub", quantity=1, duration_minutes=30),),
    price=40.0,
)
ZERO_DURATION = ServiceItem(
    service_item_id="broken",
    service_category_id="full_groom",
    duration_minutes=0,
)
BATH_TUB = Resource(resource_id="tub-1", resource_type_id="bath-tub", location_id=LOCATION, capacity=1)


@pytest.fixture
def engine():
    return SlotEngine(step_minutes=30)


@pytest.fixture
def guard():
    return OverlapGuard()


@pytest.fixture
def snapshot():
    return make_snapshot()


@pytest.fixture
def buffer_machine():
    return BufferStateMachine()
