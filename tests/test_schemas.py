"""Tests for roster and appointment records."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.schemas.scheduling_schema import (
    Appointment,
    BookingHold,
    InvariantViolationError,
    RequiredResource,
    RosterSnapshot,
    ServiceItem,
    SlotRequest,
    StaffAvailability,
    WorkInterval,
)
from tests.conftest import AS_OF, LOCATION, at, make_appointment, make_snapshot


class TestWorkInterval:
    def test_parses_clock_strings(self):
        interval = WorkInterval(weekday=1, start_time="09:00", end_time="17:30")
        assert (interval.start_time, interval.end_time) == (540, 1050)

    def test_start_must_precede_end(self):
        with pytest.raises(ValidationError):
            WorkInterval(weekday=1, start_time="17:00", end_time="09:00")

    def test_weekday_range(self):
        with pytest.raises(ValidationError):
            WorkInterval(weekday=7, start_time="09:00", end_time="17:00")

    def test_break_must_be_ordered(self):
        with pytest.raises(ValidationError):
            WorkInterval(
                weekday=1, start_time="09:00", end_time="17:00",
                break_windows=({"start_time": "13:00", "end_time": "12:00"},),
            )

    def test_location_scoping(self):
        anywhere = WorkInterval(weekday=1, start_time="09:00", end_time="17:00")
        scoped = WorkInterval(weekday=1, start_time="09:00", end_time="17:00", location_id="loc-2")
        assert anywhere.applies_to(1, LOCATION)
        assert not scoped.applies_to(1, LOCATION)
        assert scoped.applies_to(1, "loc-2")
        assert not anywhere.applies_to(2, LOCATION)

    def test_records_are_frozen(self):
        interval = WorkInterval(weekday=1, start_time="09:00", end_time="17:00")
        with pytest.raises(ValidationError):
            interval.weekday = 2


class TestServiceItem:
    def test_direct_duration_wins(self):
        item = ServiceItem(
            service_item_id="x", service_category_id="c", duration_minutes=45,
            required_resources=(RequiredResource(resource_type_id="tub", duration_minutes=30),),
        )
        assert item.resolved_duration_minutes == 45

    def test_resource_durations_are_summed(self):
        item = ServiceItem(
            service_item_id="x", service_category_id="c",
            required_resources=(
                RequiredResource(resource_type_id="tub", duration_minutes=30),
                RequiredResource(resource_type_id="dryer", duration_minutes=20),
            ),
        )
        assert item.resolved_duration_minutes == 50

    def test_no_duration_resolves_to_zero(self):
        assert ServiceItem(service_item_id="x", service_category_id="c").resolved_duration_minutes == 0

    def test_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            RequiredResource(resource_type_id="tub", quantity=0)


class TestTimedRecords:
    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            make_appointment("apt-1", at(11), at(10))

    def test_zero_length_rejected(self):
        with pytest.raises(ValidationError):
            make_appointment("apt-1", at(10), at(10))

    def test_naive_datetimes_are_utc(self):
        appointment = Appointment(
            appointment_id="apt-1", location_id=LOCATION,
            start=datetime(2025, 3, 17, 10, 0), end=datetime(2025, 3, 17, 11, 0),
        )
        assert appointment.start == at(10)
        assert appointment.end_minute - appointment.start_minute == 60

    def test_hold_activity_uses_expiry(self):
        hold = BookingHold(
            hold_id="h", location_id=LOCATION, start=at(10), end=at(11),
            expires_at=AS_OF + timedelta(seconds=30),
        )
        assert hold.is_active(AS_OF)
        assert not hold.is_active(AS_OF + timedelta(seconds=30))

    def test_hold_creator_is_restricted(self):
        with pytest.raises(ValidationError):
            BookingHold(
                hold_id="h", location_id=LOCATION, start=at(10), end=at(11),
                expires_at=AS_OF, created_by="robot",
            )


class TestRosterSnapshot:
    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValidationError):
            RosterSnapshot(timezone="Mars/Olympus_Mons")

    def test_from_records_wraps_validation_errors(self):
        with pytest.raises(InvariantViolationError) as exc_info:
            RosterSnapshot.from_records(
                appointments=[{"appointment_id": "a", "location_id": LOCATION,
                               "start": "2025-03-17T11:00:00Z", "end": "2025-03-17T10:00:00Z"}],
            )
        assert exc_info.value.code == "INVARIANT_VIOLATION"

    def test_from_records_builds_nested_models(self):
        snapshot = RosterSnapshot.from_records(
            timezone="Europe/London",
            staff=[{"staff_id": "jane", "location_ids": [LOCATION],
                    "work_intervals": [{"weekday": 1, "start_time": "09:00", "end_time": "17:00"}]}],
        )
        assert isinstance(snapshot.staff[0], StaffAvailability)
        assert snapshot.find_staff("jane").works_at(LOCATION)
        assert snapshot.find_staff("ghost") is None

    def test_missing_service_item_raises(self, snapshot):
        with pytest.raises(InvariantViolationError):
            snapshot.get_service_item("nope")

    def test_with_appointment_replaces_by_id(self):
        snapshot = make_snapshot(appointments=(make_appointment("apt-1", at(9), at(10)),))
        moved = snapshot.with_appointment(make_appointment("apt-1", at(12), at(13)))
        assert len(moved.appointments) == 1
        assert moved.appointments[0].start == at(12)
        assert snapshot.appointments[0].start == at(9)

    def test_as_of_defaults_to_now(self):
        before = datetime.now(timezone.utc)
        assert RosterSnapshot().as_of >= before


class TestSlotRequest:
    def test_desired_start_parsed(self):
        request = SlotRequest(
            location_id=LOCATION, service_item_id="x",
            desired_date="2025-03-17", desired_start_time="10:30",
        )
        assert request.desired_start_time == 630
        assert request.staff_id is None
