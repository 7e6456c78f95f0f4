"""
Slot engine: bookable start times and booking validation.

Pure computation over a RosterSnapshot supplied by the caller. Working
hours are wall-clock times in the snapshot's timezone; everything is
converted to UTC epoch minutes before comparison.

Usage:
    engine = SlotEngine()
    slots = engine.enumerate_slots(date(2025, 3, 17), "loc-1", full_groom, snapshot)
    first_three = slots.first(3)

    decision = engine.validate(request, snapshot)
    if not decision.accepted:
        print(decision.reason, decision.message)
"""

import heapq
import itertools
import logging
from dataclasses import dataclass
from datetime import date, tzinfo
from typing import Callable, Iterator, Optional, Union

from src.config import settings
from src.scheduling.intervals import Interval, merge_intervals
from src.scheduling.overlap_guard import OverlapGuard
from src.scheduling.results import Accepted, Rejected, RejectionReason, Slot
from src.schemas.scheduling_schema import (
    RosterSnapshot,
    ServiceItem,
    SlotRequest,
    StaffAvailability,
    WorkInterval,
)
from src.utils import format_clock, local_date, wall_clock_to_utc_minutes, weekday_index

logger = logging.getLogger(__name__)

Decision = Union[Accepted, Rejected]


@dataclass(frozen=True)
class WorkingDay:
    """A staff member's merged working windows and breaks for one local date."""
    windows: tuple[Interval, ...]
    breaks: tuple[Interval, ...]

    def window_containing(self, interval: Interval) -> Optional[Interval]:
        for window in self.windows:
            if window.contains(interval):
                return window
        return None

    def break_overlapping(self, interval: Interval) -> Optional[Interval]:
        for pause in self.breaks:
            if pause.overlaps(interval):
                return pause
        return None


def _local_interval(day: date, start_time: int, end_time: int, tz: tzinfo) -> Optional[Interval]:
    """Wall-clock span on ``day`` in UTC minutes; None when a DST jump swallows it."""
    start = wall_clock_to_utc_minutes(day, start_time, tz)
    end = wall_clock_to_utc_minutes(day, end_time, tz)
    if end <= start:
        return None
    return Interval(start, end)


class SlotSequence:
    """Lazy, finite, restartable sequence of slots.

    Each iteration recomputes from the snapshot, so callers can take the
    first N without materialising the rest and iterate again later.
    """

    def __init__(self, factory: Callable[[], Iterator[Slot]]) -> None:
        self._factory = factory

    def __iter__(self) -> Iterator[Slot]:
        return self._factory()

    def first(self, n: int) -> list[Slot]:
        return list(itertools.islice(self, n))


class SlotEngine:
    """Enumerates candidate slots and validates booking requests."""

    def __init__(
        self,
        step_minutes: Optional[int] = None,
        guard: Optional[OverlapGuard] = None,
    ) -> None:
        self.step_minutes = settings.scheduling.slot_step_minutes if step_minutes is None else step_minutes
        if self.step_minutes < 1:
            raise ValueError(f"step_minutes must be >= 1, got {self.step_minutes}")
        self.guard = guard if guard is not None else OverlapGuard()

    # ------------------------------------------------------------------ #
    # Roster helpers
    # ------------------------------------------------------------------ #

    def eligible_staff(
        self,
        snapshot: RosterSnapshot,
        location_id: str,
        service_item: ServiceItem,
        staff_id: Optional[str] = None,
    ) -> list[StaffAvailability]:
        """Staff assigned to the location and permitted for the item's category, by id."""
        return sorted(
            (
                member
                for member in snapshot.staff
                if member.works_at(location_id)
                and member.is_permitted(service_item.service_category_id)
                and (staff_id is None or member.staff_id == staff_id)
            ),
            key=lambda m: m.staff_id,
        )

    def _intervals_for_day(
        self, staff: StaffAvailability, day: date, location_id: str, snapshot: RosterSnapshot
    ) -> list[WorkInterval]:
        weekday = weekday_index(day)
        intervals = staff.intervals_for(weekday, location_id)
        if intervals:
            return intervals
        # No personal schedule that day: fall back to company-wide hours.
        return [i for i in snapshot.company_work_hours if i.applies_to(weekday, location_id)]

    def working_windows(
        self, staff: StaffAvailability, day: date, location_id: str, snapshot: RosterSnapshot
    ) -> WorkingDay:
        tz = snapshot.tz
        windows: list[Interval] = []
        breaks: list[Interval] = []
        for work in self._intervals_for_day(staff, day, location_id, snapshot):
            window = _local_interval(day, work.start_time, work.end_time, tz)
            if window is not None:
                windows.append(window)
            for pause in work.break_windows:
                pause_interval = _local_interval(day, pause.start_time, pause.end_time, tz)
                if pause_interval is not None:
                    breaks.append(pause_interval)
        return WorkingDay(tuple(merge_intervals(windows)), tuple(merge_intervals(breaks)))

    def _time_off_overlapping(
        self, staff_id: str, interval: Interval, snapshot: RosterSnapshot
    ) -> bool:
        return any(
            t.staff_id == staff_id and Interval(t.start_minute, t.end_minute).overlaps(interval)
            for t in snapshot.time_off
        )

    def _appointments_on_day(self, staff_id: str, day: date, snapshot: RosterSnapshot) -> int:
        tz = snapshot.tz
        return sum(
            1
            for a in snapshot.appointments
            if a.staff_id == staff_id
            and self.guard.is_occupying(a)
            and local_date(a.start_minute, tz) == day
        )

    # ------------------------------------------------------------------ #
    # Enumeration
    # ------------------------------------------------------------------ #

    def _staff_slots(
        self,
        staff: StaffAvailability,
        day: date,
        location_id: str,
        service_item: ServiceItem,
        snapshot: RosterSnapshot,
    ) -> Iterator[Slot]:
        duration = service_item.resolved_duration_minutes
        claims = service_item.resource_claims()
        working = self.working_windows(staff, day, location_id, snapshot)

        for window in working.windows:
            start = window.start
            while start + duration <= window.end:
                candidate = Interval(start, start + duration)
                start += self.step_minutes
                if working.break_overlapping(candidate) is not None:
                    continue
                if self._time_off_overlapping(staff.staff_id, candidate, snapshot):
                    continue
                outcome = self.guard.reserve(
                    staff.staff_id, candidate, claims, snapshot, location_id=location_id
                )
                if not outcome.accepted:
                    continue
                yield Slot(
                    staff_id=staff.staff_id,
                    start=candidate.start_datetime(),
                    end=candidate.end_datetime(),
                )

    def enumerate_slots(
        self,
        day: date,
        location_id: str,
        service_item: ServiceItem,
        snapshot: RosterSnapshot,
        staff_id: Optional[str] = None,
    ) -> SlotSequence:
        """All valid slots for ``day`` at ``location_id``, ordered by (start, staff_id).

        An item with a non-positive duration produces an empty sequence;
        use ``available_slots`` to get the INVALID_DURATION reason.
        """

        def generate() -> Iterator[Slot]:
            if service_item.resolved_duration_minutes <= 0:
                return iter(())
            per_staff = [
                self._staff_slots(member, day, location_id, service_item, snapshot)
                for member in self.eligible_staff(snapshot, location_id, service_item, staff_id)
            ]
            return heapq.merge(*per_staff, key=lambda s: (s.start, s.staff_id))

        return SlotSequence(generate)

    def available_slots(
        self,
        day: date,
        location_id: str,
        service_item: ServiceItem,
        snapshot: RosterSnapshot,
        staff_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Union[list[Slot], Rejected]:
        """Materialised slots, or a Rejected explaining why there are none."""
        if service_item.resolved_duration_minutes <= 0:
            return self._invalid_duration(service_item)

        sequence = self.enumerate_slots(day, location_id, service_item, snapshot, staff_id)
        slots = sequence.first(limit) if limit is not None else list(sequence)
        if not slots:
            return Rejected(
                reason=RejectionReason.NO_ELIGIBLE_STAFF,
                message=f"No staff can perform this service at {location_id} on {day.isoformat()}.",
                staff_id=staff_id,
            )
        return slots

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    def validate(
        self,
        request: SlotRequest,
        snapshot: RosterSnapshot,
        exclude_appointment_id: Optional[str] = None,
        exclude_hold_id: Optional[str] = None,
    ) -> Decision:
        """
        Accept or reject one booking request against a snapshot.

        ``exclude_appointment_id`` ignores the appointment being rescheduled;
        ``exclude_hold_id`` ignores the caller's own booking hold.
        """
        service_item = snapshot.get_service_item(request.service_item_id)
        duration = service_item.resolved_duration_minutes
        if duration <= 0:
            return self._invalid_duration(service_item)

        start = wall_clock_to_utc_minutes(request.desired_date, request.desired_start_time, snapshot.tz)
        interval = Interval(start, start + duration)

        if request.staff_id is not None:
            staff = snapshot.find_staff(request.staff_id)
            if staff is None or not staff.works_at(request.location_id):
                return Rejected(
                    reason=RejectionReason.NO_ELIGIBLE_STAFF,
                    message=f"Staff {request.staff_id} does not work at {request.location_id}.",
                    staff_id=request.staff_id,
                )
            if not staff.is_permitted(service_item.service_category_id):
                return Rejected(
                    reason=RejectionReason.STAFF_NOT_PERMITTED,
                    message=f"Staff {staff.staff_id} is not qualified for this service.",
                    staff_id=staff.staff_id,
                )
            return self._validate_for_staff(
                staff, request, service_item, interval, snapshot,
                exclude_appointment_id, exclude_hold_id,
            )

        candidates = self.eligible_staff(snapshot, request.location_id, service_item)
        if not candidates:
            return Rejected(
                reason=RejectionReason.NO_ELIGIBLE_STAFF,
                message=f"No staff at {request.location_id} can perform this service.",
            )

        # Load balancing: fewest appointments that day first, then staff id.
        ranked = sorted(
            candidates,
            key=lambda m: (self._appointments_on_day(m.staff_id, request.desired_date, snapshot), m.staff_id),
        )
        first_rejection: Optional[Rejected] = None
        for member in ranked:
            decision = self._validate_for_staff(
                member, request, service_item, interval, snapshot,
                exclude_appointment_id, exclude_hold_id,
            )
            if decision.accepted:
                return decision
            if first_rejection is None:
                first_rejection = decision
        logger.debug("No staff accepted request for %s: %s", request.location_id, first_rejection.reason)
        return first_rejection

    def _validate_for_staff(
        self,
        staff: StaffAvailability,
        request: SlotRequest,
        service_item: ServiceItem,
        interval: Interval,
        snapshot: RosterSnapshot,
        exclude_appointment_id: Optional[str],
        exclude_hold_id: Optional[str],
    ) -> Decision:
        working = self.working_windows(staff, request.desired_date, request.location_id, snapshot)
        if working.window_containing(interval) is None:
            return Rejected(
                reason=RejectionReason.OUTSIDE_WORKING_HOURS,
                message=(
                    f"{format_clock(request.desired_start_time)} for {interval.duration} minutes "
                    f"is outside working hours for {staff.staff_id}."
                ),
                staff_id=staff.staff_id,
            )
        if working.break_overlapping(interval) is not None:
            return Rejected(
                reason=RejectionReason.BREAK_CONFLICT,
                message=f"The requested time overlaps a break for {staff.staff_id}.",
                staff_id=staff.staff_id,
            )
        if self._time_off_overlapping(staff.staff_id, interval, snapshot):
            return Rejected(
                reason=RejectionReason.STAFF_TIME_OFF,
                message=f"{staff.staff_id} is on time off at the requested time.",
                staff_id=staff.staff_id,
            )

        outcome = self.guard.reserve(
            staff.staff_id, interval, service_item.resource_claims(), snapshot,
            location_id=request.location_id,
            exclude_appointment_id=exclude_appointment_id,
            exclude_hold_id=exclude_hold_id,
        )
        if not outcome.accepted:
            return Rejected(
                reason=outcome.reason,
                message=outcome.message,
                staff_id=staff.staff_id,
                conflict=outcome,
            )
        return Accepted(
            staff_id=staff.staff_id,
            start=interval.start_datetime(),
            end=interval.end_datetime(),
        )

    @staticmethod
    def _invalid_duration(service_item: ServiceItem) -> Rejected:
        return Rejected(
            reason=RejectionReason.INVALID_DURATION,
            message=(
                f"Service item {service_item.service_item_id} has no positive duration "
                f"({service_item.resolved_duration_minutes} minutes)."
            ),
        )
