"""
Overlap guard: the last check before a booking is persisted.

The guard is a pure function of a snapshot. The commit path is expected to
re-fetch the snapshot inside its per-staff / per-resource critical section,
call ``reserve`` again, and only then write. Atomicity of that
re-check-and-write belongs to the persistence layer.

Usage:
    guard = OverlapGuard()
    outcome = guard.reserve("staff-1", interval, claims, snapshot, location_id="loc-1")
    if not outcome.accepted:
        print(outcome.message)  # "This time was just booked ..."
"""

import logging
import uuid
from typing import Iterable, Optional, Union

from src.config import settings
from src.scheduling.intervals import Interval, peak_overlap
from src.scheduling.results import Conflict, RejectionReason, ReservationToken
from src.schemas.scheduling_schema import (
    Appointment,
    AppointmentStatus,
    BookingHold,
    ResourceClaim,
    RosterSnapshot,
)

logger = logging.getLogger(__name__)


def _appointment_interval(appointment: Appointment) -> Interval:
    return Interval(appointment.start_minute, appointment.end_minute)


class OverlapGuard:
    """Enforces no double-booking of a staff member or an exhausted resource."""

    def __init__(self, occupying_statuses: Optional[Iterable[Union[str, AppointmentStatus]]] = None) -> None:
        statuses = settings.scheduling.occupying_statuses if occupying_statuses is None else occupying_statuses
        self.occupying_statuses: frozenset[AppointmentStatus] = frozenset(
            AppointmentStatus(s) for s in statuses
        )

    def is_occupying(self, appointment: Appointment) -> bool:
        return appointment.status in self.occupying_statuses

    def staff_conflicts(
        self,
        staff_id: str,
        interval: Interval,
        appointments: Iterable[Appointment],
        exclude_appointment_id: Optional[str] = None,
    ) -> list[Appointment]:
        """Occupying appointments for ``staff_id`` that intersect ``interval``, across all locations."""
        conflicts = [
            a
            for a in appointments
            if a.staff_id == staff_id
            and a.appointment_id != exclude_appointment_id
            and self.is_occupying(a)
            and _appointment_interval(a).overlaps(interval)
        ]
        return sorted(conflicts, key=lambda a: (a.start, a.appointment_id))

    def staff_hold_conflict(
        self,
        staff_id: str,
        interval: Interval,
        snapshot: RosterSnapshot,
        exclude_hold_id: Optional[str] = None,
    ) -> Optional[BookingHold]:
        for hold in snapshot.holds:
            if (
                hold.staff_id == staff_id
                and hold.hold_id != exclude_hold_id
                and hold.is_active(snapshot.as_of)
                and Interval(hold.start_minute, hold.end_minute).overlaps(interval)
            ):
                return hold
        return None

    def resource_usage(
        self,
        resource_type_id: str,
        interval: Interval,
        snapshot: RosterSnapshot,
        location_id: str,
        exclude_appointment_id: Optional[str] = None,
        exclude_hold_id: Optional[str] = None,
    ) -> int:
        """Peak number of units of a resource type in use at any instant of ``interval``."""
        weighted: list[tuple[Interval, int]] = []
        for appt in snapshot.appointments:
            if (
                appt.location_id != location_id
                or appt.appointment_id == exclude_appointment_id
                or not self.is_occupying(appt)
            ):
                continue
            units = sum(c.quantity for c in appt.resource_claims if c.resource_type_id == resource_type_id)
            if units:
                weighted.append((_appointment_interval(appt), units))
        for hold in snapshot.holds:
            if (
                hold.location_id != location_id
                or hold.hold_id == exclude_hold_id
                or not hold.is_active(snapshot.as_of)
            ):
                continue
            units = sum(c.quantity for c in hold.resource_claims if c.resource_type_id == resource_type_id)
            if units:
                weighted.append((Interval(hold.start_minute, hold.end_minute), units))
        return peak_overlap(weighted, interval)

    def check_resources(
        self,
        resource_claims: Iterable[ResourceClaim],
        interval: Interval,
        snapshot: RosterSnapshot,
        location_id: str,
        exclude_appointment_id: Optional[str] = None,
        exclude_hold_id: Optional[str] = None,
    ) -> Optional[Conflict]:
        requested: dict[str, int] = {}
        for claim in resource_claims:
            requested[claim.resource_type_id] = requested.get(claim.resource_type_id, 0) + claim.quantity

        for resource_type_id, quantity in sorted(requested.items()):
            capacity = snapshot.capacity_for(resource_type_id, location_id)
            used = self.resource_usage(
                resource_type_id, interval, snapshot, location_id,
                exclude_appointment_id=exclude_appointment_id,
                exclude_hold_id=exclude_hold_id,
            )
            if used + quantity > capacity:
                logger.debug(
                    "Resource %s exhausted at %s: used=%d requested=%d capacity=%d",
                    resource_type_id, location_id, used, quantity, capacity,
                )
                return Conflict(
                    reason=RejectionReason.RESOURCE_CONFLICT,
                    message=(
                        f"Not enough {resource_type_id} available "
                        f"({capacity - used} free, {quantity} needed)."
                    ),
                    resource_type_id=resource_type_id,
                    start=interval.start_datetime(),
                    end=interval.end_datetime(),
                )
        return None

    def reserve(
        self,
        staff_id: Optional[str],
        interval: Interval,
        resource_claims: Iterable[ResourceClaim],
        snapshot: RosterSnapshot,
        *,
        location_id: str,
        exclude_appointment_id: Optional[str] = None,
        exclude_hold_id: Optional[str] = None,
    ) -> Union[ReservationToken, Conflict]:
        """
        Check that ``interval`` can be claimed for ``staff_id`` and its resources.

        Args:
            staff_id: Staff member to book, or None for a resource-only claim.
            interval: Requested half-open interval.
            resource_claims: Units of each resource type needed for the interval.
            snapshot: Latest appointments and holds, re-fetched by the caller.
            location_id: Location whose resources are consumed.
            exclude_appointment_id: Appointment being rescheduled, ignored in the check.
            exclude_hold_id: The caller's own hold, ignored in the check.

        Returns:
            A ReservationToken, or the first Conflict found. Never both.
        """
        claims = tuple(resource_claims)

        if staff_id is not None:
            conflicts = self.staff_conflicts(
                staff_id, interval, snapshot.appointments, exclude_appointment_id
            )
            if conflicts:
                blocking = conflicts[0]
                return Conflict(
                    reason=RejectionReason.TIME_CONFLICT,
                    message="This time was just booked for this staff member.",
                    appointment_id=blocking.appointment_id,
                    start=blocking.start,
                    end=blocking.end,
                )

            hold = self.staff_hold_conflict(staff_id, interval, snapshot, exclude_hold_id)
            if hold is not None:
                return Conflict(
                    reason=RejectionReason.SLOT_HELD,
                    message="This time is being held by another booking in progress.",
                    hold_id=hold.hold_id,
                    start=hold.start,
                    end=hold.end,
                )

        resource_conflict = self.check_resources(
            claims, interval, snapshot, location_id,
            exclude_appointment_id=exclude_appointment_id,
            exclude_hold_id=exclude_hold_id,
        )
        if resource_conflict is not None:
            return resource_conflict

        return ReservationToken(
            token=uuid.uuid4().hex,
            staff_id=staff_id,
            start=interval.start_datetime(),
            end=interval.end_datetime(),
            resource_claims=claims,
        )
