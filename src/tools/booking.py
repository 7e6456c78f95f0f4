"""
Booking commit path.

In production the store would be the appointments collection of the
salon's database. The in-memory store yields to the event loop on every
call so concurrent bookings interleave the way they would against a real
backend.

Every write follows the same sequence:
1. Validate the request against a fresh snapshot (fast rejection path).
2. Take the per-staff and per-(location, resource type) locks in sorted order.
3. Re-fetch the snapshot and re-run ``OverlapGuard.reserve``.
4. Persist, release the locks, then publish a notification (best-effort).
"""

import asyncio
import logging
import uuid
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from src.config import settings
from src.scheduling.intervals import Interval
from src.scheduling.overlap_guard import OverlapGuard
from src.scheduling.results import Conflict, RejectionReason
from src.scheduling.slot_engine import SlotEngine
from src.schemas.scheduling_schema import (
    Appointment,
    AppointmentStatus,
    BookingHold,
    InvariantViolationError,
    ResourceClaim,
    RosterSnapshot,
    SlotRequest,
)
from src.tools.notifications import BookingEvent, BookingEventType, NotificationSink
from src.tools.roster import RosterRepository

logger = logging.getLogger(__name__)

LockKey = tuple[str, ...]


@dataclass(frozen=True)
class BookingResult:
    """Result from create, reschedule, cancel, and hold operations."""

    success: bool
    message: str
    appointment: Optional[Appointment] = None
    hold: Optional[BookingHold] = None
    reason: Optional[RejectionReason] = None
    conflict: Optional[Conflict] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AppointmentStore:
    """In-memory appointments and holds."""

    def __init__(self, appointments: Iterable[Appointment] = ()) -> None:
        self._appointments: dict[str, Appointment] = {a.appointment_id: a for a in appointments}
        self._holds: dict[str, BookingHold] = {}

    async def list_appointments(self) -> list[Appointment]:
        await asyncio.sleep(0)
        return list(self._appointments.values())

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        await asyncio.sleep(0)
        return self._appointments.get(appointment_id)

    async def save(self, appointment: Appointment) -> None:
        await asyncio.sleep(0)
        self._appointments[appointment.appointment_id] = appointment

    async def list_holds(self) -> list[BookingHold]:
        await asyncio.sleep(0)
        return list(self._holds.values())

    async def get_hold(self, hold_id: str) -> Optional[BookingHold]:
        await asyncio.sleep(0)
        return self._holds.get(hold_id)

    async def save_hold(self, hold: BookingHold) -> None:
        await asyncio.sleep(0)
        self._holds[hold.hold_id] = hold

    async def delete_hold(self, hold_id: str) -> bool:
        await asyncio.sleep(0)
        return self._holds.pop(hold_id, None) is not None

    def reset(self) -> None:
        """Clear all records. Used by test fixtures for isolation."""
        self._appointments.clear()
        self._holds.clear()


class BookingService:
    """Creates, moves, and cancels appointments without double-booking."""

    def __init__(
        self,
        roster: RosterRepository,
        store: Optional[AppointmentStore] = None,
        sink: Optional[NotificationSink] = None,
        engine: Optional[SlotEngine] = None,
        clock: Callable[[], datetime] = _utc_now,
        hold_ttl_seconds: Optional[int] = None,
    ) -> None:
        self.roster = roster
        self.store = store if store is not None else AppointmentStore()
        self.sink = sink
        self.engine = engine if engine is not None else SlotEngine()
        self.clock = clock
        self.hold_ttl = timedelta(
            seconds=settings.booking.hold_ttl_seconds if hold_ttl_seconds is None else hold_ttl_seconds
        )
        self._locks: dict[LockKey, asyncio.Lock] = {}

    @property
    def guard(self) -> OverlapGuard:
        return self.engine.guard

    async def snapshot(self) -> RosterSnapshot:
        """Current roster plus the latest appointments and holds."""
        appointments = await self.store.list_appointments()
        holds = await self.store.list_holds()
        return self.roster.build_snapshot(appointments, holds, as_of=self.clock())

    # ------------------------------------------------------------------ #
    # Appointments
    # ------------------------------------------------------------------ #

    async def create_booking(
        self,
        request: SlotRequest,
        customer_id: Optional[str] = None,
        hold_id: Optional[str] = None,
    ) -> BookingResult:
        """
        Book ``request``.

        Passing ``hold_id`` converts that hold. The hold must be active, belong
        to ``customer_id`` when it was placed for a customer, and cover exactly
        the staff member, location and interval being booked. Anything else is
        rejected and the hold is left in place.
        """
        if hold_id is not None:
            hold = await self.store.get_hold(hold_id)
            problem = self._hold_problem(hold, hold_id, customer_id, request.location_id, request.staff_id)
            if problem is not None:
                return self._unusable_hold(problem)
            # The hold already names its staff member; book that one.
            if request.staff_id is None and hold.staff_id is not None:
                request = request.model_copy(update={"staff_id": hold.staff_id})

        decision = self.engine.validate(request, await self.snapshot(), exclude_hold_id=hold_id)
        if not decision.accepted:
            return BookingResult(False, decision.message, reason=decision.reason, conflict=decision.conflict)

        service_item = self.roster.get_service_item(request.service_item_id)
        claims = service_item.resource_claims()
        interval = Interval.from_datetimes(decision.start, decision.end)

        async with self._locked(decision.staff_id, request.location_id, claims):
            if hold_id is not None:
                hold = await self.store.get_hold(hold_id)
                problem = self._hold_problem(
                    hold, hold_id, customer_id, request.location_id, decision.staff_id, interval
                )
                if problem is not None:
                    return self._unusable_hold(problem)

            outcome = self.guard.reserve(
                decision.staff_id, interval, claims, await self.snapshot(),
                location_id=request.location_id,
                exclude_hold_id=hold_id,
            )
            if not outcome.accepted:
                return self._lost_race(outcome)

            appointment = Appointment(
                appointment_id=f"APT-{uuid.uuid4().hex[:8].upper()}",
                staff_id=decision.staff_id,
                location_id=request.location_id,
                service_item_id=service_item.service_item_id,
                customer_id=customer_id,
                start=decision.start,
                end=decision.end,
                status=AppointmentStatus.SCHEDULED,
                resource_claims=claims,
            )
            await self.store.save(appointment)
            if hold_id is not None:
                await self.store.delete_hold(hold_id)

        logger.info(
            "Booking created: %s for %s at %s", appointment.appointment_id,
            appointment.staff_id, appointment.start.isoformat(),
        )
        await self._publish(BookingEventType.CREATED, appointment)
        return BookingResult(
            True,
            f"Booking confirmed. Reference number: {appointment.appointment_id}.",
            appointment=appointment,
        )

    async def reschedule_booking(
        self,
        appointment_id: str,
        new_date: date,
        new_start_time: Union[str, int],
        staff_id: Optional[str] = None,
    ) -> BookingResult:
        """Move an appointment. Keeps the current staff member unless ``staff_id`` is given."""
        existing = await self.store.get(appointment_id)
        problem = self._not_movable(existing, appointment_id)
        if problem is not None:
            return problem
        if existing.service_item_id is None:
            raise InvariantViolationError(f"Appointment {appointment_id} has no service item")

        request = SlotRequest(
            staff_id=staff_id or existing.staff_id,
            location_id=existing.location_id,
            service_item_id=existing.service_item_id,
            desired_date=new_date,
            desired_start_time=new_start_time,
        )
        decision = self.engine.validate(request, await self.snapshot(), exclude_appointment_id=appointment_id)
        if not decision.accepted:
            return BookingResult(False, decision.message, reason=decision.reason, conflict=decision.conflict)

        interval = Interval.from_datetimes(decision.start, decision.end)
        claims = existing.resource_claims
        async with self._locked(decision.staff_id, existing.location_id, claims, also_staff=existing.staff_id):
            # A cancel or another move may have committed since the first read.
            current = await self.store.get(appointment_id)
            problem = self._not_movable(current, appointment_id)
            if problem is not None:
                return problem
            if current.staff_id != existing.staff_id:
                return BookingResult(False, f"Booking {appointment_id} was just changed. Please try again.")

            outcome = self.guard.reserve(
                decision.staff_id, interval, claims, await self.snapshot(),
                location_id=existing.location_id,
                exclude_appointment_id=appointment_id,
            )
            if not outcome.accepted:
                return self._lost_race(outcome)
            moved = current.model_copy(
                update={"staff_id": decision.staff_id, "start": decision.start, "end": decision.end}
            )
            await self.store.save(moved)

        logger.info("Booking rescheduled: %s to %s", appointment_id, moved.start.isoformat())
        await self._publish(BookingEventType.UPDATED, moved)
        return BookingResult(True, f"Booking {appointment_id} rescheduled.", appointment=moved)

    async def cancel_booking(self, appointment_id: str) -> BookingResult:
        while True:
            existing = await self.store.get(appointment_id)
            if existing is None:
                return BookingResult(False, f"Booking {appointment_id} not found.")
            if existing.status == AppointmentStatus.CANCELED:
                return BookingResult(False, f"Booking {appointment_id} is already cancelled.", appointment=existing)

            async with self._locked(existing.staff_id, existing.location_id, ()):
                current = await self.store.get(appointment_id)
                if current is not None and current.staff_id != existing.staff_id:
                    # Moved to another staff member meanwhile; lock that one instead.
                    continue
                if current is None or current.status == AppointmentStatus.CANCELED:
                    return BookingResult(False, f"Booking {appointment_id} is already cancelled.", appointment=current)
                canceled = current.model_copy(update={"status": AppointmentStatus.CANCELED})
                await self.store.save(canceled)
            break

        logger.info("Booking cancelled: %s", appointment_id)
        await self._publish(BookingEventType.CANCELED, canceled)
        return BookingResult(True, f"Booking {appointment_id} has been cancelled.", appointment=canceled)

    # ------------------------------------------------------------------ #
    # Holds
    # ------------------------------------------------------------------ #

    async def place_hold(
        self,
        request: SlotRequest,
        created_by: str = "assistant",
        customer_id: Optional[str] = None,
    ) -> BookingResult:
        """Tentatively claim a slot while the customer confirms. Expires after the hold TTL."""
        decision = self.engine.validate(request, await self.snapshot())
        if not decision.accepted:
            return BookingResult(False, decision.message, reason=decision.reason, conflict=decision.conflict)

        claims = self.roster.get_service_item(request.service_item_id).resource_claims()
        interval = Interval.from_datetimes(decision.start, decision.end)
        async with self._locked(decision.staff_id, request.location_id, claims):
            outcome = self.guard.reserve(
                decision.staff_id, interval, claims, await self.snapshot(),
                location_id=request.location_id,
            )
            if not outcome.accepted:
                return self._lost_race(outcome)
            hold = BookingHold(
                hold_id=f"HOLD-{uuid.uuid4().hex[:8].upper()}",
                staff_id=decision.staff_id,
                location_id=request.location_id,
                customer_id=customer_id,
                start=decision.start,
                end=decision.end,
                resource_claims=claims,
                expires_at=self.clock() + self.hold_ttl,
                created_by=created_by,
            )
            await self.store.save_hold(hold)

        logger.info("Hold placed: %s for %s until %s", hold.hold_id, hold.staff_id, hold.expires_at.isoformat())
        return BookingResult(True, f"Slot held until {hold.expires_at.isoformat()}.", hold=hold)

    async def release_hold(self, hold_id: str) -> BookingResult:
        if not await self.store.delete_hold(hold_id):
            return BookingResult(False, f"Hold {hold_id} not found.")
        logger.info("Hold released: %s", hold_id)
        return BookingResult(True, f"Hold {hold_id} released.")

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _lock(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _locked(
        self,
        staff_id: Optional[str],
        location_id: str,
        claims: Iterable[ResourceClaim],
        also_staff: Optional[str] = None,
    ) -> AsyncIterator[None]:
        """Hold every lock the write touches, acquired in sorted order."""
        keys: set[LockKey] = {("resource", location_id, c.resource_type_id) for c in claims}
        for member in (staff_id, also_staff):
            if member is not None:
                keys.add(("staff", member))
        async with AsyncExitStack() as stack:
            for key in sorted(keys):
                await stack.enter_async_context(self._lock(key))
            yield

    def _hold_problem(
        self,
        hold: Optional[BookingHold],
        hold_id: str,
        customer_id: Optional[str],
        location_id: str,
        staff_id: Optional[str],
        interval: Optional[Interval] = None,
    ) -> Optional[str]:
        """Why ``hold`` cannot be converted into this booking, or None if it can."""
        if hold is None:
            return f"Hold {hold_id} not found."
        if not hold.is_active(self.clock()):
            return f"Hold {hold_id} has expired."
        if hold.customer_id is not None and hold.customer_id != customer_id:
            return f"Hold {hold_id} belongs to another customer."
        if hold.location_id != location_id:
            return f"Hold {hold_id} is for a different location."
        if staff_id is not None and hold.staff_id != staff_id:
            return f"Hold {hold_id} is for a different staff member."
        if interval is not None and (hold.start_minute, hold.end_minute) != (interval.start, interval.end):
            return f"Hold {hold_id} is for a different time."
        return None

    @staticmethod
    def _unusable_hold(problem: str) -> BookingResult:
        logger.info("Hold rejected: %s", problem)
        return BookingResult(False, problem, reason=RejectionReason.SLOT_HELD)

    def _not_movable(self, appointment: Optional[Appointment], appointment_id: str) -> Optional[BookingResult]:
        if appointment is None:
            return BookingResult(False, f"Booking {appointment_id} not found.")
        if not self.guard.is_occupying(appointment):
            return BookingResult(
                False,
                f"Booking {appointment_id} is {appointment.status.value} and cannot be moved.",
                appointment=appointment,
            )
        return None

    @staticmethod
    def _lost_race(conflict: Conflict) -> BookingResult:
        logger.info("Commit lost race: %s (%s)", conflict.reason.value, conflict.message)
        return BookingResult(
            False,
            f"Sorry, this slot was just taken. {conflict.message}",
            reason=conflict.reason,
            conflict=conflict,
        )

    async def _publish(self, event_type: BookingEventType, appointment: Appointment) -> None:
        if self.sink is None:
            return
        event = BookingEvent(
            event_type=event_type,
            appointment_id=appointment.appointment_id,
            staff_id=appointment.staff_id,
            location_id=appointment.location_id,
            start=appointment.start,
            end=appointment.end,
            customer_id=appointment.customer_id,
        )
        try:
            await self.sink.publish(event)
        except Exception:
            logger.exception("Failed to publish %s for %s", event_type.value, appointment.appointment_id)
