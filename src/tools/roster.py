"""
Roster query.

In production this would load staff schedules, time off, and resources for
one company from the database. Here it holds them in memory and assembles
the RosterSnapshot the scheduling core decides against.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from src.config import settings
from src.schemas.scheduling_schema import (
    Appointment,
    BookingHold,
    InvariantViolationError,
    Resource,
    RosterSnapshot,
    ServiceItem,
    StaffAvailability,
    TimeOff,
    WorkInterval,
)

logger = logging.getLogger(__name__)


class RosterRepository:
    """Slow-changing company data: staff, services, resources, time off."""

    def __init__(
        self,
        staff: Iterable[StaffAvailability] = (),
        service_items: Iterable[ServiceItem] = (),
        resources: Iterable[Resource] = (),
        time_off: Iterable[TimeOff] = (),
        company_work_hours: Iterable[WorkInterval] = (),
        timezone: Optional[str] = None,
    ) -> None:
        self.staff = tuple(staff)
        self.service_items = tuple(service_items)
        self.resources = tuple(resources)
        self.time_off = list(time_off)
        self.company_work_hours = tuple(company_work_hours)
        self.timezone = settings.scheduling.default_timezone if timezone is None else timezone

    def get_service_item(self, service_item_id: str) -> ServiceItem:
        for item in self.service_items:
            if item.service_item_id == service_item_id:
                return item
        raise InvariantViolationError(f"Unknown service item {service_item_id!r}")

    def add_time_off(self, entry: TimeOff) -> None:
        self.time_off.append(entry)
        logger.info("Time off recorded for %s: %s - %s", entry.staff_id, entry.start, entry.end)

    def build_snapshot(
        self,
        appointments: Iterable[Appointment] = (),
        holds: Iterable[BookingHold] = (),
        as_of: Optional[datetime] = None,
    ) -> RosterSnapshot:
        """Combine roster data with the current appointments and holds."""
        fields = dict(
            timezone=self.timezone,
            staff=self.staff,
            appointments=tuple(appointments),
            service_items=self.service_items,
            resources=self.resources,
            time_off=tuple(self.time_off),
            holds=tuple(holds),
            company_work_hours=self.company_work_hours,
        )
        if as_of is not None:
            fields["as_of"] = as_of
        return RosterSnapshot.from_records(**fields)
