"""
Offline console demo: walks through the scheduling core without a database.

Uses the real slot engine, booking service, and message debouncer against
an in-memory salon roster. No network calls.

Usage:
    python console_demo.py
    python console_demo.py --scenario race
    python console_demo.py --scenario burst
"""

import argparse
import asyncio
from datetime import date, datetime, timezone

from src.conversation.debouncer import MessageDebouncer
from src.schemas.scheduling_schema import (
    RequiredResource,
    Resource,
    ServiceItem,
    SlotRequest,
    StaffAvailability,
    WorkInterval,
)
from src.tools.booking import BookingService
from src.tools.notifications import InMemoryNotificationSink
from src.tools.roster import RosterRepository
from src.tools.services import ServiceCatalog
from src.utils import weekday_index

GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_DAY = date(2025, 3, 17)  # a Monday
LOCATION = "main-street"


def build_roster() -> RosterRepository:
    """Two groomers, one bath tub, a small catalog."""
    weekday = weekday_index(DEMO_DAY)
    staff = [
        StaffAvailability(
            staff_id="jane",
            work_intervals=(WorkInterval(
                weekday=weekday, start_time="09:00", end_time="17:00",
                break_windows=({"start_time": "12:00", "end_time": "12:30"},),
            ),),
            location_ids=frozenset({LOCATION}),
        ),
        StaffAvailability(
            staff_id="omar",
            work_intervals=(WorkInterval(weekday=weekday, start_time="10:00", end_time="14:00"),),
            location_ids=frozenset({LOCATION}),
            permitted_category_ids=frozenset({"bath_brush", "nail_trim"}),
        ),
    ]
    catalog = ServiceCatalog([
        ServiceItem(service_item_id="groom-m", service_category_id="full_groom",
                    size="M", duration_minutes=60, price=75.0, label="Full Groom (M)"),
        ServiceItem(service_item_id="groom-any", service_category_id="full_groom",
                    duration_minutes=90, price=95.0, label="Full Groom"),
        ServiceItem(service_item_id="bath", service_category_id="bath_brush", price=40.0,
                    required_resources=(RequiredResource(resource_type_id="bath-tub", duration_minutes=30),),
                    label="Bath & Brush"),
    ])
    return RosterRepository(
        staff=staff,
        service_items=catalog.items(),
        resources=[Resource(resource_id="tub-1", resource_type_id="bath-tub", location_id=LOCATION)],
        timezone="UTC",
    )


def request(service_item_id: str, start_time: str, staff_id=None) -> SlotRequest:
    return SlotRequest(
        staff_id=staff_id,
        location_id=LOCATION,
        service_item_id=service_item_id,
        desired_date=DEMO_DAY,
        desired_start_time=start_time,
    )


def system_log(text: str) -> None:
    print(f"{DIM}  >> {text}{RESET}")


async def scenario_slots() -> list[str]:
    """Enumerate the first open slots for a medium-size full groom."""
    roster = build_roster()
    catalog = ServiceCatalog(roster.service_items)
    item = catalog.select_variant("full_groom", size="M", coat_type="curly")
    service = BookingService(roster, clock=lambda: datetime(2025, 3, 16, tzinfo=timezone.utc))
    await service.create_booking(request(item.service_item_id, "10:00", "jane"))

    snapshot = await service.snapshot()
    slots = service.engine.enumerate_slots(DEMO_DAY, LOCATION, item, snapshot).first(5)
    print(f"{BOLD}Open slots for {item.label}:{RESET}")
    lines = []
    for slot in slots:
        line = f"{slot.start:%H:%M}-{slot.end:%H:%M} with {slot.staff_id}"
        lines.append(line)
        print(f"{GREEN}  {line}{RESET}")
    return lines


async def scenario_race() -> list[bool]:
    """A web booking and a chat-bot booking race for the only bath tub."""
    roster = build_roster()
    sink = InMemoryNotificationSink()
    service = BookingService(roster, sink=sink, clock=lambda: datetime(2025, 3, 16, tzinfo=timezone.utc))

    results = await asyncio.gather(
        service.create_booking(request("bath", "11:00", "jane"), customer_id="web-customer"),
        service.create_booking(request("bath", "11:00", "omar"), customer_id="chat-customer"),
    )
    for result in results:
        colour = GREEN if result.success else RED
        print(f"{colour}  {result.message}{RESET}")
    system_log(f"{len(sink.events)} notification(s) published")
    return [r.success for r in results]


async def scenario_burst() -> list[str]:
    """A customer types one request across three quick messages."""
    replies: list[str] = []

    async def respond(conversation_id: str, text: str, token: str) -> None:
        replies.append(text)
        print(f"{GREEN}{BOLD}[assistant]{RESET} {GREEN}Got it: {text!r}{RESET}")

    debouncer = MessageDebouncer(respond, quiet_ms=200, combine_mode="concatenate")
    for text in ("hi", "can I book a groom", "for monday at 11?"):
        print(f"{YELLOW}[customer]{RESET} {text}")
        await debouncer.on_message("fb:demo", text)
        await asyncio.sleep(0.05)
    system_log(f"waiting out the {int(debouncer.quiet_seconds * 1000)}ms quiet period")
    await asyncio.sleep(debouncer.quiet_seconds * 2)
    await debouncer.shutdown()
    system_log(f"{debouncer.stats.messages_received} messages, {debouncer.stats.flushes} flush")
    return replies


SCENARIOS = {
    "slots": scenario_slots,
    "race": scenario_race,
    "burst": scenario_burst,
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a single scenario instead of all of them",
    )
    args = parser.parse_args()

    names = [args.scenario] if args.scenario else list(SCENARIOS)
    for name in names:
        print(f"\n{BOLD}=== {name} ==={RESET}")
        asyncio.run(SCENARIOS[name]())


if __name__ == "__main__":
    main()
