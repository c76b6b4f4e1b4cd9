from __future__ import annotations

from typing import Iterable, Protocol

from calinvite.models import CalendarKeys, CalendarRef, InvitationSource, ParsedEvent


class CalendarStore(Protocol):
    async def fetch_event_by_uid(
        self, uid: str, calendars: Iterable[CalendarRef]
    ) -> tuple[ParsedEvent, CalendarRef] | None:
        ...

    async def resolve_calendar_keys(self, calendar_id: str) -> CalendarKeys:
        ...

    async def persist_event(self, event: ParsedEvent, calendar: CalendarRef, keys: CalendarKeys) -> ParsedEvent:
        ...

    async def list_calendars(self) -> list[CalendarRef]:
        ...


class InMemoryCalendarStore:
    """Dictionary-backed store keyed by ``(calendar_id, uid)``.

    Every ``persist_event`` call is appended to ``writes`` so callers can
    assert how many write attempts a pass made.
    """

    def __init__(
        self,
        calendars: Iterable[CalendarRef] = (),
        events: dict[tuple[str, str], ParsedEvent] | None = None,
    ) -> None:
        self.calendars: list[CalendarRef] = list(calendars)
        self.events: dict[tuple[str, str], ParsedEvent] = dict(events or {})
        self.writes: list[tuple[str, ParsedEvent]] = []

    def put(self, calendar: CalendarRef, event: ParsedEvent) -> None:
        if calendar not in self.calendars:
            self.calendars.append(calendar)
        self.events[(calendar.calendar_id, event.uid)] = event.with_updates(source=InvitationSource.FROM_STORE)

    def get(self, calendar_id: str, uid: str) -> ParsedEvent | None:
        return self.events.get((calendar_id, uid))

    async def list_calendars(self) -> list[CalendarRef]:
        return list(self.calendars)

    async def fetch_event_by_uid(
        self, uid: str, calendars: Iterable[CalendarRef]
    ) -> tuple[ParsedEvent, CalendarRef] | None:
        for calendar in calendars:
            event = self.events.get((calendar.calendar_id, uid))
            if event is not None:
                return event, calendar
        return None

    async def resolve_calendar_keys(self, calendar_id: str) -> CalendarKeys:
        return CalendarKeys(member_id=f"member:{calendar_id}")

    async def persist_event(self, event: ParsedEvent, calendar: CalendarRef, keys: CalendarKeys) -> ParsedEvent:
        self.writes.append((calendar.calendar_id, event))
        stored = event.with_updates(source=InvitationSource.FROM_STORE)
        self.events[(calendar.calendar_id, event.uid)] = stored
        return stored
