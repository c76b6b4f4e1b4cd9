from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import caldav
from caldav.lib.error import NotFoundError

from calinvite.errors import InvitationError
from calinvite.ics import parse_ics, to_ical
from calinvite.models import CalDAVConfig, CalendarKeys, CalendarRef, InvitationSource, ParsedEvent

logger = logging.getLogger(__name__)


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


class CalDAVService:
    """Synchronous access to the viewer's calendars over CalDAV."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarRef]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[CalendarRef] = []
        for calendar in self._principal.calendars():
            calendar_id = _normalize_calendar_id(str(calendar.url))
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[calendar_id] = calendar
            calendars.append(CalendarRef(calendar_id=calendar_id, name=name, member_id=self.config.username))
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        calendar_id = _normalize_calendar_id(calendar_id)
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        for calendar in self._principal.calendars():
            self._calendar_cache[_normalize_calendar_id(str(calendar.url))] = calendar
        if calendar_id not in self._calendar_cache:
            raise RuntimeError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[calendar_id]

    def ensure_calendar(self, calendar_id: str) -> None:
        self._get_calendar(calendar_id)

    def _parse_resource(self, resource: Any) -> ParsedEvent:
        parsed = parse_ics(resource.data)
        if isinstance(parsed, InvitationError):
            raise RuntimeError("Stored calendar resource is not a readable event.") from parsed.cause
        return parsed.with_updates(source=InvitationSource.FROM_STORE, method=None)

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
        except NotFoundError:
            return None
        if isinstance(resource, list):
            resource = resource[0] if resource else None
        return resource

    def get_event_by_uid(self, calendar_id: str, uid: str) -> ParsedEvent | None:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource_by_uid(calendar, uid)
        if resource is None:
            return None
        return self._parse_resource(resource)

    def find_event(self, uid: str, calendars: Iterable[CalendarRef]) -> tuple[ParsedEvent, CalendarRef] | None:
        for calendar in calendars:
            event = self.get_event_by_uid(calendar.calendar_id, uid)
            if event is not None:
                return event, calendar
        return None

    def upsert_event(self, calendar_id: str, event: ParsedEvent) -> ParsedEvent:
        calendar = self._get_calendar(calendar_id)
        raw_ical = to_ical(event)
        existing = self._find_resource_by_uid(calendar, event.uid)
        if existing is not None:
            existing.data = raw_ical
            existing.save()
            resource = existing
        else:
            resource = calendar.save_event(raw_ical)
        return self._parse_resource(resource)


class CalDAVCalendarStore:
    """Async calendar store backed by :class:`CalDAVService`.

    The CalDAV client is blocking, so every call runs in a worker thread.
    """

    def __init__(self, service: CalDAVService) -> None:
        self.service = service

    async def list_calendars(self) -> list[CalendarRef]:
        return await asyncio.to_thread(self.service.list_calendars)

    async def fetch_event_by_uid(
        self, uid: str, calendars: Iterable[CalendarRef]
    ) -> tuple[ParsedEvent, CalendarRef] | None:
        return await asyncio.to_thread(self.service.find_event, uid, list(calendars))

    async def resolve_calendar_keys(self, calendar_id: str) -> CalendarKeys:
        # CalDAV authenticates the whole session; the calendar only has to exist.
        await asyncio.to_thread(self.service.ensure_calendar, calendar_id)
        return CalendarKeys(member_id=self.service.config.username)

    async def persist_event(self, event: ParsedEvent, calendar: CalendarRef, keys: CalendarKeys) -> ParsedEvent:
        logger.debug("Writing %s to %s as %s", event.uid, calendar.calendar_id, keys.member_id)
        return await asyncio.to_thread(self.service.upsert_event, calendar.calendar_id, event)
