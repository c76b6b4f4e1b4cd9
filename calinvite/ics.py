from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vCalAddress, vRecur

from calinvite.errors import InvitationError, InvitationErrorType
from calinvite.models import (
    Attendee,
    EventStatus,
    Method,
    ParsedEvent,
    Participant,
    PartStat,
    normalize_address,
)


PRODID = "-//calinvite//Invitation Reconciler//EN"
UNVERSIONED_METHODS = {"", "PUBLISH"}


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _strip_mailto(value: Any) -> str:
    text = str(value or "").strip()
    if text.lower().startswith("mailto:"):
        return text[len("mailto:"):].strip()
    return text


def _param(value: Any, key: str) -> str:
    params = getattr(value, "params", None) or {}
    return str(params.get(key, "") or "").strip()


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _parse_organizer(vevent: ICEvent) -> Participant | None:
    raw = vevent.get("ORGANIZER")
    if raw is None:
        return None
    address = _strip_mailto(raw)
    if not normalize_address(address):
        return None
    return Participant(address=address, name=_param(raw, "CN"))


def _parse_attendees(vevent: ICEvent) -> tuple[Attendee, ...]:
    attendees: list[Attendee] = []
    for raw in _as_list(vevent.get("ATTENDEE")):
        address = _strip_mailto(raw)
        if not normalize_address(address):
            continue
        attendees.append(
            Attendee(
                address=address,
                name=_param(raw, "CN"),
                partstat=PartStat.parse(_param(raw, "PARTSTAT")),
                rsvp=_param(raw, "RSVP").upper() == "TRUE",
                role=_param(raw, "ROLE") or "REQ-PARTICIPANT",
            )
        )
    return tuple(attendees)


def _parsing_error(cause: BaseException | None = None) -> InvitationError:
    return InvitationError(InvitationErrorType.PARSING_ERROR, cause=cause)


def parse_ics(raw: bytes | str) -> ParsedEvent | InvitationError:
    """Decode an ICS attachment into the first event it describes.

    Structural problems are returned as a ``PARSING_ERROR`` value rather
    than raised.
    """
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw))
    except Exception as exc:
        return _parsing_error(exc)

    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return _parsing_error(ValueError("VEVENT missing in invitation"))
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return _parsing_error(ValueError("UID missing in invitation"))

    method_text = str(calendar_obj.get("METHOD", "") or "").strip().upper()
    method = Method.parse(method_text)
    if method is None and method_text not in UNVERSIONED_METHODS:
        return _parsing_error(ValueError(f"unsupported METHOD: {method_text}"))

    sequence: int | None = None
    raw_sequence = vevent.get("SEQUENCE")
    if raw_sequence is not None:
        try:
            sequence = int(str(raw_sequence).strip())
        except ValueError as exc:
            return _parsing_error(exc)
        if sequence < 0:
            return _parsing_error(ValueError("SEQUENCE must not be negative"))

    try:
        start = _coerce_datetime(_decoded(vevent, "DTSTART"))
        end = _coerce_datetime(_decoded(vevent, "DTEND"))
        recurrence_id = _coerce_datetime(_decoded(vevent, "RECURRENCE-ID"))
    except Exception as exc:
        return _parsing_error(exc)

    raw_rrule = vevent.get("RRULE")
    rrule = raw_rrule.to_ical().decode("utf-8") if raw_rrule is not None else ""

    return ParsedEvent(
        uid=uid,
        sequence=sequence,
        method=method,
        organizer=_parse_organizer(vevent),
        attendees=_parse_attendees(vevent),
        start=start,
        end=end,
        recurrence_id=recurrence_id,
        rrule=rrule,
        summary=str(vevent.get("SUMMARY", "")).strip(),
        status=EventStatus.parse(vevent.get("STATUS")),
    )


def _cal_address(address: str, name: str = "") -> vCalAddress:
    value = vCalAddress(f"mailto:{address}")
    if name:
        value.params["CN"] = name
    return value


def to_ical(event: ParsedEvent, method: Method | None = None) -> str:
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    if method is not None:
        calendar_obj.add("METHOD", method.value)

    vevent = ICEvent()
    vevent.add("UID", event.uid)
    vevent.add("DTSTAMP", datetime.now(timezone.utc))
    if event.sequence is not None:
        vevent.add("SEQUENCE", int(event.sequence))
    vevent.add("SUMMARY", event.summary or "")
    vevent.add("STATUS", event.status.value)
    if event.start is not None:
        vevent.add("DTSTART", event.start)
    if event.end is not None:
        vevent.add("DTEND", event.end)
    if event.recurrence_id is not None:
        vevent.add("RECURRENCE-ID", event.recurrence_id)
    if event.rrule:
        vevent.add("RRULE", vRecur.from_ical(event.rrule))
    if event.organizer is not None:
        vevent.add("ORGANIZER", _cal_address(event.organizer.address, event.organizer.name), encode=0)
    for attendee in event.attendees:
        value = _cal_address(attendee.address, attendee.name)
        value.params["PARTSTAT"] = attendee.partstat.value
        value.params["ROLE"] = attendee.role
        if attendee.rsvp:
            value.params["RSVP"] = "TRUE"
        vevent.add("ATTENDEE", value, encode=0)
    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")
