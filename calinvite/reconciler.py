from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from calinvite.models import (
    Attendee,
    EventStatus,
    InvitationSource,
    Method,
    ParsedEvent,
    PartStat,
    Role,
    normalize_address,
)


COUNTER_FIELDS = ("start", "end", "summary", "recurrence_id", "rrule")


@dataclass
class MergeOutcome:
    write: bool
    reason: str
    event: ParsedEvent | None


def get_sequence(event: ParsedEvent | None) -> int:
    if event is None or event.sequence is None:
        return 0
    return int(event.sequence)


def sequence_diff(incoming: ParsedEvent | None, stored: ParsedEvent | None) -> int:
    """Positive when ``incoming`` is newer than ``stored``, negative when stale."""
    return get_sequence(incoming) - get_sequence(stored)


def as_stored(event: ParsedEvent) -> ParsedEvent:
    return event.with_updates(source=InvitationSource.FROM_STORE, method=None)


def _keep_answered_partstats(incoming: ParsedEvent, stored: ParsedEvent) -> ParsedEvent:
    # Same revision: answers already recorded in the calendar survive a re-import.
    attendees: list[Attendee] = []
    for attendee in incoming.attendees:
        previous = stored.find_attendee(attendee.address)
        if (
            previous is not None
            and attendee.partstat is PartStat.NEEDS_ACTION
            and previous.partstat is not PartStat.NEEDS_ACTION
        ):
            attendee = Attendee(
                address=attendee.address,
                name=attendee.name,
                partstat=previous.partstat,
                rsvp=attendee.rsvp,
                role=attendee.role,
            )
        attendees.append(attendee)
    return incoming.with_updates(attendees=tuple(attendees))


def _merge_request(
    *, role: Role, incoming: ParsedEvent, stored: ParsedEvent | None, sender_address: str
) -> MergeOutcome:
    if stored is None:
        return MergeOutcome(write=True, reason="new_event", event=as_stored(incoming))
    diff = sequence_diff(incoming, stored)
    if diff < 0:
        return MergeOutcome(write=False, reason="stale", event=stored)
    if stored.is_cancelled and diff == 0:
        # Only a newer revision can reinstate a cancelled event.
        return MergeOutcome(write=False, reason="stored_cancelled", event=stored)
    if diff == 0:
        merged = _keep_answered_partstats(incoming, stored)
        return MergeOutcome(write=True, reason="same_sequence", event=as_stored(merged))
    return MergeOutcome(write=True, reason="newer_sequence", event=as_stored(incoming))


def _merge_cancel(
    *, role: Role, incoming: ParsedEvent, stored: ParsedEvent | None, sender_address: str
) -> MergeOutcome:
    if stored is None:
        return MergeOutcome(write=False, reason="not_applicable", event=None)
    if stored.is_cancelled:
        return MergeOutcome(write=False, reason="already_cancelled", event=stored)
    if sequence_diff(incoming, stored) < 0:
        return MergeOutcome(write=False, reason="stale", event=stored)
    cancelled = stored.with_updates(
        status=EventStatus.CANCELLED,
        sequence=max(get_sequence(stored), get_sequence(incoming)),
    )
    return MergeOutcome(write=True, reason="cancelled", event=cancelled)


def _reply_attendees(incoming: ParsedEvent, sender_address: str) -> list[Attendee]:
    sender = normalize_address(sender_address)
    if sender:
        matching = [attendee for attendee in incoming.attendees if attendee.normalized == sender]
        if matching:
            return matching
    return list(incoming.attendees)


def _merge_reply(
    *, role: Role, incoming: ParsedEvent, stored: ParsedEvent | None, sender_address: str
) -> MergeOutcome:
    if stored is None:
        return MergeOutcome(write=False, reason="not_applicable", event=None)
    if role is not Role.ORGANIZER:
        return MergeOutcome(write=False, reason="not_organizer", event=stored)
    if sequence_diff(incoming, stored) < 0:
        return MergeOutcome(write=False, reason="stale", event=stored)

    answers = {attendee.normalized: attendee.partstat for attendee in _reply_attendees(incoming, sender_address)}
    known = [attendee for attendee in stored.attendees if attendee.normalized in answers]
    if not known:
        return MergeOutcome(write=False, reason="attendee_not_found", event=stored)

    updated = stored
    for attendee in known:
        updated = apply_participation(updated, attendee.address, answers[attendee.normalized])
    if updated == stored:
        return MergeOutcome(write=False, reason="no_changes", event=stored)
    return MergeOutcome(write=True, reason="reply_applied", event=updated)


def _merge_counter(
    *, role: Role, incoming: ParsedEvent, stored: ParsedEvent | None, sender_address: str
) -> MergeOutcome:
    return MergeOutcome(write=False, reason="awaiting_organizer_decision", event=stored)


def _merge_refresh(
    *, role: Role, incoming: ParsedEvent, stored: ParsedEvent | None, sender_address: str
) -> MergeOutcome:
    return MergeOutcome(write=False, reason="refresh_requested", event=stored)


MergeHandler = Callable[..., MergeOutcome]

MERGE_HANDLERS: dict[Method, MergeHandler] = {
    Method.REQUEST: _merge_request,
    Method.ADD: _merge_request,
    Method.CANCEL: _merge_cancel,
    Method.REPLY: _merge_reply,
    Method.COUNTER: _merge_counter,
    Method.REFRESH: _merge_refresh,
}


def merge_invitation(
    *,
    method: Method,
    role: Role,
    incoming: ParsedEvent,
    stored: ParsedEvent | None,
    sender_address: str = "",
) -> MergeOutcome:
    handler = MERGE_HANDLERS[method]
    return handler(role=role, incoming=incoming, stored=stored, sender_address=sender_address)


def apply_participation(event: ParsedEvent, address: str, partstat: PartStat) -> ParsedEvent:
    wanted = normalize_address(address)
    attendees = tuple(
        Attendee(
            address=attendee.address,
            name=attendee.name,
            partstat=partstat,
            rsvp=False,
            role=attendee.role,
        )
        if attendee.normalized == wanted and attendee.partstat is not partstat
        else attendee
        for attendee in event.attendees
    )
    if attendees == event.attendees:
        return event
    return event.with_updates(attendees=attendees)


def apply_counter(stored: ParsedEvent, counter: ParsedEvent) -> ParsedEvent:
    changes = {name: getattr(counter, name) for name in COUNTER_FIELDS if getattr(counter, name)}
    changes["sequence"] = get_sequence(stored) + 1
    return stored.with_updates(**changes)
