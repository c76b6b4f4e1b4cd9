"""Invitation pipeline: build the model, fetch the stored copy, reconcile.

``build_model`` is pure. ``fetch_invitation`` and ``update_invitation`` are
the only steps that await the calendar store; ``reconcile`` chains them and
always returns a model, carrying an ``InvitationError`` when a step failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable

from calinvite.actions import ActionState, derive_actions
from calinvite.errors import InvitationError, InvitationErrorType, classify
from calinvite.models import (
    CalendarRef,
    ContactEmail,
    InvitationInputs,
    InvitationModel,
    InvitationSource,
    MessageContext,
    Method,
    OwnAddress,
    ParsedEvent,
    Participant,
    PartStat,
    Role,
    normalize_address,
)
from calinvite.reconciler import apply_counter, apply_participation, as_stored, merge_invitation
from calinvite.store import CalendarStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    event: ParsedEvent | None = None
    calendar: CalendarRef | None = None
    downgraded: bool = False


def _contact_names(contacts: Iterable[ContactEmail]) -> dict[str, str]:
    names: dict[str, str] = {}
    for contact in contacts:
        key = normalize_address(contact.address)
        if key and contact.name and key not in names:
            names[key] = contact.name
    return names


def _with_contact_names(event: ParsedEvent, contacts: Iterable[ContactEmail]) -> ParsedEvent:
    names = _contact_names(contacts)
    if not names:
        return event
    organizer = event.organizer
    if organizer is not None and not organizer.name and organizer.normalized in names:
        organizer = Participant(address=organizer.address, name=names[organizer.normalized])
    attendees = tuple(
        replace(attendee, name=names[attendee.normalized])
        if not attendee.name and attendee.normalized in names
        else attendee
        for attendee in event.attendees
    )
    return event.with_updates(organizer=organizer, attendees=attendees)


def _derive_role(event: ParsedEvent, addresses: Iterable[OwnAddress]) -> tuple[Role, str | None]:
    own = [item for item in addresses if item.enabled and normalize_address(item.address)]
    organizer = event.organizer
    if organizer is not None and organizer.normalized:
        for item in own:
            if normalize_address(item.address) == organizer.normalized:
                return Role.ORGANIZER, item.address
    for item in own:
        if event.find_attendee(item.address) is not None:
            return Role.ATTENDEE, item.address
    return Role.ATTENDEE, None


def build_model(
    invitation_or_error: ParsedEvent | InvitationError,
    message: MessageContext,
    contacts: Iterable[ContactEmail] = (),
    addresses: Iterable[OwnAddress] = (),
    default_calendar: CalendarRef | None = None,
) -> InvitationModel:
    inputs = InvitationInputs(
        invitation_or_error=invitation_or_error,
        message=message,
        contacts=tuple(contacts),
        addresses=tuple(addresses),
        default_calendar=default_calendar,
    )
    if isinstance(invitation_or_error, InvitationError):
        return InvitationModel(
            method=None,
            role=Role.ATTENDEE,
            default_calendar=default_calendar,
            sender_address=message.sender_address,
            message_id=message.message_id,
            error=invitation_or_error,
            inputs=inputs,
        )

    event = _with_contact_names(invitation_or_error, inputs.contacts)
    event = event.with_updates(source=InvitationSource.FROM_MESSAGE)
    role, viewer_address = _derive_role(event, inputs.addresses)
    return InvitationModel(
        method=event.method or Method.REQUEST,
        role=role,
        event_from_message=event,
        default_calendar=default_calendar,
        viewer_address=viewer_address,
        sender_address=message.sender_address,
        message_id=message.message_id,
        inputs=inputs,
    )


def retry(model: InvitationModel) -> InvitationModel:
    if model.inputs is None:
        raise ValueError("model carries no builder inputs to rebuild from")
    inputs = model.inputs
    return build_model(
        inputs.invitation_or_error,
        inputs.message,
        inputs.contacts,
        inputs.addresses,
        inputs.default_calendar,
    )


async def fetch_invitation(
    event: ParsedEvent,
    calendars: Iterable[CalendarRef],
    store: CalendarStore,
) -> FetchResult:
    calendar_list = list(calendars)
    if not calendar_list:
        return FetchResult()
    try:
        found = await store.fetch_event_by_uid(event.uid, calendar_list)
    except Exception:
        # Lookup failures must not block showing the invitation.
        logger.warning("Lookup of stored event %s failed; treating it as not found", event.uid, exc_info=True)
        return FetchResult(downgraded=True)
    if found is None:
        return FetchResult()
    stored, calendar = found
    return FetchResult(event=stored.with_updates(source=InvitationSource.FROM_STORE), calendar=calendar)


async def _persist(
    model: InvitationModel,
    event: ParsedEvent,
    calendar: CalendarRef,
    store: CalendarStore,
) -> InvitationModel:
    try:
        keys = await store.resolve_calendar_keys(calendar.calendar_id)
    except Exception as exc:
        logger.error("Resolving keys for calendar %s failed", calendar.calendar_id, exc_info=True)
        return replace(model, error=classify(exc, InvitationErrorType.FETCHING_ERROR))
    try:
        persisted = await store.persist_event(event, calendar, keys)
    except Exception as exc:
        logger.error("Writing event %s to calendar %s failed", event.uid, calendar.calendar_id, exc_info=True)
        return replace(model, error=classify(exc, InvitationErrorType.UPDATING_ERROR))
    logger.info("Stored event %s (sequence %s) in calendar %s", persisted.uid, persisted.sequence, calendar.calendar_id)
    return replace(
        model,
        event_from_store=persisted.with_updates(source=InvitationSource.FROM_STORE),
        matching_calendar=calendar,
        error=None,
    )


async def update_invitation(
    model: InvitationModel,
    fetched: FetchResult,
    store: CalendarStore,
) -> InvitationModel:
    incoming = model.event_from_message
    if incoming is None or model.method is None:
        return model
    base = replace(
        model,
        event_from_store=fetched.event,
        matching_calendar=fetched.calendar,
        fetch_downgraded=fetched.downgraded,
    )
    outcome = merge_invitation(
        method=model.method,
        role=model.role,
        incoming=incoming,
        stored=fetched.event,
        sender_address=model.sender_address,
    )
    if not outcome.write or outcome.event is None:
        logger.debug("No write needed for %s (%s): %s", incoming.uid, model.method.value, outcome.reason)
        return base
    calendar = fetched.calendar or model.default_calendar
    if calendar is None:
        logger.info("No calendar available to store %s; skipping write", incoming.uid)
        return base
    return await _persist(base, outcome.event, calendar, store)


async def reconcile(
    model: InvitationModel,
    *,
    store: CalendarStore,
    calendars: Iterable[CalendarRef],
) -> InvitationModel:
    if model.error is not None or model.event_from_message is None:
        return model
    fetched = await fetch_invitation(model.event_from_message, calendars, store)
    return await update_invitation(model, fetched, store)


ANSWER_ACTIONS = {
    PartStat.ACCEPTED: "accept",
    PartStat.TENTATIVE: "tentative",
    PartStat.DECLINED: "decline",
}


async def respond(model: InvitationModel, *, store: CalendarStore, partstat: PartStat) -> InvitationModel:
    """Record the viewer's answer to a request in their calendar."""
    action = ANSWER_ACTIONS.get(partstat)
    if action is None:
        raise ValueError(f"unsupported answer: {partstat.value}")
    if getattr(derive_actions(model), action) is not ActionState.ENABLED:
        raise ValueError(f"{action} is not available for this invitation")
    base = model.event_from_store or as_stored(model.event_from_message)
    calendar = model.matching_calendar or model.default_calendar
    if calendar is None:
        raise ValueError("no calendar available to store the answer")
    answered = apply_participation(base, model.viewer_address or "", partstat)
    return await _persist(model, answered, calendar, store)


async def accept_counter(model: InvitationModel, *, store: CalendarStore) -> InvitationModel:
    if derive_actions(model).accept_counter is not ActionState.ENABLED:
        raise ValueError("counter-proposal cannot be accepted")
    updated = apply_counter(model.event_from_store, model.event_from_message)
    return await _persist(model, updated, model.matching_calendar, store)
