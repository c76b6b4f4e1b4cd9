import unittest
from unittest import mock

from calinvite.actions import ActionState, derive_actions
from calinvite.errors import InvitationError, InvitationErrorType
from calinvite.invitation import (
    accept_counter,
    build_model,
    fetch_invitation,
    reconcile,
    respond,
    retry,
)
from calinvite.models import (
    Attendee,
    CalendarRef,
    ContactEmail,
    EventStatus,
    InvitationSource,
    MessageContext,
    Method,
    OwnAddress,
    ParsedEvent,
    Participant,
    PartStat,
    Role,
)
from calinvite.store import InMemoryCalendarStore


PERSONAL = CalendarRef(calendar_id="cal-personal", name="Personal")
MESSAGE = MessageContext(message_id="msg-1", sender_address="boss@example.com", subject="Invitation")
ATTENDEE_ADDRESSES = (OwnAddress(address="Ann@Example.com"),)
ORGANIZER_ADDRESSES = (OwnAddress(address="boss@example.com"),)


def _event(sequence=0, method=Method.REQUEST, **kwargs) -> ParsedEvent:
    defaults = {
        "uid": "evt-1",
        "sequence": sequence,
        "method": method,
        "organizer": Participant(address="boss@example.com"),
        "attendees": (Attendee(address="ann@example.com"), Attendee(address="bob@example.com")),
        "summary": "Planning",
    }
    defaults.update(kwargs)
    return ParsedEvent(**defaults)


class BuildModelTests(unittest.TestCase):
    def test_attendee_role_and_viewer_address(self) -> None:
        model = build_model(_event(), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        self.assertEqual(model.method, Method.REQUEST)
        self.assertEqual(model.role, Role.ATTENDEE)
        self.assertEqual(model.viewer_address, "Ann@Example.com")
        self.assertIsNone(model.event_from_store)
        self.assertIsNone(model.error)
        self.assertEqual(model.event_from_message.source, InvitationSource.FROM_MESSAGE)

    def test_organizer_match_is_case_insensitive(self) -> None:
        model = build_model(_event(method=Method.COUNTER), MESSAGE, (), (OwnAddress(address="BOSS@example.COM"),))
        self.assertEqual(model.role, Role.ORGANIZER)

    def test_disabled_address_does_not_count(self) -> None:
        addresses = (OwnAddress(address="boss@example.com", enabled=False),)
        model = build_model(_event(), MESSAGE, (), addresses)
        self.assertEqual(model.role, Role.ATTENDEE)
        self.assertIsNone(model.viewer_address)

    def test_missing_organizer_defaults_to_attendee(self) -> None:
        model = build_model(_event(organizer=None), MESSAGE, (), ORGANIZER_ADDRESSES)
        self.assertEqual(model.role, Role.ATTENDEE)

    def test_missing_method_defaults_to_request(self) -> None:
        model = build_model(_event(method=None), MESSAGE)
        self.assertEqual(model.method, Method.REQUEST)

    def test_contact_names_fill_blank_names(self) -> None:
        contacts = (ContactEmail(address="BOB@example.com", name="Bob B."),)
        model = build_model(_event(), MESSAGE, contacts, ATTENDEE_ADDRESSES)
        self.assertEqual(model.event_from_message.find_attendee("bob@example.com").name, "Bob B.")

    def test_parse_error_input(self) -> None:
        error = InvitationError(InvitationErrorType.PARSING_ERROR)
        model = build_model(error, MESSAGE, (), ATTENDEE_ADDRESSES)
        self.assertIs(model.error, error)
        self.assertIsNone(model.event_from_message)
        self.assertIsNone(model.method)
        self.assertEqual(model.role, Role.ATTENDEE)

    def test_build_is_deterministic_and_retry_rebuilds(self) -> None:
        first = build_model(_event(3), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        second = build_model(_event(3), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        self.assertEqual(first, second)
        self.assertEqual(retry(first), first)


class ReconcileTests(unittest.IsolatedAsyncioTestCase):
    async def test_request_without_stored_event_is_persisted(self) -> None:
        store = InMemoryCalendarStore(calendars=[PERSONAL])
        model = build_model(_event(2), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertIsNone(result.error)
        stored = store.get("cal-personal", "evt-1")
        self.assertIsNotNone(stored)
        self.assertEqual(stored.sequence, 2)
        self.assertEqual(len(store.writes), 1)
        self.assertEqual(result.event_from_store.sequence, 2)
        self.assertEqual(result.matching_calendar, PERSONAL)
        self.assertEqual(derive_actions(result).accept, ActionState.ENABLED)

    async def test_request_without_any_calendar_skips_write(self) -> None:
        store = InMemoryCalendarStore()
        model = build_model(_event(2), MESSAGE, (), ATTENDEE_ADDRESSES)
        result = await reconcile(model, store=store, calendars=[])
        self.assertIsNone(result.error)
        self.assertEqual(store.writes, [])

    async def test_stale_request_keeps_stored_version(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(5, summary="Current"))
        model = build_model(_event(4, summary="Old"), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(store.writes, [])
        self.assertEqual(result.event_from_store.summary, "Current")
        self.assertEqual(derive_actions(result).accept, ActionState.DISABLED)

    async def test_fetch_failure_is_treated_as_not_found(self) -> None:
        store = InMemoryCalendarStore(calendars=[PERSONAL])
        store.fetch_event_by_uid = mock.AsyncMock(side_effect=ConnectionError("offline"))
        model = build_model(_event(1), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        with self.assertLogs("calinvite.invitation", level="WARNING"):
            result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertIsNone(result.error)
        self.assertTrue(result.fetch_downgraded)
        self.assertEqual(len(store.writes), 1)

    async def test_fetch_with_no_calendars_skips_lookup(self) -> None:
        store = mock.Mock()
        store.fetch_event_by_uid = mock.AsyncMock()
        fetched = await fetch_invitation(_event(), [], store)
        self.assertIsNone(fetched.event)
        store.fetch_event_by_uid.assert_not_awaited()

    async def test_persist_failure_sets_updating_error(self) -> None:
        store = InMemoryCalendarStore(calendars=[PERSONAL])
        store.persist_event = mock.AsyncMock(side_effect=RuntimeError("write refused"))
        model = build_model(_event(1), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(result.error.kind, InvitationErrorType.UPDATING_ERROR)
        self.assertEqual(result.event_from_message.uid, "evt-1")
        self.assertIsNone(result.event_from_store)
        self.assertEqual(store.persist_event.await_count, 1)
        self.assertTrue(derive_actions(result).is_empty())

    async def test_key_failure_sets_fetching_error(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(1))
        store.resolve_calendar_keys = mock.AsyncMock(side_effect=PermissionError("no keys"))
        model = build_model(_event(2), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(result.error.kind, InvitationErrorType.FETCHING_ERROR)
        self.assertEqual(result.event_from_store.sequence, 1)
        self.assertEqual(store.writes, [])

    async def test_reply_for_unknown_uid_is_noop(self) -> None:
        store = InMemoryCalendarStore(calendars=[PERSONAL])
        reply = _event(1, method=Method.REPLY, attendees=(Attendee(address="ann@example.com", partstat=PartStat.ACCEPTED),))
        message = MessageContext(message_id="msg-2", sender_address="ann@example.com")
        model = build_model(reply, message, (), ORGANIZER_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertIsNone(result.error)
        self.assertEqual(store.writes, [])
        self.assertEqual(store.events, {})

    async def test_reply_updates_organizer_copy(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(1, method=None))
        reply = _event(1, method=Method.REPLY, attendees=(Attendee(address="ann@example.com", partstat=PartStat.TENTATIVE),))
        message = MessageContext(message_id="msg-2", sender_address="ann@example.com")
        model = build_model(reply, message, (), ORGANIZER_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertIsNone(result.error)
        self.assertEqual(
            store.get("cal-personal", "evt-1").find_attendee("ann@example.com").partstat,
            PartStat.TENTATIVE,
        )
        self.assertEqual(result.event_from_store.find_attendee("ann@example.com").partstat, PartStat.TENTATIVE)

    async def test_cancel_marks_stored_event(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(2, method=None))
        model = build_model(_event(3, method=Method.CANCEL), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(store.get("cal-personal", "evt-1").status, EventStatus.CANCELLED)
        self.assertTrue(derive_actions(result).is_empty())

    async def test_reopening_request_after_cancel_keeps_it_cancelled(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(3, method=None))
        cancel = build_model(_event(3, method=Method.CANCEL), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        await reconcile(cancel, store=store, calendars=[PERSONAL])

        reopened = build_model(_event(3), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        result = await reconcile(reopened, store=store, calendars=[PERSONAL])

        self.assertEqual(len(store.writes), 1)
        self.assertEqual(store.get("cal-personal", "evt-1").status, EventStatus.CANCELLED)
        self.assertTrue(derive_actions(result).is_empty())

    async def test_stale_cancel_is_not_persisted(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(5, method=None))
        model = build_model(_event(2, method=Method.CANCEL), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)

        await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(store.writes, [])
        self.assertEqual(store.get("cal-personal", "evt-1").status, EventStatus.CONFIRMED)

    async def test_counter_is_not_persisted(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(3, method=None))
        counter = _event(1, method=Method.COUNTER)
        model = build_model(counter, MESSAGE, (), ORGANIZER_ADDRESSES, PERSONAL)

        result = await reconcile(model, store=store, calendars=[PERSONAL])

        self.assertEqual(store.writes, [])
        self.assertEqual(result.role, Role.ORGANIZER)
        self.assertEqual(derive_actions(result).accept_counter, ActionState.DISABLED)

    async def test_parse_error_model_is_returned_untouched(self) -> None:
        store = mock.Mock()
        model = build_model(InvitationError(InvitationErrorType.PARSING_ERROR), MESSAGE)
        result = await reconcile(model, store=store, calendars=[PERSONAL])
        self.assertIs(result, model)
        store.fetch_event_by_uid.assert_not_called()

    async def test_stored_uid_mismatch_is_a_programming_error(self) -> None:
        store = mock.Mock()
        store.fetch_event_by_uid = mock.AsyncMock(return_value=(ParsedEvent(uid="other"), PERSONAL))
        model = build_model(_event(1), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL)
        with self.assertRaises(ValueError):
            await reconcile(model, store=store, calendars=[PERSONAL])


class ActionTests(unittest.IsolatedAsyncioTestCase):
    async def test_attendee_accepts_request(self) -> None:
        store = InMemoryCalendarStore(calendars=[PERSONAL])
        model = await reconcile(
            build_model(_event(1), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL),
            store=store,
            calendars=[PERSONAL],
        )

        answered = await respond(model, store=store, partstat=PartStat.ACCEPTED)

        self.assertIsNone(answered.error)
        self.assertEqual(
            store.get("cal-personal", "evt-1").find_attendee("ann@example.com").partstat,
            PartStat.ACCEPTED,
        )
        self.assertEqual(len(store.writes), 2)

    async def test_answer_refused_when_not_enabled(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(4))
        model = await reconcile(
            build_model(_event(2), MESSAGE, (), ATTENDEE_ADDRESSES, PERSONAL),
            store=store,
            calendars=[PERSONAL],
        )
        with self.assertRaises(ValueError):
            await respond(model, store=store, partstat=PartStat.DECLINED)

    async def test_organizer_accepts_current_counter(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(5, method=None, summary="Planning"))
        counter = _event(5, method=Method.COUNTER, summary="Planning (moved)")
        model = await reconcile(
            build_model(counter, MESSAGE, (), ORGANIZER_ADDRESSES, PERSONAL),
            store=store,
            calendars=[PERSONAL],
        )

        accepted = await accept_counter(model, store=store)

        stored = store.get("cal-personal", "evt-1")
        self.assertEqual(stored.sequence, 6)
        self.assertEqual(stored.summary, "Planning (moved)")
        self.assertEqual(derive_actions(accepted).accept_counter, ActionState.DISABLED)

    async def test_stale_counter_cannot_be_accepted(self) -> None:
        store = InMemoryCalendarStore()
        store.put(PERSONAL, _event(3, method=None))
        model = await reconcile(
            build_model(_event(1, method=Method.COUNTER), MESSAGE, (), ORGANIZER_ADDRESSES, PERSONAL),
            store=store,
            calendars=[PERSONAL],
        )
        with self.assertRaises(ValueError):
            await accept_counter(model, store=store)


if __name__ == "__main__":
    unittest.main()
