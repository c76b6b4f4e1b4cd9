from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from calinvite.actions import InvitationActions, derive_actions, should_display
from calinvite.errors import InvitationError
from calinvite.invitation import accept_counter, build_model, reconcile, respond, retry
from calinvite.models import (
    CalendarRef,
    ContactEmail,
    InvitationModel,
    MessageContext,
    OwnAddress,
    ParsedEvent,
    PartStat,
)
from calinvite.state_store import StateStore
from calinvite.store import CalendarStore

logger = logging.getLogger(__name__)


class InvitationSession:
    """Owns the model of one displayed invitation.

    Each ``run``, answer and counter acceptance is tagged with a pass number.
    A result is only kept when its pass is still the latest one and the
    session has not been closed, so a retry or an answer supersedes whatever
    pass was in flight.
    """

    def __init__(
        self,
        invitation_or_error: ParsedEvent | InvitationError,
        message: MessageContext,
        *,
        store: CalendarStore,
        calendars: Iterable[CalendarRef],
        contacts: Iterable[ContactEmail] = (),
        addresses: Iterable[OwnAddress] = (),
        default_calendar: CalendarRef | None = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self.store = store
        self.calendars = tuple(calendars)
        self.state_store = state_store
        self.model = build_model(invitation_or_error, message, contacts, addresses, default_calendar)
        self._pass = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_pass(self) -> int:
        return self._pass

    async def run(self) -> InvitationModel:
        pass_id = self._begin_pass()
        started = self.model
        started_at = time.monotonic()
        result = await reconcile(started, store=self.store, calendars=self.calendars)
        duration_ms = int((time.monotonic() - started_at) * 1000)
        if not self._is_current(pass_id):
            logger.debug("Discarding result of pass %s for message %s", pass_id, started.message_id)
            self._record(result, outcome="discarded", duration_ms=duration_ms)
            return self.model
        self.model = result
        self._record(result, outcome="error" if result.error else "ok", duration_ms=duration_ms)
        return result

    def retry(self) -> InvitationModel:
        self._begin_pass()
        self.model = retry(self.model)
        return self.model

    async def respond(self, partstat: PartStat) -> InvitationModel:
        pass_id = self._begin_pass()
        return self._assign(await respond(self.model, store=self.store, partstat=partstat), pass_id)

    async def accept_counter(self) -> InvitationModel:
        pass_id = self._begin_pass()
        return self._assign(await accept_counter(self.model, store=self.store), pass_id)

    def close(self) -> None:
        self._closed = True

    def actions(self) -> InvitationActions:
        return derive_actions(self.model)

    def should_display(self) -> bool:
        return should_display(self.model)

    def _begin_pass(self) -> int:
        self._pass += 1
        return self._pass

    def _is_current(self, pass_id: int) -> bool:
        return not self._closed and pass_id == self._pass

    def _assign(self, model: InvitationModel, pass_id: int) -> InvitationModel:
        if self._is_current(pass_id):
            self.model = model
        return self.model

    def _record(self, model: InvitationModel, *, outcome: str, duration_ms: int) -> None:
        if self.state_store is None:
            return
        self.state_store.record_pass(
            message_id=model.message_id,
            uid=model.uid,
            method=model.method.value if model.method else "",
            role=model.role.value,
            outcome=outcome,
            error_kind=model.error.kind.value if model.error else "",
            fetch_downgraded=model.fetch_downgraded,
            duration_ms=duration_ms,
        )
