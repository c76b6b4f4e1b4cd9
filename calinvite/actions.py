from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from calinvite.models import InvitationModel, Method, Role
from calinvite.reconciler import sequence_diff


class ActionState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass(frozen=True)
class InvitationActions:
    accept: ActionState | None = None
    tentative: ActionState | None = None
    decline: ActionState | None = None
    accept_counter: ActionState | None = None

    def is_empty(self) -> bool:
        return not self.to_dict()

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "accept": self.accept,
            "tentative": self.tentative,
            "decline": self.decline,
            "accept_counter": self.accept_counter,
        }
        return {key: value.value for key, value in payload.items() if value is not None}


NO_ACTIONS = InvitationActions()


def _answer_actions(state: ActionState) -> InvitationActions:
    return InvitationActions(accept=state, tentative=state, decline=state)


def _request_actions(model: InvitationModel) -> InvitationActions:
    if model.role is not Role.ATTENDEE or not model.viewer_address:
        return NO_ACTIONS
    incoming, stored = model.event_from_message, model.event_from_store
    if stored is not None and stored.is_cancelled:
        return NO_ACTIONS
    if stored is not None and sequence_diff(incoming, stored) < 0:
        return _answer_actions(ActionState.DISABLED)
    return _answer_actions(ActionState.ENABLED)


def _counter_actions(model: InvitationModel) -> InvitationActions:
    if model.role is not Role.ORGANIZER:
        return NO_ACTIONS
    stored = model.event_from_store
    if stored is None or stored.sequence is None:
        return NO_ACTIONS
    diff = sequence_diff(model.event_from_message, stored)
    if diff == 0:
        return InvitationActions(accept_counter=ActionState.ENABLED)
    if diff < 0:
        return InvitationActions(accept_counter=ActionState.DISABLED)
    # Newer than the organizer's copy: nothing to accept.
    return NO_ACTIONS


def _no_actions(model: InvitationModel) -> InvitationActions:
    return NO_ACTIONS


ACTION_HANDLERS: dict[Method, Callable[[InvitationModel], InvitationActions]] = {
    Method.REQUEST: _request_actions,
    Method.ADD: _request_actions,
    Method.COUNTER: _counter_actions,
    Method.REPLY: _no_actions,
    Method.CANCEL: _no_actions,
    Method.REFRESH: _no_actions,
}


def derive_actions(model: InvitationModel) -> InvitationActions:
    if model.error is not None or model.event_from_message is None or model.method is None:
        return NO_ACTIONS
    return ACTION_HANDLERS[model.method](model)


def should_display(model: InvitationModel) -> bool:
    if model.error is not None:
        return True
    if model.event_from_message is None:
        return False
    return not (model.role is Role.ORGANIZER and model.method is Method.REFRESH)
