from __future__ import annotations

from enum import Enum
from typing import Any


class InvitationErrorType(str, Enum):
    FETCHING_ERROR = "FETCHING_ERROR"
    UPDATING_ERROR = "UPDATING_ERROR"
    PARSING_ERROR = "PARSING_ERROR"


ERROR_MESSAGES: dict[InvitationErrorType, str] = {
    InvitationErrorType.FETCHING_ERROR: "We could not retrieve the event from your calendar.",
    InvitationErrorType.UPDATING_ERROR: "We could not update the event in your calendar.",
    InvitationErrorType.PARSING_ERROR: "This invitation could not be read.",
}


def get_error_message(kind: InvitationErrorType) -> str:
    return ERROR_MESSAGES[InvitationErrorType(kind)]


class InvitationError(Exception):
    """A classified invitation failure.

    Instances are stored on the invitation model instead of being raised past
    the reconciliation boundary. Two errors are equal when their kinds are.
    """

    def __init__(self, kind: InvitationErrorType, cause: BaseException | None = None) -> None:
        self.kind = InvitationErrorType(kind)
        self.cause = cause
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return get_error_message(self.kind)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InvitationError):
            return NotImplemented
        return self.kind is other.kind

    def __hash__(self) -> int:
        return hash(self.kind)

    def __repr__(self) -> str:
        return f"InvitationError({self.kind.value})"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message}


def classify(exc: BaseException, default: InvitationErrorType) -> InvitationError:
    if isinstance(exc, InvitationError):
        return exc
    return InvitationError(default, cause=exc)
