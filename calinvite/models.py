from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from calinvite.errors import InvitationError


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def normalize_address(value: str | None) -> str:
    text = str(value or "").strip()
    if text.lower().startswith("mailto:"):
        text = text[len("mailto:"):]
    return text.strip().casefold()


class Method(str, Enum):
    REQUEST = "REQUEST"
    REPLY = "REPLY"
    CANCEL = "CANCEL"
    COUNTER = "COUNTER"
    REFRESH = "REFRESH"
    ADD = "ADD"

    @classmethod
    def parse(cls, value: Any) -> "Method | None":
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            return None


class Role(str, Enum):
    ORGANIZER = "ORGANIZER"
    ATTENDEE = "ATTENDEE"


class InvitationSource(str, Enum):
    FROM_MESSAGE = "fromMessage"
    FROM_STORE = "fromStore"


class PartStat(str, Enum):
    NEEDS_ACTION = "NEEDS-ACTION"
    ACCEPTED = "ACCEPTED"
    TENTATIVE = "TENTATIVE"
    DECLINED = "DECLINED"
    DELEGATED = "DELEGATED"

    @classmethod
    def parse(cls, value: Any) -> "PartStat":
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.NEEDS_ACTION


class EventStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    TENTATIVE = "TENTATIVE"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: Any) -> "EventStatus":
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            return cls.CONFIRMED


@dataclass(frozen=True)
class Participant:
    address: str
    name: str = ""

    @property
    def normalized(self) -> str:
        return normalize_address(self.address)


@dataclass(frozen=True)
class Attendee:
    address: str
    name: str = ""
    partstat: PartStat = PartStat.NEEDS_ACTION
    rsvp: bool = False
    role: str = "REQ-PARTICIPANT"

    @property
    def normalized(self) -> str:
        return normalize_address(self.address)


@dataclass(frozen=True)
class ParsedEvent:
    """One immutable version of a calendar event.

    Only ``uid`` and ``sequence`` take part in reconciliation; timing and
    recurrence fields are carried through untouched.
    """

    uid: str
    sequence: int | None = None
    method: Method | None = None
    organizer: Participant | None = None
    attendees: tuple[Attendee, ...] = ()
    start: datetime | None = None
    end: datetime | None = None
    recurrence_id: datetime | None = None
    rrule: str = ""
    summary: str = ""
    status: EventStatus = EventStatus.CONFIRMED
    source: InvitationSource = InvitationSource.FROM_MESSAGE

    def with_updates(self, **kwargs: Any) -> "ParsedEvent":
        return replace(self, **kwargs)

    def find_attendee(self, address: str | None) -> Attendee | None:
        wanted = normalize_address(address)
        if not wanted:
            return None
        for attendee in self.attendees:
            if attendee.normalized == wanted:
                return attendee
        return None

    @property
    def is_cancelled(self) -> bool:
        return self.status is EventStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "sequence": self.sequence,
            "method": self.method.value if self.method else None,
            "organizer": asdict(self.organizer) if self.organizer else None,
            "attendees": [
                {
                    "address": attendee.address,
                    "name": attendee.name,
                    "partstat": attendee.partstat.value,
                    "rsvp": attendee.rsvp,
                    "role": attendee.role,
                }
                for attendee in self.attendees
            ],
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "recurrence_id": serialize_datetime(self.recurrence_id),
            "rrule": self.rrule,
            "summary": self.summary,
            "status": self.status.value,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class CalendarRef:
    calendar_id: str
    name: str = ""
    member_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CalendarKeys:
    member_id: str
    address_keys: tuple[Any, ...] = ()
    calendar_keys: tuple[Any, ...] = ()


@dataclass(frozen=True)
class MessageContext:
    message_id: str
    sender_address: str = ""
    subject: str = ""


@dataclass(frozen=True)
class ContactEmail:
    address: str
    name: str = ""


@dataclass(frozen=True)
class OwnAddress:
    address: str
    address_id: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class InvitationInputs:
    invitation_or_error: "ParsedEvent | InvitationError"
    message: MessageContext
    contacts: tuple[ContactEmail, ...] = ()
    addresses: tuple[OwnAddress, ...] = ()
    default_calendar: CalendarRef | None = None


@dataclass(frozen=True)
class InvitationModel:
    """State of one invitation, replaced wholesale at every phase boundary."""

    method: Method | None
    role: Role
    event_from_message: ParsedEvent | None = None
    event_from_store: ParsedEvent | None = None
    matching_calendar: CalendarRef | None = None
    default_calendar: CalendarRef | None = None
    viewer_address: str | None = None
    sender_address: str = ""
    message_id: str = ""
    error: "InvitationError | None" = None
    fetch_downgraded: bool = False
    inputs: InvitationInputs | None = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        incoming, stored = self.event_from_message, self.event_from_store
        if incoming is not None and stored is not None and incoming.uid != stored.uid:
            raise ValueError(f"UID mismatch between message event {incoming.uid!r} and stored event {stored.uid!r}")

    @property
    def uid(self) -> str:
        if self.event_from_message is None:
            return ""
        return self.event_from_message.uid

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value if self.method else None,
            "role": self.role.value,
            "event_from_message": self.event_from_message.to_dict() if self.event_from_message else None,
            "event_from_store": self.event_from_store.to_dict() if self.event_from_store else None,
            "matching_calendar": self.matching_calendar.to_dict() if self.matching_calendar else None,
            "viewer_address": self.viewer_address,
            "sender_address": self.sender_address,
            "message_id": self.message_id,
            "error": self.error.to_dict() if self.error else None,
            "fetch_downgraded": self.fetch_downgraded,
        }


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )


@dataclass
class ViewerConfig:
    addresses: list[str] = field(default_factory=list)
    default_calendar_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ViewerConfig":
        data = data or {}
        raw_addresses = data.get("addresses", [])
        if isinstance(raw_addresses, str):
            raw_addresses = [raw_addresses]
        seen: set[str] = set()
        addresses: list[str] = []
        for item in raw_addresses or []:
            text = str(item).strip()
            key = normalize_address(text)
            if not key or key in seen:
                continue
            seen.add(key)
            addresses.append(text)
        return cls(
            addresses=addresses,
            default_calendar_id=str(data.get("default_calendar_id", "")).strip(),
        )

    def own_addresses(self) -> tuple[OwnAddress, ...]:
        return tuple(OwnAddress(address=address) for address in self.addresses)


@dataclass
class StorageConfig:
    state_db_path: str = "data/state.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(state_db_path=str(data.get("state_db_path", "data/state.db")).strip() or "data/state.db")


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    viewer: ViewerConfig = field(default_factory=ViewerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            viewer=ViewerConfig.from_dict(data.get("viewer")),
            storage=StorageConfig.from_dict(data.get("storage")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()
