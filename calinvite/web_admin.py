from __future__ import annotations

import logging
import os
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calinvite.caldav_client import CalDAVCalendarStore, CalDAVService
from calinvite.config_manager import ConfigManager
from calinvite.errors import InvitationError, InvitationErrorType, classify
from calinvite.ics import parse_ics
from calinvite.models import CalendarRef, ContactEmail, MessageContext, PartStat
from calinvite.session import InvitationSession
from calinvite.state_store import StateStore
from calinvite.store import CalendarStore

logger = logging.getLogger(__name__)

ANSWERS = {
    "accept": PartStat.ACCEPTED,
    "tentative": PartStat.TENTATIVE,
    "decline": PartStat.DECLINED,
}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ContactPayload(BaseModel):
    address: str
    name: str = ""


class MessagePayload(BaseModel):
    message_id: str = Field(min_length=1)
    sender: str = ""
    subject: str = ""


class InvitationRequest(BaseModel):
    ics: str = Field(min_length=1)
    message: MessagePayload
    contacts: list[ContactPayload] = Field(default_factory=list)


class RespondRequest(InvitationRequest):
    action: Literal["accept", "tentative", "decline", "accept_counter"]


class AppContext:
    def __init__(self, config_path: str, state_path: str, store: Optional[CalendarStore] = None) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self._store = store

    def calendar_store(self) -> CalendarStore:
        if self._store is not None:
            return self._store
        return CalDAVCalendarStore(CalDAVService(self.config_manager.load().caldav))

    async def open_session(self, request: InvitationRequest) -> InvitationSession:
        config = self.config_manager.load()
        store = self.calendar_store()
        invitation = parse_ics(request.ics)
        calendars: list[CalendarRef] = []
        try:
            calendars = await store.list_calendars()
        except Exception as exc:
            # Without the calendar list no lookup can run, so nothing may be written.
            logger.error("Listing calendars failed", exc_info=True)
            if not isinstance(invitation, InvitationError):
                invitation = classify(exc, InvitationErrorType.FETCHING_ERROR)
        return InvitationSession(
            invitation,
            MessageContext(
                message_id=request.message.message_id,
                sender_address=request.message.sender,
                subject=request.message.subject,
            ),
            store=store,
            calendars=calendars,
            contacts=[ContactEmail(address=item.address, name=item.name) for item in request.contacts],
            addresses=config.viewer.own_addresses(),
            default_calendar=self.config_manager.default_calendar(calendars),
            state_store=self.state_store,
        )


def _session_payload(session: InvitationSession) -> dict[str, Any]:
    model = session.model
    return {
        "model": model.to_dict(),
        "actions": session.actions().to_dict(),
        "display": session.should_display(),
        "error": model.error.to_dict() if model.error else None,
    }


def create_app(store: Optional[CalendarStore] = None) -> FastAPI:
    config_path = os.getenv("CALINVITE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALINVITE_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path, store=store)

    app = FastAPI(title="calinvite", version="0.1.0")
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.get("/api/calendars")
    async def list_calendars() -> dict[str, Any]:
        try:
            calendars = await app.state.context.calendar_store().list_calendars()
        except Exception as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/invitations/preview")
    async def preview_invitation(request: InvitationRequest) -> dict[str, Any]:
        session = await app.state.context.open_session(request)
        await session.run()
        return _session_payload(session)

    @app.post("/api/invitations/respond")
    async def respond_invitation(request: RespondRequest) -> dict[str, Any]:
        session = await app.state.context.open_session(request)
        await session.run()
        try:
            if request.action == "accept_counter":
                await session.accept_counter()
            else:
                await session.respond(ANSWERS[request.action])
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _session_payload(session)

    @app.get("/api/passes")
    def list_passes(limit: int = 50, uid: str = "") -> dict[str, Any]:
        items = app.state.context.state_store.recent_passes(limit=limit, uid=uid)
        return {"items": items, "downgraded_total": app.state.context.state_store.downgrade_count()}

    return app
