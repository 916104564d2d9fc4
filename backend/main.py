from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from typing import Any

from fastapi import FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from portal_realtime import (
    AppointmentStatusMachine,
    ChangeFeedClient,
    Contact,
    ConversationView,
    NoticeBoard,
    NotificationSession,
    PortalSettings,
    QueueSurface,
    TransitionError,
    Viewer,
    discover_contacts,
)
from portal_realtime.config import bootstrap_local_env
from portal_realtime.threads import DOCTOR_ROLE_LABEL, OUTGOING_FAILED, SYSTEM_CONTACT, format_doctor_name
from portal_store import (
    AppointmentStore,
    Attachment,
    MessageStore,
    ProfileStore,
    RecordNotFound,
    SQLitePortalDB,
    StorageClient,
    StorageError,
    StoreError,
    StoreWriteError,
)
from portal_store.changes import BUS_OFFLINE

bootstrap_local_env()

logger = logging.getLogger(__name__)

_MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024


class ProfilePayload(BaseModel):
    full_name: str = Field(min_length=1, max_length=120)
    role: str = "patient"
    avatar_url: str | None = None


class SendMessagePayload(BaseModel):
    text: str = ""
    attachment_url: str | None = None
    attachment_type: str | None = None


class BookingPayload(BaseModel):
    date: str
    type: str = "GP Consultation"


class StatusPayload(BaseModel):
    status: str


class ReschedulePayload(BaseModel):
    date: str


class PortalApp:
    def __init__(self, settings: PortalSettings | None = None) -> None:
        self.settings = settings or PortalSettings.from_env()
        self.db = SQLitePortalDB(self.settings.db_path)
        if self.settings.realtime_disabled:
            self.db.changes.set_state(BUS_OFFLINE)
        self.profiles = ProfileStore(self.db)
        self.messages = MessageStore(self.db)
        self.appointments = AppointmentStore(self.db)
        self.status_machine = AppointmentStatusMachine(self.appointments)
        self.storage: StorageClient | None = None
        if self.settings.storage_url:
            self.storage = StorageClient(
                base_url=self.settings.storage_url,
                bucket=self.settings.storage_bucket,
                api_key=self.settings.storage_key,
            )

    def viewer_for(self, user_id: str) -> Viewer:
        profile = self.profiles.get(user_id)
        if not profile:
            raise HTTPException(status_code=404, detail="Profile not found")
        return Viewer(id=profile["id"], role=profile["role"], display_name=profile["full_name"])

    def contacts_for(self, viewer: Viewer) -> list[Contact]:
        if viewer.is_doctor:
            appointments = self.appointments.claimed_by(viewer.id)
            counterpart_ids = [appt["user_id"] for appt in appointments]
        else:
            appointments = self.appointments.confirmed_for_patient(viewer.id)
            counterpart_ids = [appt["doctor_id"] for appt in appointments if appt.get("doctor_id")]
        return discover_contacts(viewer, appointments, self.profiles.get_many(counterpart_ids))

    def resolve_contact(self, viewer: Viewer, contact_id: str) -> Contact:
        if not viewer.is_doctor and contact_id == SYSTEM_CONTACT.id:
            return SYSTEM_CONTACT
        for contact in self.contacts_for(viewer):
            if contact.id == contact_id:
                return contact
        raise HTTPException(status_code=404, detail="Contact not found")

    def open_session(self, viewer: Viewer, board: NoticeBoard) -> NotificationSession:
        feed = ChangeFeedClient(
            self.db.changes,
            viewer,
            loop=asyncio.get_running_loop(),
            connect_timeout_seconds=self.settings.feed_connect_timeout_seconds,
        )
        return NotificationSession(
            viewer=viewer,
            feed=feed,
            messages=self.messages,
            appointments=self.appointments,
            board=board,
            poll_interval_seconds=self.settings.poll_interval_seconds,
        )


container = PortalApp()
app = FastAPI(title="MediLink Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(container.settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if container.settings.allow_anon:
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer value is an opaque user id supplied by the auth provider.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _store_http_error(exc: StoreError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StoreWriteError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=503, detail="Store unavailable")


def _contact_payload(contact: Contact) -> dict[str, Any]:
    label = format_doctor_name(contact.name) if contact.role == DOCTOR_ROLE_LABEL else contact.name
    return {
        "id": contact.id,
        "name": contact.name,
        "label": label,
        "role": contact.role,
        "avatar_url": contact.avatar_url,
    }


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.get("/profile")
def get_profile(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    user_id = resolve_user_id(authorization, x_user_id)
    profile = container.profiles.get(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


@app.post("/profile")
def post_profile(
    payload: ProfilePayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        return container.profiles.upsert(
            user_id=user_id,
            full_name=payload.full_name,
            role=payload.role,
            avatar_url=payload.avatar_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/contacts")
def get_contacts(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    return {"items": [_contact_payload(contact) for contact in container.contacts_for(viewer)]}


@app.get("/threads/{contact_id}/messages")
def get_thread_messages(
    contact_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    contact = container.resolve_contact(viewer, contact_id)
    view = ConversationView(viewer=viewer, counterpart=contact, messages=container.messages)
    try:
        items = view.load()
    except StoreError as exc:
        raise _store_http_error(exc) from exc
    return {"contact": _contact_payload(contact), "filter": view.predicate.as_filter(), "items": items}


@app.post("/threads/{contact_id}/messages")
def post_thread_message(
    contact_id: str,
    payload: SendMessagePayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    contact = container.resolve_contact(viewer, contact_id)
    attachment = None
    if payload.attachment_url:
        if payload.attachment_type not in {None, "image", "file"}:
            raise HTTPException(status_code=400, detail="attachment_type must be image or file")
        attachment = Attachment(url=payload.attachment_url, kind=payload.attachment_type or "file")
    view = ConversationView(viewer=viewer, counterpart=contact, messages=container.messages)
    try:
        entry = view.send(payload.text, attachment)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if entry.state == OUTGOING_FAILED:
        # The failed row goes back to the caller so it can be shown and retried.
        status_code = 409 if isinstance(entry.failure, StoreWriteError) else 503
        raise HTTPException(
            status_code=status_code,
            detail={"status": "failure", "error": entry.error, "message": entry.as_row()},
        )
    return {"status": "success", "message": entry.as_row()}


@app.post("/attachments")
async def post_attachment(
    file: UploadFile = File(...),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    if container.storage is None:
        raise HTTPException(status_code=503, detail="Attachment storage is not configured.")
    raw = await file.read(_MAX_ATTACHMENT_BYTES + 1)
    if len(raw) > _MAX_ATTACHMENT_BYTES:
        raise HTTPException(status_code=413, detail="Attachment is too large.")
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    try:
        attachment = await asyncio.to_thread(
            container.storage.upload,
            owner_id=user_id,
            filename=file.filename or "attachment",
            content=raw,
            content_type=file.content_type,
        )
    except StorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"url": attachment.url, "kind": attachment.kind}


@app.get("/appointments")
def get_appointments(authorization: str | None = Header(default=None), x_user_id: str | None = Header(default=None)):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    if viewer.is_doctor:
        return {"items": container.appointments.list_for_doctor_dashboard(viewer.id)}
    return {"items": container.appointments.list_for_patient(viewer.id)}


@app.post("/appointments")
def post_appointment(
    payload: BookingPayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    try:
        return container.status_machine.book(viewer, date=payload.date, type=payload.type)
    except TransitionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@app.post("/appointments/{appointment_id}/status")
def post_appointment_status(
    appointment_id: str,
    payload: StatusPayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    try:
        return container.status_machine.transition(appointment_id, payload.status, viewer)
    except TransitionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except StoreError as exc:
        raise _store_http_error(exc) from exc


@app.post("/appointments/{appointment_id}/reschedule")
def post_appointment_reschedule(
    appointment_id: str,
    payload: ReschedulePayload,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = container.viewer_for(resolve_user_id(authorization, x_user_id))
    try:
        return container.status_machine.reschedule(appointment_id, viewer, date=payload.date)
    except StoreError as exc:
        raise _store_http_error(exc) from exc


@app.get("/notifications/stream")
async def notifications_stream(
    window_seconds: float = Query(default=25.0, gt=0, le=60),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    viewer = await asyncio.to_thread(container.viewer_for, resolve_user_id(authorization, x_user_id))

    async def event_stream():
        board = NoticeBoard()
        surface = QueueSurface()
        token = board.mount(surface)
        session = container.open_session(viewer, board)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window_seconds
        logger.info("notification stream opened for %s (%.1fs)", viewer.id, window_seconds)
        try:
            await session.open()
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    notice = await asyncio.wait_for(surface.queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                yield _emit_sse("notice", notice.as_payload())
        finally:
            session.close()
            board.unmount(token)
        yield _emit_sse("end", {"transport_history": session.transport.history})

    return StreamingResponse(event_stream(), media_type="text/event-stream")
