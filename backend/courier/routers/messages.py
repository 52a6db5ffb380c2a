"""Messages router: owner-facing control surface for future deliveries.

The owner creates drafts, attaches content, schedules with a trigger and may
cancel. Everything after scheduling is driven by the scheduler; these
endpoints only read status or record owner intents.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from sqlmodel import Session

from courier.db import get_session
from courier.dependencies import get_message_service, get_owner_id, http_error
from courier.errors import CourierError
from courier.models.message import (
    AuditEventRead,
    MessageContentUpdate,
    MessageCreate,
    MessageRead,
    MessageStatus,
    MessageStatusRead,
    ScheduleRequest,
)
from courier.services.messages import MessageService

router = APIRouter(prefix="/api/messages", tags=["messages"])

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


@router.post("", response_model=MessageRead, status_code=201)
async def create_message(
    body: MessageCreate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    try:
        message = service.create(db, owner_id, body)
    except CourierError as exc:
        raise http_error(exc)
    return MessageRead.model_validate(message)


@router.get("", response_model=list[MessageRead])
async def list_messages(
    status: MessageStatus | None = Query(default=None),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> list[MessageRead]:
    messages = service.list_messages(db, owner_id, status.value if status else None)
    return [MessageRead.model_validate(m) for m in messages]


@router.get("/{message_id}", response_model=MessageRead)
async def get_message(
    message_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    try:
        return MessageRead.model_validate(service.get(db, owner_id, message_id))
    except CourierError as exc:
        raise http_error(exc)


@router.put("/{message_id}/content", response_model=MessageRead)
async def attach_content(
    message_id: str,
    body: MessageContentUpdate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    try:
        message = service.attach_content(db, owner_id, message_id, body.content_ref)
    except CourierError as exc:
        raise http_error(exc)
    return MessageRead.model_validate(message)


@router.post("/{message_id}/content", response_model=MessageRead)
async def upload_content(
    message_id: str,
    file: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    """Upload the message body into the content store and attach it."""
    data = await file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Content too large")
    try:
        message = await service.upload_content(db, owner_id, message_id, data)
    except CourierError as exc:
        raise http_error(exc)
    return MessageRead.model_validate(message)


@router.post("/{message_id}/schedule", response_model=MessageRead)
async def schedule_message(
    message_id: str,
    body: ScheduleRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    try:
        message = service.schedule(db, owner_id, message_id, body.trigger)
    except CourierError as exc:
        raise http_error(exc)
    return MessageRead.model_validate(message)


@router.post("/{message_id}/cancel", response_model=MessageRead)
async def cancel_message(
    message_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageRead:
    try:
        message = service.cancel(db, owner_id, message_id)
    except CourierError as exc:
        raise http_error(exc)
    return MessageRead.model_validate(message)


@router.get("/{message_id}/status", response_model=MessageStatusRead)
async def get_message_status(
    message_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> MessageStatusRead:
    try:
        return service.get_status(db, owner_id, message_id)
    except CourierError as exc:
        raise http_error(exc)


@router.get("/{message_id}/events", response_model=list[AuditEventRead])
async def get_message_events(
    message_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: MessageService = Depends(get_message_service),
) -> list[AuditEventRead]:
    try:
        events = service.events(db, owner_id, message_id, limit=limit)
    except CourierError as exc:
        raise http_error(exc)
    return [AuditEventRead.model_validate(e) for e in events]
