"""Trusted contacts router: CRUD plus the invitation handshake."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlmodel import Session

from courier.db import get_session
from courier.dependencies import get_contact_service, get_owner_id, http_error
from courier.errors import CourierError
from courier.models.contact import (
    InvitationResponse,
    TrustedContactCreate,
    TrustedContactRead,
    TrustedContactUpdate,
)
from courier.services.contacts import ContactService

router = APIRouter(prefix="/api/contacts", tags=["contacts"])


@router.post("", response_model=TrustedContactRead, status_code=201)
async def create_contact(
    body: TrustedContactCreate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> TrustedContactRead:
    contact = service.create(db, owner_id, body)
    return TrustedContactRead.model_validate(contact)


@router.get("", response_model=list[TrustedContactRead])
async def list_contacts(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> list[TrustedContactRead]:
    return [TrustedContactRead.model_validate(c) for c in service.list_contacts(db, owner_id)]


@router.put("/{contact_id}", response_model=TrustedContactRead)
async def update_contact(
    contact_id: str,
    body: TrustedContactUpdate,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> TrustedContactRead:
    try:
        contact = service.update(db, owner_id, contact_id, body)
    except CourierError as exc:
        raise http_error(exc)
    return TrustedContactRead.model_validate(contact)


@router.delete("/{contact_id}", status_code=204)
async def delete_contact(
    contact_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> Response:
    try:
        service.delete(db, owner_id, contact_id)
    except CourierError as exc:
        raise http_error(exc)
    return Response(status_code=204)


@router.post("/{contact_id}/invite", response_model=TrustedContactRead)
async def invite_contact(
    contact_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> TrustedContactRead:
    try:
        contact = await service.invite(db, owner_id, contact_id)
    except CourierError as exc:
        raise http_error(exc)
    return TrustedContactRead.model_validate(contact)


@router.post("/invitations/{token}", response_model=TrustedContactRead)
async def respond_to_invitation(
    token: str,
    body: InvitationResponse,
    db: Session = Depends(get_session),
    service: ContactService = Depends(get_contact_service),
) -> TrustedContactRead:
    """Accept or decline an invitation (link from the invitation email)."""
    try:
        contact = service.respond_invitation(db, token, body.accept)
    except CourierError as exc:
        raise http_error(exc)
    return TrustedContactRead.model_validate(contact)
