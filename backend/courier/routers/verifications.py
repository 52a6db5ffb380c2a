"""Verifications router: trusted contacts answer verification requests by token."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlmodel import Session

from courier.db import get_session
from courier.dependencies import get_ledger, http_error
from courier.errors import CourierError
from courier.models.message import Message
from courier.models.verification import (
    SubjectKind,
    VerificationRequestRead,
    VerificationRespond,
    VerificationRespondResult,
)
from courier.services.audit import record_event
from courier.services.ledger import VerificationLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/verifications", tags=["verifications"])


@router.get("/{token}", response_model=VerificationRequestRead)
async def get_verification(
    token: str,
    db: Session = Depends(get_session),
    ledger: VerificationLedger = Depends(get_ledger),
) -> VerificationRequestRead:
    try:
        request = ledger.get_by_token(db, token)
    except CourierError as exc:
        raise http_error(exc)
    return VerificationRequestRead.model_validate(request)


@router.post("/{token}", response_model=VerificationRespondResult)
async def respond_to_verification(
    token: str,
    body: VerificationRespond,
    db: Session = Depends(get_session),
    ledger: VerificationLedger = Depends(get_ledger),
) -> VerificationRespondResult:
    """Record a confirm/deny decision. Each token accepts exactly one answer."""
    try:
        request = ledger.respond(db, token, body.decision)
    except CourierError as exc:
        raise http_error(exc)

    if request.subject_kind == SubjectKind.MESSAGE.value:
        message = db.get(Message, request.subject_id)
        owner_id = message.owner_id if message is not None else None
        message_id = request.subject_id
    else:
        owner_id = request.subject_id
        message_id = None
    if owner_id is not None:
        record_event(
            db,
            owner_id,
            f"verification_{request.status}",
            f"contact={request.verifier_contact_id}",
            message_id=message_id,
        )

    return VerificationRespondResult(
        success=True,
        status=request.status,
        responded_at=request.responded_at,
    )
