"""Check-ins router: dead man's switch enrollment and liveness confirmation.

Tokens arrive by email with every prompt; ``/confirm`` accepts them without
the owner header so the link in the email works on its own.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlmodel import Session

from courier.db import get_session
from courier.dependencies import get_monitor, get_owner_id, http_error
from courier.errors import CourierError
from courier.models.checkin import (
    CheckInChallengeResponse,
    CheckInEnroll,
    CheckInRequest,
    CheckInResponse,
    CheckInStatusResponse,
)
from courier.services.monitor import DeadMansSwitchMonitor

router = APIRouter(prefix="/api/checkins", tags=["checkins"])


@router.post("/enroll", response_model=CheckInStatusResponse)
async def enroll(
    body: CheckInEnroll,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    monitor: DeadMansSwitchMonitor = Depends(get_monitor),
) -> CheckInStatusResponse:
    """Enroll in periodic check-ins, or change frequency and email."""
    try:
        monitor.enroll(db, owner_id, body.owner_email, body.frequency.value)
        return monitor.get_status(db, owner_id)
    except CourierError as exc:
        raise http_error(exc)


@router.get("/status", response_model=CheckInStatusResponse)
async def get_status(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    monitor: DeadMansSwitchMonitor = Depends(get_monitor),
) -> CheckInStatusResponse:
    try:
        return monitor.get_status(db, owner_id)
    except CourierError as exc:
        raise http_error(exc)


@router.post("/challenge", response_model=CheckInChallengeResponse)
async def get_challenge(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    monitor: DeadMansSwitchMonitor = Depends(get_monitor),
) -> CheckInChallengeResponse:
    """Issue a check-in token on demand (check in early)."""
    try:
        challenge = monitor.issue_challenge(db, owner_id)
    except CourierError as exc:
        raise http_error(exc)
    return CheckInChallengeResponse(token=challenge.token, expires_at=challenge.expires_at)


@router.post("/confirm", response_model=CheckInResponse)
async def confirm_check_in(
    body: CheckInRequest,
    db: Session = Depends(get_session),
    monitor: DeadMansSwitchMonitor = Depends(get_monitor),
) -> CheckInResponse:
    try:
        checkin = monitor.record_check_in(db, body.token)
    except CourierError as exc:
        raise http_error(exc)
    return CheckInResponse(
        success=True,
        next_due=checkin.next_due_at,
        message="Check-in recorded",
    )
