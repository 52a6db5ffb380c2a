"""Administrative endpoints, guarded by ``X-Admin-Key``."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlmodel import Session

from courier.db import get_session
from courier.dependencies import (
    get_clock,
    get_monitor,
    get_scheduler,
    http_error,
    require_admin,
)
from courier.errors import CourierError
from courier.models.checkin import CheckInStatusResponse
from courier.services.clock import ClockDriver
from courier.services.monitor import DeadMansSwitchMonitor
from courier.services.scheduler import Scheduler

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


@router.post("/owners/{owner_id}/legal-verification", response_model=CheckInStatusResponse)
async def record_legal_verification(
    owner_id: str,
    db: Session = Depends(get_session),
    monitor: DeadMansSwitchMonitor = Depends(get_monitor),
) -> CheckInStatusResponse:
    """Record a verified death certificate for an owner under liveness review."""
    try:
        monitor.record_legal_verification(db, owner_id)
        return monitor.get_status(db, owner_id)
    except CourierError as exc:
        raise http_error(exc)


@router.post("/tick")
async def run_tick(
    scheduler: Scheduler = Depends(get_scheduler),
    clock: ClockDriver | None = Depends(get_clock),
) -> dict:
    """Run one scheduler tick immediately."""
    report = await clock.run_once() if clock is not None else await scheduler.tick()
    return asdict(report)


@router.post("/messages/{message_id}/evaluate")
async def evaluate_message(
    message_id: str,
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict:
    try:
        report = await scheduler.evaluate_message(message_id)
    except CourierError as exc:
        raise http_error(exc)
    return asdict(report)
