"""FastAPI dependency injection for owner identity and the service singletons."""

from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, Request

from courier.config import Settings, get_settings
from courier.errors import (
    ConsistencyError,
    CourierError,
    NotFound,
    PermanentDeliveryError,
    TokenExpired,
    TransientError,
)
from courier.services.clock import ClockDriver
from courier.services.contacts import ContactService
from courier.services.ledger import VerificationLedger
from courier.services.messages import MessageService
from courier.services.monitor import DeadMansSwitchMonitor
from courier.services.scheduler import Scheduler
from courier.utils.crypto import tokens_match

logger = logging.getLogger(__name__)


def get_owner_id(x_owner_id: str = Header(default="")) -> str:
    """Owner identity supplied by the fronting gateway in ``X-Owner-Id``."""
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return owner_id


def require_admin(
    x_admin_key: str = Header(default=""),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.admin_api_key:
        raise HTTPException(status_code=403, detail="Admin API is disabled")
    if not tokens_match(x_admin_key, settings.admin_api_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")


def _service(request: Request, name: str, label: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{label} unavailable")
    return svc


def get_message_service(request: Request) -> MessageService:
    return _service(request, "message_service", "Message service")


def get_contact_service(request: Request) -> ContactService:
    return _service(request, "contact_service", "Contact service")


def get_monitor(request: Request) -> DeadMansSwitchMonitor:
    return _service(request, "monitor", "Check-in monitor")


def get_ledger(request: Request) -> VerificationLedger:
    return _service(request, "ledger", "Verification ledger")


def get_scheduler(request: Request) -> Scheduler:
    return _service(request, "scheduler", "Scheduler")


def get_clock(request: Request) -> ClockDriver | None:
    return getattr(request.app.state, "clock", None)


def http_error(exc: CourierError) -> HTTPException:
    """Translate a domain error into the HTTP response the caller sees."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TokenExpired):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, ConsistencyError):
        logger.error("Consistency error surfaced to caller: %s", exc)
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (PermanentDeliveryError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("Unmapped domain error: %r", exc)
    return HTTPException(status_code=500, detail="Internal error")
