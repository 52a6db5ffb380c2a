"""Append-only audit trail for deliveries, escalations and verifier responses."""

from __future__ import annotations

import logging

from sqlmodel import Session, select

from courier.models.message import AuditEvent

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    owner_id: str,
    action: str,
    detail: str | None = None,
    message_id: str | None = None,
) -> AuditEvent:
    """Write an entry to the audit log."""
    entry = AuditEvent(
        owner_id=owner_id,
        message_id=message_id,
        action=action,
        detail=detail,
    )
    db.add(entry)
    db.commit()
    logger.debug("Audit %s owner=%s message=%s", action, owner_id, message_id)
    return entry


def list_events(
    db: Session,
    owner_id: str,
    message_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent).where(AuditEvent.owner_id == owner_id)
    if message_id is not None:
        stmt = stmt.where(AuditEvent.message_id == message_id)
    stmt = stmt.order_by(AuditEvent.timestamp.desc()).limit(limit)  # type: ignore[union-attr]
    return list(db.exec(stmt).all())
