"""Trusted contacts and their invitation lifecycle.

Only contacts whose invitation is Accepted can verify events or take part in
a posthumous escalation.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlmodel import Session, select

from courier.config import Settings
from courier.errors import (
    AlreadyResponded,
    InvalidStateTransition,
    NotFound,
    NotifierUnavailable,
    TokenNotFound,
)
from courier.models.contact import (
    InvitationStatus,
    TrustedContact,
    TrustedContactCreate,
    TrustedContactUpdate,
)
from courier.models.message import Message, MessageStatus, TriggerType
from courier.services.audit import record_event
from courier.services.notifier import Notifier
from courier.utils.crypto import generate_token
from courier.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class ContactService:
    def __init__(self, settings: Settings, notifier: Notifier) -> None:
        self._settings = settings
        self._notifier = notifier

    def create(
        self, db: Session, owner_id: str, data: TrustedContactCreate
    ) -> TrustedContact:
        now = utcnow()
        contact = TrustedContact(
            owner_id=owner_id,
            name=data.name,
            email=data.email.strip(),
            relation=data.relation,
            created_at=now,
            updated_at=now,
        )
        db.add(contact)
        db.commit()
        db.refresh(contact)
        logger.info("Trusted contact %s added for owner %s", contact.id, owner_id)
        return contact

    def list_contacts(self, db: Session, owner_id: str) -> list[TrustedContact]:
        return list(
            db.exec(
                select(TrustedContact)
                .where(TrustedContact.owner_id == owner_id)
                .order_by(TrustedContact.created_at)
            ).all()
        )

    def get(self, db: Session, owner_id: str, contact_id: str) -> TrustedContact:
        contact = db.get(TrustedContact, contact_id)
        if contact is None or contact.owner_id != owner_id:
            raise NotFound(f"Trusted contact {contact_id} not found")
        return contact

    def update(
        self,
        db: Session,
        owner_id: str,
        contact_id: str,
        data: TrustedContactUpdate,
    ) -> TrustedContact:
        contact = self.get(db, owner_id, contact_id)
        if data.name is not None:
            contact.name = data.name
        if data.relation is not None:
            contact.relation = data.relation
        if data.email is not None and data.email.strip() != contact.email:
            # A new address has not agreed to anything yet
            contact.email = data.email.strip()
            contact.invitation_status = InvitationStatus.NOT_SENT.value
            contact.invitation_token = None
            contact.invited_at = None
            contact.responded_at = None
        contact.updated_at = utcnow()
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact

    def delete(self, db: Session, owner_id: str, contact_id: str) -> None:
        contact = self.get(db, owner_id, contact_id)
        in_use = db.exec(
            select(Message.id).where(
                Message.owner_id == owner_id,
                Message.trigger_type == TriggerType.EVENT.value,
                Message.status.in_(  # type: ignore[union-attr]
                    [
                        MessageStatus.SCHEDULED.value,
                        MessageStatus.AWAITING_VERIFICATION.value,
                        MessageStatus.FAILED.value,
                    ]
                ),
                Message.verifier_ids_json.contains(f'"{contact_id}"'),  # type: ignore[union-attr]
            )
        ).first()
        if in_use is not None:
            raise InvalidStateTransition(
                f"Contact {contact_id} verifies pending message {in_use}"
            )
        db.delete(contact)
        db.commit()
        logger.info("Trusted contact %s removed for owner %s", contact_id, owner_id)

    async def invite(
        self,
        db: Session,
        owner_id: str,
        contact_id: str,
        now: datetime | None = None,
    ) -> TrustedContact:
        """Send (or re-send) the invitation email.

        A transport failure leaves the contact NotSent and propagates so the
        owner can try again.
        """
        now = now or utcnow()
        contact = self.get(db, owner_id, contact_id)
        if contact.invitation_status in (
            InvitationStatus.ACCEPTED.value,
            InvitationStatus.DECLINED.value,
        ):
            raise InvalidStateTransition(
                f"Contact already {contact.invitation_status} the invitation"
            )

        token = contact.invitation_token or generate_token()
        email = contact.email
        try:
            await asyncio.wait_for(
                self._notifier.send_contact_invitation(email, owner_id, token),
                timeout=self._settings.io_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise NotifierUnavailable("Invitation email timed out") from exc

        contact = self.get(db, owner_id, contact_id)
        contact.invitation_token = token
        contact.invitation_status = InvitationStatus.SENT.value
        contact.invited_at = now
        contact.updated_at = now
        db.add(contact)
        db.commit()
        db.refresh(contact)
        record_event(db, owner_id, "contact_invited", f"contact={contact_id}")
        return contact

    def respond_invitation(
        self,
        db: Session,
        token: str,
        accept: bool,
        now: datetime | None = None,
    ) -> TrustedContact:
        now = now or utcnow()
        contact = db.exec(
            select(TrustedContact).where(TrustedContact.invitation_token == token)
        ).first()
        if contact is None:
            raise TokenNotFound("Unknown invitation token")
        if contact.invitation_status != InvitationStatus.SENT.value:
            raise AlreadyResponded(
                f"Invitation already {contact.invitation_status}"
            )

        contact.invitation_status = (
            InvitationStatus.ACCEPTED.value if accept else InvitationStatus.DECLINED.value
        )
        contact.responded_at = now
        contact.updated_at = now
        db.add(contact)
        db.commit()
        db.refresh(contact)
        record_event(
            db,
            contact.owner_id,
            "contact_accepted" if accept else "contact_declined",
            f"contact={contact.id}",
        )
        logger.info(
            "Trusted contact %s %s invitation", contact.id, contact.invitation_status
        )
        return contact
