"""Sends verification requests that the ledger has issued but not yet delivered.

Issuing (ledger) and notifying (here) are separate so a notifier outage
never loses a request: unsent requests are picked up again on the next
scheduler tick until ``notifier_max_attempts`` is reached.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlmodel import Session

from courier.config import Settings
from courier.errors import InvalidRecipient, NotifierUnavailable
from courier.models.contact import TrustedContact
from courier.models.message import Message
from courier.models.verification import SubjectKind, VerificationRequest
from courier.services.ledger import VerificationLedger
from courier.services.notifier import Notifier

logger = logging.getLogger(__name__)


class VerificationDispatcher:
    def __init__(
        self, settings: Settings, ledger: VerificationLedger, notifier: Notifier
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._notifier = notifier

    async def dispatch(
        self,
        db: Session,
        now: datetime,
        subject_kind: str | None = None,
        subject_id: str | None = None,
    ) -> int:
        """Notify verifiers of every live, unsent request. Returns sent count.

        ``subject_kind`` and ``subject_id`` narrow the run to one subject.
        """
        max_attempts = self._settings.notifier_max_attempts
        sent = 0
        pending = self._ledger.unnotified(
            db, now, max_attempts, subject_kind=subject_kind, subject_id=subject_id
        )
        for request in pending:
            request_id = request.id
            contact = db.get(TrustedContact, request.verifier_contact_id)
            if contact is None:
                logger.warning(
                    "Verifier %s for request %s no longer exists, skipping",
                    request.verifier_contact_id,
                    request_id,
                )
                self._give_up(db, request_id, max_attempts)
                continue

            email = contact.email
            token = request.token
            expires_at = request.expires_at
            purpose = self._purpose(db, request)
            try:
                await asyncio.wait_for(
                    self._notifier.send_verification_request(
                        email, token, expires_at, purpose
                    ),
                    timeout=self._settings.io_timeout_seconds,
                )
            except InvalidRecipient:
                logger.error(
                    "Verifier address %s rejected for request %s", email, request_id
                )
                self._give_up(db, request_id, max_attempts)
                continue
            except (NotifierUnavailable, asyncio.TimeoutError):
                attempts = self._ledger.record_notify_failure(db, request_id)
                logger.warning(
                    "Verification request %s not sent (attempt %d/%d)",
                    request_id,
                    attempts,
                    max_attempts,
                )
                continue

            self._ledger.mark_notified(db, request_id, now)
            sent += 1

        if sent:
            logger.info("Sent %d verification request(s)", sent)
        return sent

    def _give_up(self, db: Session, request_id: str, max_attempts: int) -> None:
        self._ledger.record_notify_failure(db, request_id, exhaust=max_attempts)

    @staticmethod
    def _purpose(db: Session, request: VerificationRequest) -> str:
        if request.subject_kind == SubjectKind.MESSAGE.value:
            message = db.get(Message, request.subject_id)
            label = message.event_label if message is not None else "an event"
            return f"Has the following happened: {label}?"
        return (
            "The person who named you as a trusted contact has missed their "
            "check-ins. Please confirm whether they have passed away."
        )
